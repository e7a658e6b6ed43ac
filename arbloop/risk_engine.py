# arbloop/risk_engine.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence
import logging
import statistics

from .config import RiskSettings
from .exceptions import RiskRejected
from .models import Opportunity, TradeRecord
from .risk_state import RiskState

VAR_Z_95 = 1.645
VOLATILITY_RISK_CAP = 0.1
RISK_ADJUSTMENT_FLOOR = 0.1
RISK_ADJUSTMENT_SLOPE = 5.0

DRAWDOWN_WINDOW = 50
DRAWDOWN_MIN_TRADES = 10
KELLY_WINDOW = 100
METRICS_WINDOW = 100
METRICS_MIN_TRADES = 10

EMERGENCY_STOP_REASON = "Emergency stop activated"


@dataclass
class RiskAssessment:
    approved: bool
    reasons: List[str] = field(default_factory=list)
    adjusted_size: float = 0.0
    risk_score: float = 0.0
    checks: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskMetrics:
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    volatility: float = 0.0


class RiskGate:
    """
    Decides 'Can we trade this, and how much?' for one opportunity.
    Every violated limit is reported; nothing short-circuits, so an operator
    sees the full picture in one rejection.
    """
    def __init__(self, settings: RiskSettings, state: RiskState, logger: logging.Logger):
        self.cfg = settings
        self.state = state
        self.logger = logger

    def assess(self, opp: Opportunity) -> RiskAssessment:
        reasons: List[str] = []
        checks: Dict[str, Any] = {}
        size = opp.trade_size

        # 1. Daily boundary + emergency stop
        self.state.roll_day()
        if self.state.emergency_stop:
            reasons.append(EMERGENCY_STOP_REASON)

        # 2. Daily caps
        checks["daily_trade_count"] = self.state.daily_trade_count
        if self.state.daily_trade_count >= self.cfg.max_daily_trades:
            reasons.append(f"Daily trade limit reached ({self.state.daily_trade_count}/{self.cfg.max_daily_trades})")
        checks["daily_loss"] = self.state.daily_loss
        if self.state.daily_loss >= self.cfg.max_daily_loss:
            reasons.append(f"Daily loss limit reached ({self.state.daily_loss:.2f}/{self.cfg.max_daily_loss:.2f})")

        # 3. Position limits
        reasons.extend(self._position_violations(opp.assets, size))

        # 4. Correlated exposure
        exposure = max((self.correlation_exposure(a) for a in opp.assets), default=0.0)
        checks["correlation_exposure"] = exposure
        if exposure > self.cfg.max_correlated_exposure:
            reasons.append(f"Correlated exposure {exposure * 100:.2f}% exceeds {self.cfg.max_correlated_exposure * 100:.2f}% of capital")

        # 5. VaR (scores only)
        volatility = max((self.state.volatility_of(a) for a in opp.assets), default=self.cfg.default_volatility)
        var = size * volatility * VAR_Z_95 / self.cfg.capital
        risk_score = var + min(volatility / 10, VOLATILITY_RISK_CAP)
        checks["value_at_risk"] = var
        checks["volatility"] = volatility

        # 6. Drawdown over trailing history
        drawdown = self.trailing_drawdown()
        checks["drawdown"] = drawdown
        if drawdown > self.cfg.max_drawdown:
            reasons.append(f"Drawdown {drawdown * 100:.2f}% exceeds limit {self.cfg.max_drawdown * 100:.2f}%")

        approved = not reasons
        adjusted = self.kelly_size(size, risk_score) if approved else 0.0

        if approved:
            self.logger.debug(f"✅ Risk approved {opp.id}: size {size:,.2f} -> {adjusted:,.2f} (risk {risk_score:.3f})")
        else:
            self.logger.info(f"⛔ Risk rejected {opp.id}: {'; '.join(reasons)}")

        return RiskAssessment(approved, reasons, adjusted, risk_score, checks)

    def require_approval(self, opp: Opportunity) -> RiskAssessment:
        """assess() that raises RiskRejected instead of returning a rejection."""
        assessment = self.assess(opp)
        if not assessment.approved:
            raise RiskRejected(assessment.reasons)
        return assessment

    def _position_violations(self, assets: Sequence[str], size: float) -> List[str]:
        violations = []
        for asset in assets:
            limit = self.state.position_limits.get(asset)
            if limit is None:
                violations.append(f"{asset} not in allowed asset list")
                continue
            if limit.current_position + size > limit.max_position:
                violations.append(f"{asset} position {limit.current_position + size:,.2f} would exceed max {limit.max_position:,.2f}")
            if limit.current_daily_volume + size > limit.max_daily_volume:
                violations.append(f"{asset} daily volume {limit.current_daily_volume + size:,.2f} would exceed max {limit.max_daily_volume:,.2f}")
        return violations

    def correlation_exposure(self, asset: str) -> float:
        total = 0.0
        for other, limit in self.state.position_limits.items():
            if other == asset or limit.current_position == 0:
                continue
            total += abs(limit.current_position) * abs(self.state.correlation(asset, other))
        return total / self.cfg.capital

    def trailing_drawdown(self) -> float:
        records = self.state.recent(DRAWDOWN_WINDOW)
        if len(records) < DRAWDOWN_MIN_TRADES:
            return 0.0
        return max_drawdown(records, self.cfg.capital)

    def kelly_size(self, trade_size: float, risk_score: float) -> float:
        """
        f = (p*b - q) / b over the trailing window, clamped to [0, max_kelly_fraction]
        and shrunk as the risk score grows. No loss history keeps the original size.
        """
        records = self.state.recent(KELLY_WINDOW)
        wins = [r.realized_pnl for r in records if r.success and r.realized_pnl > 0]
        losses = [abs(r.realized_pnl) for r in records if not r.success or r.realized_pnl <= 0]

        avg_loss = sum(losses) / len(losses) if losses else 0.0
        if avg_loss == 0:
            return trade_size

        p = len(wins) / len(records)
        q = 1 - p
        avg_win = sum(wins) / len(wins) if wins else 0.0
        b = avg_win / avg_loss
        fraction = (p * b - q) / b if b > 0 else 0.0
        fraction = max(0.0, min(fraction, self.cfg.max_kelly_fraction))

        adjustment = max(RISK_ADJUSTMENT_FLOOR, 1 - RISK_ADJUSTMENT_SLOPE * risk_score)
        return trade_size * fraction * adjustment

    # --- PERFORMANCE ---

    def risk_metrics(self) -> RiskMetrics:
        records = self.state.recent(METRICS_WINDOW)
        if len(records) < METRICS_MIN_TRADES:
            return RiskMetrics()

        returns = [r.realized_pnl for r in records]
        wins = [x for x in returns if x > 0]
        losses = [x for x in returns if x <= 0]
        avg_return = statistics.fmean(returns)
        std = statistics.pstdev(returns)
        avg_win = statistics.fmean(wins) if wins else 0.0
        avg_loss = statistics.fmean(losses) if losses else 0.0

        return RiskMetrics(
            sharpe_ratio=avg_return / std if std else 0.0,
            max_drawdown=self.trailing_drawdown(),
            win_rate=len(wins) / len(returns),
            avg_win=avg_win,
            avg_loss=avg_loss,
            profit_factor=abs(avg_win / avg_loss) if avg_loss else 0.0,
            volatility=std,
        )

    def should_trigger_emergency_stop(self) -> bool:
        m = self.risk_metrics()
        return (m.max_drawdown > self.cfg.max_drawdown
                or m.sharpe_ratio < -2
                or (m.win_rate < 0.3 and len(self.state.history) > 50))


def max_drawdown(records: Sequence[TradeRecord], capital: float) -> float:
    """Largest peak-to-trough fall of capital + cumulative P&L, as a fraction of the peak."""
    equity = capital
    peak = capital
    worst = 0.0
    for record in records:
        equity += record.realized_pnl
        peak = max(peak, equity)
        if peak > 0:
            worst = max(worst, (peak - equity) / peak)
    return worst
