# arbloop/risk_state.py
from collections import deque
from dataclasses import asdict
from datetime import date, datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence
import logging
import statistics
import time

from .config import PositionLimitSettings, RiskSettings
from .models import ExecutionOutcome, OutcomeKind, PositionLimit, TradeRecord

MIN_VOLATILITY_POINTS = 20
MIN_CORRELATION_POINTS = 10


class RiskState:
    """
    Single authoritative record of daily counters, trade history and position usage.
    Written by the orchestrator after every execution attempt, read by the Risk Gate
    before every approval.
    """
    def __init__(self, settings: RiskSettings, allowed_assets: Iterable[str],
                 logger: logging.Logger, clock: Callable[[], float] = time.time):
        self.cfg = settings
        self.logger = logger
        self.clock = clock

        self.history: Deque[TradeRecord] = deque(maxlen=settings.history_size)
        self.daily_trade_count = 0
        self.daily_profit = 0.0
        self.daily_loss = 0.0
        self.total_pnl = 0.0
        self.emergency_stop = False
        self.emergency_reason: Optional[str] = None
        self.trading_day: date = self._today()

        self.position_limits: Dict[str, PositionLimit] = {}
        for asset in list(allowed_assets) + list(settings.position_limits):
            if asset in self.position_limits:
                continue
            spec = settings.position_limits.get(asset, PositionLimitSettings())
            self.position_limits[asset] = PositionLimit(asset, spec.max_position, spec.max_daily_volume)

        # asset -> volatility of returns; asset -> {asset: pearson r}
        self.volatility: Dict[str, float] = {}
        self.correlations: Dict[str, Dict[str, float]] = {}

    def _today(self) -> date:
        return datetime.fromtimestamp(self.clock()).date()

    # --- DAILY BOUNDARY ---

    def roll_day(self) -> bool:
        """
        Resets daily counters and clears the emergency stop on the first call of a new
        calendar day. Later calls on the same day change nothing.
        """
        today = self._today()
        if today == self.trading_day:
            return False

        self.daily_trade_count = 0
        self.daily_profit = 0.0
        self.daily_loss = 0.0
        for limit in self.position_limits.values():
            limit.current_daily_volume = 0.0
            limit.current_position = 0.0
        if self.emergency_stop:
            self.logger.warning(f"🔓 Emergency stop cleared by daily reset ({self.emergency_reason})")
        self.emergency_stop = False
        self.emergency_reason = None
        self.logger.info(f"📅 New trading day {today.isoformat()}: daily counters and position limits reset")
        self.trading_day = today
        return True

    # --- OUTCOME RECONCILIATION ---

    @property
    def net_daily_loss(self) -> float:
        return self.daily_loss - self.daily_profit

    def record_outcome(self, outcome: ExecutionOutcome) -> TradeRecord:
        self.roll_day()
        pnl = outcome.realized_pnl
        opp = outcome.opportunity

        self.daily_trade_count += 1
        self.total_pnl += pnl
        if pnl >= 0:
            self.daily_profit += pnl
        else:
            self.daily_loss += -pnl

        record = TradeRecord(
            timestamp=outcome.finished_at,
            success=outcome.success,
            realized_pnl=pnl,
            fees=outcome.total_fees,
            size=outcome.executed_size,
            assets=tuple(opp.assets),
            kind=outcome.kind,
        )
        self.history.append(record)

        if outcome.kind is OutcomeKind.SETTLED:
            self._apply_volume(opp.assets, outcome.executed_size)
        elif outcome.kind is OutcomeKind.UNBALANCED:
            # residual exposure on whatever the confirmed legs touched
            touched = []
            for leg in outcome.confirmed_legs:
                edge = opp.cycle.edges[leg.leg_index]
                touched.extend(a for a in (edge.source, edge.target) if a in opp.assets and a not in touched)
            self._apply_volume(touched, outcome.executed_size)

        if not self.emergency_stop and self.net_daily_loss >= self.cfg.emergency_stop_loss:
            self.trigger_emergency_stop(
                f"daily net loss {self.net_daily_loss:.4f} reached emergency stop loss {self.cfg.emergency_stop_loss:.4f}")
        return record

    def _apply_volume(self, assets: Sequence[str], size: float):
        for asset in assets:
            limit = self.position_limits.get(asset)
            if limit is None:
                continue
            limit.current_position += size
            limit.current_daily_volume += size

    # --- EMERGENCY STOP ---

    def trigger_emergency_stop(self, reason: str):
        if self.emergency_stop:
            return
        self.emergency_stop = True
        self.emergency_reason = reason
        self.logger.critical(f"⛔ EMERGENCY STOP ACTIVATED: {reason}")

    def reset_emergency_stop(self) -> bool:
        """Manual clear. Returns False when no stop was active."""
        if not self.emergency_stop:
            return False
        self.logger.warning(f"🔓 Emergency stop manually cleared ({self.emergency_reason})")
        self.emergency_stop = False
        self.emergency_reason = None
        return True

    # --- HISTORY VIEWS ---

    def recent(self, count: int) -> List[TradeRecord]:
        if count <= 0:
            return []
        return list(self.history)[-count:]

    # --- MARKET STATISTICS ---

    def update_volatility(self, asset: str, returns: Sequence[float]) -> bool:
        if len(returns) < MIN_VOLATILITY_POINTS:
            return False
        vol = statistics.pstdev(returns)
        self.volatility[asset] = vol
        self.logger.debug(f"Updated volatility for {asset}: {vol * 100:.2f}%")
        return True

    def update_correlations(self, returns_by_asset: Dict[str, Sequence[float]]):
        for asset_a, returns_a in returns_by_asset.items():
            row = self.correlations.setdefault(asset_a, {})
            for asset_b, returns_b in returns_by_asset.items():
                if asset_a != asset_b:
                    row[asset_b] = pearson(returns_a, returns_b)

    def volatility_of(self, asset: str) -> float:
        return self.volatility.get(asset, self.cfg.default_volatility)

    def correlation(self, asset_a: str, asset_b: str) -> float:
        return self.correlations.get(asset_a, {}).get(asset_b, 0.0)

    # --- STATUS ---

    def summary(self) -> dict:
        return {
            "trading_day": self.trading_day.isoformat(),
            "daily_trade_count": self.daily_trade_count,
            "daily_profit": self.daily_profit,
            "daily_loss": self.daily_loss,
            "net_daily_loss": self.net_daily_loss,
            "total_pnl": self.total_pnl,
            "emergency_stop": self.emergency_stop,
            "emergency_reason": self.emergency_reason,
            "history_size": len(self.history),
        }

    def position_summary(self) -> Dict[str, dict]:
        return {asset: asdict(limit) for asset, limit in self.position_limits.items()}


def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    n = min(len(x), len(y))
    if n < MIN_CORRELATION_POINTS:
        return 0.0
    try:
        return statistics.correlation(list(x[:n]), list(y[:n]))
    except statistics.StatisticsError:
        # constant series
        return 0.0
