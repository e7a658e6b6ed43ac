# arbloop/engine.py
import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Deque, Dict, List, Mapping, Optional

from .context import BotContext
from .exceptions import RiskRejected, StaleDataError
from .execution import ExecutionOrchestrator
from .graph import CycleDetector
from .logger import MonitoringSink
from .models import ExecutionOutcome, Opportunity, OutcomeKind, PriceSample, SampleKey
from .price_cache import PriceCache
from .risk_engine import RiskGate
from .risk_state import MIN_CORRELATION_POINTS, RiskState
from .scoring import OpportunityScorer
from .venues import Venue

RETURNS_WINDOW = 100


@dataclass
class EngineStats:
    cycles: int = 0
    opportunities: int = 0
    approved: int = 0
    rejected: int = 0
    settled: int = 0
    failed: int = 0
    unbalanced: int = 0
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    started_at: float = field(default_factory=time.time)


class ArbitrageEngine:
    """
    Cooperative polling loop: snapshot -> detect -> score -> gate -> execute.
    At most one opportunity executes per cycle, so trades never compete for capital.
    """
    def __init__(self, ctx: BotContext, cache: PriceCache, venues: Mapping[str, Venue],
                 sink: Optional[MonitoringSink] = None, shutdown: Optional[asyncio.Event] = None):
        self.ctx = ctx
        self.cfg = ctx.settings
        self.logger = ctx.logger_for("engine")
        self.cache = cache
        self.venues = dict(venues)
        self.sink = sink
        self.shutdown = shutdown or asyncio.Event()

        trading = self.cfg.trading
        self.detector = CycleDetector(trading.max_cycle_length, trading.numeraire, ctx.logger_for("graph"))
        self.scorer = OpportunityScorer(trading, ctx.clock, ctx.logger_for("scoring"))
        self.state = RiskState(self.cfg.risk, self.cfg.tradable_assets(), ctx.logger_for("risk"), ctx.clock)
        self.gate = RiskGate(self.cfg.risk, self.state, ctx.logger_for("risk"))
        self.orchestrator = ExecutionOrchestrator(
            self.venues, self.state, self.cfg.execution, ctx.logger_for("execution"),
            self.shutdown, trading.slippage_tolerance,
        )

        self.stats = EngineStats(started_at=ctx.now())
        self.paused = False
        self.halted = False
        self.halt_reason: Optional[str] = None
        self.last_opportunities: List[Opportunity] = []
        self.recent_outcomes: Deque[ExecutionOutcome] = deque(maxlen=20)
        self.price_history: Dict[str, Deque[float]] = {}

    # --- ONE CYCLE ---

    async def run_cycle(self) -> Optional[ExecutionOutcome]:
        self.stats.cycles += 1
        snapshot = self.cache.snapshot()
        self.observe_market(snapshot)
        cycles = self.detector.detect(snapshot)
        opportunities = self.scorer.evaluate(cycles)
        self.last_opportunities = opportunities
        self.stats.opportunities += len(opportunities)

        if self.sink is not None:
            for opp in opportunities:
                self.sink.record_opportunity(opp)

        for opp in opportunities:
            if self.shutdown.is_set():
                return None
            try:
                assessment = self.gate.require_approval(opp)
            except RiskRejected:
                self.stats.rejected += 1
                continue
            self.stats.approved += 1
            if assessment.adjusted_size <= 0:
                self.logger.info(f"⏭️ Skipping {opp.id}: Kelly sizing left nothing to trade")
                continue

            try:
                self.revalidate(opp)
            except (StaleDataError, KeyError) as e:
                self.logger.info(f"⏭️ Skipping {opp.id}: quote no longer usable ({e})")
                continue

            self.logger.info(f"🎯 OPPORTUNITY: {opp.describe()} -> size {assessment.adjusted_size:,.2f}")
            outcome = await self.orchestrator.execute(opp, assessment.adjusted_size)
            if outcome.legs:
                self._after_execution(outcome)
            return outcome
        return None

    def revalidate(self, opp: Opportunity):
        """Every quote the cycle was priced from must still be fresh in the cache."""
        for sample in opp.cycle.samples:
            self.cache.get_fresh(sample.symbol, sample.venue)

    def observe_market(self, snapshot: Mapping[SampleKey, PriceSample]):
        """
        Feeds per-cycle returns of each asset against the numeraire into the risk state.
        The cross-venue mean price is the observation; unchanged prices still count.
        """
        numeraire = self.cfg.trading.numeraire
        prices: Dict[str, List[float]] = {}
        for sample in snapshot.values():
            if sample.quote == numeraire and sample.price > 0:
                prices.setdefault(sample.base, []).append(sample.price)

        returns_by_asset: Dict[str, List[float]] = {}
        for asset, quotes in prices.items():
            history = self.price_history.setdefault(asset, deque(maxlen=RETURNS_WINDOW + 1))
            history.append(sum(quotes) / len(quotes))
            points = list(history)
            returns = [b / a - 1 for a, b in zip(points, points[1:])]
            self.state.update_volatility(asset, returns)
            if len(returns) >= MIN_CORRELATION_POINTS:
                returns_by_asset[asset] = returns

        if len(returns_by_asset) > 1:
            self.state.update_correlations(returns_by_asset)

    def _after_execution(self, outcome: ExecutionOutcome):
        self.recent_outcomes.append(outcome)
        if outcome.kind is OutcomeKind.SETTLED:
            self.stats.settled += 1
        elif outcome.kind is OutcomeKind.UNBALANCED:
            self.stats.unbalanced += 1
        else:
            self.stats.failed += 1

        if self.sink is not None:
            self.sink.record_outcome(outcome)

        if self.gate.should_trigger_emergency_stop():
            m = self.gate.risk_metrics()
            self.state.trigger_emergency_stop(
                f"risk metrics breached (drawdown {m.max_drawdown * 100:.2f}%, sharpe {m.sharpe_ratio:.2f}, win rate {m.win_rate * 100:.1f}%)")

    # --- LOOP ---

    def backoff_delay(self) -> float:
        n = max(0, self.stats.consecutive_errors - 1)
        return min(self.cfg.loop.backoff_cap, self.cfg.loop.backoff_base * (2 ** n))

    async def run(self):
        interval = self.cfg.system.cycle_interval
        self.logger.info(f"🚀 ENGINE STARTED | Markets: {len(self.cfg.trading.assets)} | Venues: {', '.join(self.venues) or '-'}")

        while not self.shutdown.is_set():
            if self.paused or self.halted:
                await self._sleep(interval)
                continue

            delay = interval
            try:
                await self.run_cycle()
                self.stats.consecutive_errors = 0
            except Exception as e:
                # loop-level failure: back off, halt once the budget is spent
                self.stats.consecutive_errors += 1
                self.stats.last_error = f"{type(e).__name__}: {e}"
                self.logger.exception(f"❌ Cycle error {self.stats.consecutive_errors}/{self.cfg.loop.max_consecutive_errors}: {e}")
                if self.stats.consecutive_errors >= self.cfg.loop.max_consecutive_errors:
                    self.halted = True
                    self.halt_reason = f"{self.stats.consecutive_errors} consecutive cycle errors, last: {self.stats.last_error}"
                    self.logger.critical(f"⛔ ENGINE HALTED: {self.halt_reason}. Operator resume required.")
                    continue
                delay = self.backoff_delay()

            await self._sleep(delay)

        self.logger.info("🛑 Engine loop stopped.")

    async def _sleep(self, delay: float):
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # --- CONTROL SURFACE ---

    def pause(self):
        self.paused = True
        self.logger.warning("⏸️ Engine paused")

    def resume(self):
        if self.halted:
            self.logger.warning(f"▶️ Clearing halt ({self.halt_reason})")
        self.paused = False
        self.halted = False
        self.halt_reason = None
        self.stats.consecutive_errors = 0
        self.logger.info("▶️ Engine resumed")

    def reset_emergency_stop(self) -> bool:
        return self.state.reset_emergency_stop()

    def stop(self):
        self.shutdown.set()

    def prices(self) -> Dict[str, Dict[str, float]]:
        """{'SOL/USDC': {'binance': 101.2, 'okx': 101.4}} from fresh samples."""
        view: Dict[str, Dict[str, float]] = {}
        for (symbol, venue), sample in sorted(self.cache.snapshot().items()):
            view.setdefault(symbol, {})[venue] = sample.price
        return view

    def status(self) -> dict:
        return {
            "engine": {
                **asdict(self.stats),
                "paused": self.paused,
                "halted": self.halted,
                "halt_reason": self.halt_reason,
                "uptime": self.ctx.now() - self.stats.started_at,
            },
            "risk": self.state.summary(),
            "positions": self.state.position_summary(),
            "metrics": asdict(self.gate.risk_metrics()),
        }
