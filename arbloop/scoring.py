# arbloop/scoring.py
import itertools
import logging
import time
from typing import Callable, Iterable, List, Optional

from .config import TradingSettings
from .graph import build_edges
from .models import Cycle, Opportunity, PriceSample

BASE_CONFIDENCE = {2: 0.5, 3: 0.4}
LONG_CYCLE_CONFIDENCE = 0.3

PROFIT_WEIGHT, PROFIT_CAP = 8.0, 0.3
LIQUIDITY_SCALE, LIQUIDITY_CAP = 800_000.0, 0.2
AGE_SCALE_SECONDS, AGE_CAP = 8.0, 0.2


class OpportunityScorer:
    """
    Turns detected cycles into sized, confidence-weighted opportunities.
    Only profit and confidence thresholds apply here; limits belong to the Risk Gate.
    """
    def __init__(self, settings: TradingSettings, clock: Callable[[], float] = time.time,
                 logger: Optional[logging.Logger] = None):
        self.cfg = settings
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._ids = itertools.count(1)

    def score(self, cycle: Cycle) -> Opportunity:
        now = self.clock()
        profit = cycle.profit_percent
        legs = len(cycle)
        strategy = "spread" if legs == 2 else "triangular" if legs == 3 else "cyclic"
        return Opportunity(
            id=f"{strategy}-{int(now * 1000)}-{next(self._ids)}",
            cycle=cycle,
            profit_percent=profit,
            confidence=self.confidence(cycle, profit, now),
            trade_size=self.trade_size(cycle),
            assets=self._assets(cycle),
            timestamp=now,
            strategy=strategy,
        )

    def score_spread(self, buy: PriceSample, sell: PriceSample) -> Opportunity:
        """Two-venue case: buy the base where it is cheap, sell it where it is dear."""
        if buy.symbol != sell.symbol:
            raise ValueError(f"Spread legs must share a symbol ({buy.symbol} vs {sell.symbol})")
        _, buy_leg = build_edges(buy)
        sell_leg, _ = build_edges(sell)
        return self.score(Cycle((buy_leg, sell_leg)))

    def trade_size(self, cycle: Cycle) -> float:
        liquidity = min(self._liquidity(s) for s in cycle.samples)
        return max(0.0, min(self.cfg.max_trade_size, liquidity * self.cfg.liquidity_fraction))

    def confidence(self, cycle: Cycle, profit_percent: float, now: float) -> float:
        confidence = BASE_CONFIDENCE.get(len(cycle), LONG_CYCLE_CONFIDENCE)

        confidence += min(max(profit_percent, 0.0) * PROFIT_WEIGHT, PROFIT_CAP)

        samples = cycle.samples
        avg_liquidity = sum(s.liquidity or 0.0 for s in samples) / len(samples)
        confidence += min(avg_liquidity / LIQUIDITY_SCALE, LIQUIDITY_CAP)

        avg_age = sum(s.age(now) for s in samples) / len(samples)
        confidence -= min(avg_age / AGE_SCALE_SECONDS, AGE_CAP)

        return max(0.0, min(1.0, confidence))

    def passes(self, opp: Opportunity) -> bool:
        return (opp.profit_percent >= self.cfg.min_profit_threshold
                and opp.confidence >= self.cfg.min_confidence
                and opp.trade_size > 0)

    def filter(self, opportunities: Iterable[Opportunity]) -> List[Opportunity]:
        """Drops sub-threshold candidates, best rank first."""
        scored = list(opportunities)
        kept = [o for o in scored if self.passes(o)]
        if len(kept) < len(scored):
            self.logger.debug(f"Scorer dropped {len(scored) - len(kept)} of {len(scored)} candidate(s)")
        return sorted(kept, key=lambda o: o.rank, reverse=True)

    def evaluate(self, cycles: Iterable[Cycle]) -> List[Opportunity]:
        return self.filter(self.score(c) for c in cycles)

    def _liquidity(self, sample: PriceSample) -> float:
        if sample.liquidity is None:
            return self.cfg.default_liquidity
        return max(0.0, sample.liquidity)

    def _assets(self, cycle: Cycle) -> List[str]:
        assets = []
        for node in cycle.nodes:
            if node != self.cfg.numeraire and node not in assets:
                assets.append(node)
        return assets or list(dict.fromkeys(cycle.nodes))
