"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import arbloop without an install.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from arbloop.config import ExecutionSettings, LoopSettings, PositionLimitSettings, Settings  # noqa: E402
from arbloop.context import BotContext  # noqa: E402
from arbloop.models import ExecutionOutcome, OutcomeKind, PriceSample  # noqa: E402
from arbloop.price_cache import PriceCache  # noqa: E402
from arbloop.risk_engine import RiskGate  # noqa: E402
from arbloop.risk_state import RiskState  # noqa: E402
from arbloop.scoring import OpportunityScorer  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[float] = None):
        self.now = start if start is not None else datetime(2026, 3, 10, 12, 0, 0).timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    return logging.getLogger("arbloop.tests")


@pytest.fixture
def settings():
    """Defaults with generous position limits and zero delays."""
    s = Settings()
    s.trading.assets = ["SOL/USDC", "ETH/USDC", "BTC/USDC", "SOL/ETH"]
    s.risk.position_limits = {
        asset: PositionLimitSettings(max_position=1_000_000.0, max_daily_volume=1_000_000.0)
        for asset in ("SOL", "ETH", "BTC")
    }
    s.execution = ExecutionSettings(
        max_submit_retries=3,
        submit_retry_delay=0.0,
        max_confirm_attempts=5,
        confirm_delay=0.0,
        confirm_delay_cap=0.0,
        inter_leg_delay=0.0,
    )
    s.loop = LoopSettings(backoff_base=0.0, backoff_cap=0.0, max_consecutive_errors=3)
    s.system.cycle_interval = 0.0
    return s


@pytest.fixture
def ctx(settings, logger, clock):
    return BotContext(settings, logger, clock)


@pytest.fixture
def cache(settings, logger, clock):
    return PriceCache(settings.trading.max_sample_age, logger, clock)


@pytest.fixture
def scorer(settings, clock, logger):
    return OpportunityScorer(settings.trading, clock, logger)


@pytest.fixture
def state(settings, logger, clock):
    return RiskState(settings.risk, settings.tradable_assets(), logger, clock)


@pytest.fixture
def gate(settings, state, logger):
    return RiskGate(settings.risk, state, logger)


@pytest.fixture
def make_sample(clock):
    def _make(symbol, venue, price, liquidity=1_000_000.0, age=0.0):
        return PriceSample(symbol, venue, price, liquidity=liquidity, timestamp=clock() - age)
    return _make


@pytest.fixture
def spread_opportunity(scorer, make_sample):
    """SOL 100.00 on alpha, 101.50 on beta, 1M liquidity on both."""
    def _make(buy_price=100.0, sell_price=101.5, liquidity=1_000_000.0):
        return scorer.score_spread(make_sample("SOL/USDC", "alpha", buy_price, liquidity),
                                   make_sample("SOL/USDC", "beta", sell_price, liquidity))
    return _make


@pytest.fixture
def make_outcome(spread_opportunity, clock):
    def _make(kind=OutcomeKind.SETTLED, pnl=0.0, size=100.0, opp=None):
        return ExecutionOutcome(
            opportunity=opp or spread_opportunity(),
            kind=kind,
            executed_size=size,
            realized_pnl=pnl,
            finished_at=clock(),
        )
    return _make
