# arbloop/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import math
import time

SampleKey = Tuple[str, str]  # (symbol, venue)


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class LegStatus(Enum):
    """
    Enum representing the lifecycle states of a single execution leg.
    """
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class OutcomeKind(Enum):
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    UNBALANCED = "UNBALANCED"


class ExecutionPhase(Enum):
    PENDING = "PENDING"
    LEG_EXECUTING = "EXECUTING"
    LEG_CONFIRMED = "CONFIRMED"
    SETTLED = "SETTLED"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class PriceSample:
    """
    Immutable quote for one market on one venue.
    `price` is QUOTE per BASE for `symbol` ("BASE/QUOTE").
    Liquidity is expressed in numeraire units.
    """
    symbol: str
    venue: str
    price: float
    liquidity: Optional[float] = None
    volume_24h: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def base(self) -> str:
        return self.symbol.split('/')[0]

    @property
    def quote(self) -> str:
        return self.symbol.split('/')[1]

    @property
    def key(self) -> SampleKey:
        return (self.symbol, self.venue)

    def age(self, now: Optional[float] = None) -> float:
        """Returns the age of the sample in seconds."""
        now = time.time() if now is None else now
        return max(0.0, now - self.timestamp)


@dataclass(frozen=True, slots=True)
class Edge:
    """Directed conversion source -> target backed by one PriceSample."""
    source: str
    target: str
    weight: float
    sample: PriceSample

    @property
    def venue(self) -> str:
        return self.sample.venue

    @property
    def rate(self) -> float:
        return math.exp(-self.weight)

    @property
    def side(self) -> Side:
        # base -> quote sells the base asset, quote -> base buys it
        return Side.SELL if self.source == self.sample.base else Side.BUY

    def __str__(self) -> str:
        return f"{self.source}->{self.target}@{self.venue}"


@dataclass(frozen=True, slots=True)
class Cycle:
    """Ordered edges whose endpoints close a loop."""
    edges: Tuple[Edge, ...]

    def __len__(self) -> int:
        return len(self.edges)

    @property
    def total_weight(self) -> float:
        return sum(e.weight for e in self.edges)

    @property
    def profit_percent(self) -> float:
        return math.exp(-self.total_weight) - 1.0

    @property
    def nodes(self) -> List[str]:
        return [e.source for e in self.edges]

    @property
    def venues(self) -> List[str]:
        return [e.venue for e in self.edges]

    @property
    def samples(self) -> List[PriceSample]:
        return [e.sample for e in self.edges]

    @property
    def sample_keys(self) -> List[SampleKey]:
        return [e.sample.key for e in self.edges]

    @property
    def dedupe_key(self) -> Tuple[SampleKey, ...]:
        return tuple(sorted(set(self.sample_keys)))

    def is_closed(self) -> bool:
        if not self.edges:
            return False
        for prev, nxt in zip(self.edges, self.edges[1:] + self.edges[:1]):
            if prev.target != nxt.source:
                return False
        return True

    def rotated_to(self, node: str) -> "Cycle":
        """Same loop, starting at `node` when it participates."""
        for i, e in enumerate(self.edges):
            if e.source == node:
                return Cycle(self.edges[i:] + self.edges[:i])
        return self

    def path(self) -> str:
        if not self.edges:
            return ""
        hops = " -> ".join(f"{e.source}({e.venue})" for e in self.edges)
        return f"{hops} -> {self.edges[-1].target}"


@dataclass(slots=True)
class Opportunity:
    """
    Represents a scored arbitrage cycle passed from Detection to the Risk Gate.
    Sizes and profits are in numeraire units; profit_percent is a fraction (0.015 = 1.5%).
    """
    id: str
    cycle: Cycle
    profit_percent: float
    confidence: float
    trade_size: float
    assets: List[str]
    timestamp: float
    strategy: str = "cyclic"

    @property
    def estimated_profit(self) -> float:
        return self.trade_size * self.profit_percent

    @property
    def asset(self) -> str:
        return self.assets[0] if self.assets else self.cycle.nodes[0]

    @property
    def legs(self) -> int:
        return len(self.cycle)

    @property
    def buy_venue(self) -> str:
        return self.cycle.edges[0].venue

    @property
    def sell_venue(self) -> str:
        return self.cycle.edges[-1].venue

    @property
    def rank(self) -> float:
        return self.profit_percent * self.confidence

    def describe(self) -> str:
        return (f"{self.strategy} {self.cycle.path()} | {self.profit_percent * 100:.2f}% "
                f"| conf {self.confidence:.2f} | size {self.trade_size:,.2f}")


@dataclass(slots=True)
class PositionLimit:
    asset: str
    max_position: float
    max_daily_volume: float
    current_position: float = 0.0
    current_daily_volume: float = 0.0

    def headroom(self) -> float:
        return min(self.max_position - self.current_position,
                   self.max_daily_volume - self.current_daily_volume)


@dataclass(slots=True)
class SwapResult:
    """Venue response to a swap submission."""
    success: bool
    receipt: Optional[str] = None
    error: Optional[str] = None
    fee_cost: float = 0.0
    price: Optional[float] = None


@dataclass(slots=True)
class ExecutionAttempt:
    """Lifecycle record of one leg."""
    leg_index: int
    side: Side
    venue: str
    symbol: str
    requested_size: float
    status: LegStatus = LegStatus.PENDING
    realized_price: Optional[float] = None
    fee_cost: float = 0.0
    receipt: Optional[str] = None
    error: Optional[str] = None
    submit_attempts: int = 0
    confirm_polls: int = 0
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (LegStatus.CONFIRMED, LegStatus.FAILED)

    def finalize(self, status: LegStatus, error: Optional[str] = None):
        self.status = status
        self.error = error
        self.finished_at = time.time()


@dataclass(frozen=True, slots=True)
class PhaseTransition:
    phase: ExecutionPhase
    leg: Optional[int] = None

    @property
    def label(self) -> str:
        if self.leg is None:
            return self.phase.value
        return f"LEG{self.leg + 1}_{self.phase.value}"


@dataclass(slots=True)
class ExecutionOutcome:
    opportunity: Opportunity
    kind: OutcomeKind
    executed_size: float
    legs: List[ExecutionAttempt] = field(default_factory=list)
    phase_log: List[PhaseTransition] = field(default_factory=list)
    realized_pnl: float = 0.0
    reason: str = ""
    finished_at: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.SETTLED

    @property
    def total_fees(self) -> float:
        return sum(leg.fee_cost for leg in self.legs)

    @property
    def confirmed_legs(self) -> List[ExecutionAttempt]:
        return [leg for leg in self.legs if leg.status is LegStatus.CONFIRMED]

    @property
    def phases(self) -> List[str]:
        return [t.label for t in self.phase_log]


@dataclass(frozen=True, slots=True)
class TradeRecord:
    """Ring-buffer entry summarising one execution attempt."""
    timestamp: float
    success: bool
    realized_pnl: float
    fees: float
    size: float
    assets: Tuple[str, ...]
    kind: OutcomeKind

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "success": self.success,
            "realized_pnl": self.realized_pnl,
            "fees": self.fees,
            "size": self.size,
            "assets": list(self.assets),
            "kind": self.kind.value,
        }
