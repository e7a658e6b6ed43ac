# arbloop/simulator.py
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
import itertools
import logging
import time

from .exceptions import VenueError
from .models import LegStatus, PriceSample, Side, SwapResult
from .price_cache import PriceCache
from .venues import Venue


@dataclass
class ScriptedFill:
    """
    One scripted answer to submit_swap.
    `pending_polls` confirm() calls return SUBMITTED before `final_status` is reported.
    A None fee means amount * price * fee_rate on success and 0 on rejection.
    """
    accepted: bool = True
    final_status: LegStatus = LegStatus.CONFIRMED
    pending_polls: int = 0
    fee_cost: Optional[float] = None
    error: str = "simulated rejection"


class ExecutionSimulator(Venue):
    """
    Deterministic paper venue. Fills follow the queued script in order and
    fall back to instant confirmed fills once the script runs dry.
    Used for dry runs and as the execution double in tests.
    """
    def __init__(self, name: str, fee_rate: float = 0.001,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.time,
                 price_source: Optional[PriceCache] = None):
        self.name = name
        self.price_source = price_source
        self.fee_rate = fee_rate
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.prices: Dict[str, Tuple[float, Optional[float]]] = {}
        self.submissions: List[Dict[str, Any]] = []
        self.confirm_calls = 0
        self._script: Deque[ScriptedFill] = deque()
        self._orders: Dict[str, List[Any]] = {}
        self._ids = itertools.count(1)
        self.closed = False

    def set_price(self, symbol: str, price: float, liquidity: Optional[float] = None):
        self.prices[symbol] = (price, liquidity)

    def script(self, *fills: ScriptedFill):
        self._script.extend(fills)

    async def get_prices(self, symbols: List[str]) -> List[PriceSample]:
        now = self.clock()
        return [PriceSample(s, self.name, self.prices[s][0], liquidity=self.prices[s][1], timestamp=now)
                for s in symbols if s in self.prices]

    async def submit_swap(self, side: Side, symbol: str, amount: float, slippage_budget: float) -> SwapResult:
        fill = self._script.popleft() if self._script else ScriptedFill()
        self.submissions.append({"side": side, "symbol": symbol, "amount": amount, "slippage": slippage_budget})

        if not fill.accepted:
            self.logger.debug(f"[{self.name}] rejected {side.value} {amount:.6f} {symbol}: {fill.error}")
            return SwapResult(False, error=fill.error, fee_cost=fill.fee_cost or 0.0)

        price = self._price(symbol)
        fee = fill.fee_cost if fill.fee_cost is not None else amount * price * self.fee_rate
        receipt = f"{self.name}-{next(self._ids)}"
        # [polls remaining, final status]
        self._orders[receipt] = [fill.pending_polls, fill.final_status]
        self.logger.debug(f"[{self.name}] accepted {side.value} {amount:.6f} {symbol} @ {price} -> {receipt}")
        return SwapResult(True, receipt=receipt, fee_cost=fee, price=price)

    def _price(self, symbol: str) -> float:
        if symbol in self.prices:
            return self.prices[symbol][0]
        if self.price_source is not None:
            sample = self.price_source.get(symbol, self.name)
            if sample is not None:
                return sample.price
        raise VenueError(self.name, f"no price for {symbol}")

    async def confirm(self, receipt: str, symbol: Optional[str] = None) -> LegStatus:
        self.confirm_calls += 1
        order = self._orders.get(receipt)
        if order is None:
            return LegStatus.FAILED
        if order[0] > 0:
            order[0] -= 1
            return LegStatus.SUBMITTED
        return order[1]

    async def get_health_status(self) -> Dict[str, Any]:
        return {"venue": self.name, "healthy": not self.closed, "simulated": True,
                "pending_script": len(self._script)}

    async def close(self):
        self.closed = True
