# arbloop/venues.py
import ccxt.async_support as ccxt
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .config import VenueSettings
from .exceptions import VenueError
from .models import LegStatus, PriceSample, Side, SwapResult

FAILED_ORDER_STATES = {"canceled", "cancelled", "rejected", "expired"}


class Venue(ABC):
    """
    Capability interface every trading venue exposes to the core.
    Price reads feed the cache; swaps and confirmations drive the orchestrator.
    """
    name: str

    @abstractmethod
    async def get_prices(self, symbols: List[str]) -> List[PriceSample]:
        ...

    @abstractmethod
    async def submit_swap(self, side: Side, symbol: str, amount: float, slippage_budget: float) -> SwapResult:
        ...

    @abstractmethod
    async def confirm(self, receipt: str, symbol: Optional[str] = None) -> LegStatus:
        ...

    async def get_health_status(self) -> Dict[str, Any]:
        return {"venue": self.name, "healthy": True}

    async def close(self):
        pass


class CcxtVenue(Venue):
    """
    REST connection to one centralized exchange through ccxt.
    Swaps are IOC limit orders priced at the touch plus the slippage budget,
    so a fill never lands worse than the budget allows.
    """
    def __init__(self, name: str, settings: VenueSettings, logger: logging.Logger,
                 environment: str = "paper", client: Optional[ccxt.Exchange] = None):
        self.name = name
        self.cfg = settings
        self.logger = logger
        self.environment = environment
        self.client = client
        self.connected = client is not None
        self.last_error: Optional[str] = None
        self.last_latency_ms: Optional[float] = None

    def _build_client(self) -> ccxt.Exchange:
        ex_class = getattr(ccxt, self.name)
        client = ex_class({
            'apiKey': self.cfg.api_key,
            'secret': self.cfg.secret,
            'password': self.cfg.password,  # OKX/KuCoin require password
            'timeout': self.cfg.timeout_ms,
            'enableRateLimit': True,
            'options': {'defaultType': 'spot'}
        })
        if self.cfg.sandbox or self.environment == 'testnet':
            client.set_sandbox_mode(True)
        return client

    async def connect(self, check_auth: bool = True) -> bool:
        """
        Public API diagnostic (load_markets), then private API (fetch_balance) when
        credentials are expected. Returns False instead of raising.
        """
        label = self.name.upper()
        try:
            if self.client is None:
                self.client = self._build_client()
            started = time.perf_counter()
            await self.client.load_markets()
            self.last_latency_ms = (time.perf_counter() - started) * 1000
            if check_auth and self.cfg.api_key:
                await self.client.fetch_balance({'type': 'spot'})
            self.connected = True
            auth = "OK" if check_auth and self.cfg.api_key else "PUBLIC"
            self.logger.info(f"   ✅ {label:<10} | Markets: {len(self.client.markets or {})} | Latency: {self.last_latency_ms:.0f}ms | Auth: {auth}")
            return True

        except ccxt.PermissionDenied:
            self._connect_failed("PERMISSION DENIED: Key missing 'Spot Trading' or 'IP Whitelist' permissions.", critical=True)
        except ccxt.AccountSuspended:
            self._connect_failed("ACCOUNT SUSPENDED: Contact support immediately.", critical=True)
        except ccxt.AuthenticationError:
            self._connect_failed("AUTH FAILED: Invalid API Key or Secret.", critical=True)
        except ccxt.RequestTimeout:
            self._connect_failed("TIMEOUT: Exchange API is slow or down.")
        except ccxt.ExchangeNotAvailable:
            self._connect_failed("MAINTENANCE: Exchange is currently offline.")
        except (ccxt.BaseError, AttributeError) as e:
            self._connect_failed(f"UNKNOWN ERROR: {e}", critical=True)

        await self.close()
        return False

    def _connect_failed(self, message: str, critical: bool = False):
        self.connected = False
        self.last_error = message
        log = self.logger.critical if critical else self.logger.error
        log(f"   ❌ {self.name.upper():<10} | {message}")

    def _require_client(self) -> ccxt.Exchange:
        if self.client is None:
            raise VenueError(self.name, "not connected")
        return self.client

    async def get_prices(self, symbols: List[str]) -> List[PriceSample]:
        client = self._require_client()
        wanted = [s for s in symbols if not client.markets or s in client.markets]
        if not wanted:
            return []
        try:
            tickers = await client.fetch_tickers(wanted)
        except ccxt.BaseError as e:
            self.last_error = str(e)
            raise VenueError(self.name, f"fetch_tickers failed: {e}", e)

        samples = []
        for symbol, t in tickers.items():
            sample = ticker_to_sample(self.name, symbol, t)
            if sample is not None:
                samples.append(sample)
        return samples

    async def submit_swap(self, side: Side, symbol: str, amount: float, slippage_budget: float) -> SwapResult:
        client = self._require_client()
        try:
            ticker = await client.fetch_ticker(symbol)
            touch = ticker.get('ask') if side is Side.BUY else ticker.get('bid')
            touch = touch or ticker.get('last')
            if not touch:
                return SwapResult(False, error=f"no reference price for {symbol}")
            limit = touch * (1 + slippage_budget) if side is Side.BUY else touch * (1 - slippage_budget)
            order = await client.create_order(
                symbol, 'limit', side.value,
                client.amount_to_precision(symbol, amount),
                client.price_to_precision(symbol, limit),
                {'timeInForce': 'IOC'},
            )
        except ccxt.InsufficientFunds as e:
            return SwapResult(False, error=f"insufficient funds: {e}")
        except ccxt.InvalidOrder as e:
            return SwapResult(False, error=f"invalid order: {e}")
        except ccxt.NetworkError as e:
            self.last_error = str(e)
            return SwapResult(False, error=f"network error: {e}")
        except ccxt.BaseError as e:
            self.last_error = str(e)
            return SwapResult(False, error=str(e))

        price = order.get('average') or order.get('price') or touch
        fee = (order.get('fee') or {}).get('cost')
        if fee is None:
            fee = amount * price * self.cfg.fee_rate
        return SwapResult(True, receipt=str(order['id']), fee_cost=float(fee), price=float(price))

    async def confirm(self, receipt: str, symbol: Optional[str] = None) -> LegStatus:
        client = self._require_client()
        try:
            order = await client.fetch_order(receipt, symbol)
        except ccxt.OrderNotFound:
            return LegStatus.FAILED
        except ccxt.NetworkError as e:
            # transient; the caller keeps polling
            self.logger.warning(f"⚠️ {self.name} confirm({receipt}) network error: {e}")
            return LegStatus.SUBMITTED
        except ccxt.BaseError as e:
            raise VenueError(self.name, f"fetch_order failed: {e}", e)
        return order_status(order)

    async def get_health_status(self) -> Dict[str, Any]:
        return {
            "venue": self.name,
            "healthy": self.connected and self.last_error is None,
            "connected": self.connected,
            "latency_ms": self.last_latency_ms,
            "last_error": self.last_error,
        }

    async def close(self):
        if self.client is not None:
            await self.client.close()
        self.connected = False


def ticker_to_sample(venue: str, symbol: str, ticker: Dict[str, Any]) -> Optional[PriceSample]:
    """Mid price when both sides are quoted, last trade otherwise. Liquidity is top-of-book notional."""
    bid, ask = ticker.get('bid'), ticker.get('ask')
    price = (bid + ask) / 2 if bid and ask else ticker.get('last')
    if price is None:
        return None

    liquidity = None
    bid_vol, ask_vol = ticker.get('bidVolume'), ticker.get('askVolume')
    if bid and ask and bid_vol is not None and ask_vol is not None:
        liquidity = bid * bid_vol + ask * ask_vol

    ts = ticker.get('timestamp')
    return PriceSample(
        symbol=symbol,
        venue=venue,
        price=float(price),
        liquidity=liquidity,
        volume_24h=ticker.get('quoteVolume'),
        timestamp=ts / 1000 if ts else time.time(),
    )


def order_status(order: Dict[str, Any]) -> LegStatus:
    status = (order.get('status') or '').lower()
    if status == 'closed':
        return LegStatus.CONFIRMED
    if status in FAILED_ORDER_STATES:
        # IOC remainder cancelled after a complete fill still counts
        amount, filled = order.get('amount') or 0, order.get('filled') or 0
        if amount and filled >= amount:
            return LegStatus.CONFIRMED
        return LegStatus.FAILED
    return LegStatus.SUBMITTED
