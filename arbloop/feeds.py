# arbloop/feeds.py
import asyncio
import aiohttp
import json
import time
import logging
from typing import Callable, Dict, List, Optional, Sequence

from .exceptions import VenueError
from .models import PriceSample
from .price_cache import PriceCache
from .venues import Venue

RECONNECT_DELAY = 2.0


def book_sample(venue: str, symbol: str, bid: float, bid_vol: float, ask: float, ask_vol: float) -> PriceSample:
    """Mid price; liquidity is the notional resting at the touch on both sides."""
    return PriceSample(
        symbol=symbol,
        venue=venue,
        price=(bid + ask) / 2,
        liquidity=bid * bid_vol + ask * ask_vol,
        timestamp=time.time(),
    )


class ExchangeStream:
    venue = ""

    def __init__(self, symbols: List[str], callback: Callable[[PriceSample], None]):
        self.symbols = symbols
        self.callback = callback
        self.ws = None
        # 'SOLUSDT' -> 'SOL/USDT'
        self._by_native: Dict[str, str] = {self.native(s): s for s in symbols}

    @staticmethod
    def native(symbol: str) -> str:
        return symbol.replace('/', '').upper()

    def resolve(self, native: str) -> Optional[str]:
        return self._by_native.get(native.upper())

    async def connect(self, session: aiohttp.ClientSession):
        raise NotImplementedError


class BinanceStream(ExchangeStream):
    venue = "binance"

    async def connect(self, session: aiohttp.ClientSession):
        streams = [f"{self.native(s).lower()}@bookTicker" for s in self.symbols]
        url = f"wss://stream.binance.com:9443/ws/{'/'.join(streams)}"

        async with session.ws_connect(url) as ws:
            self.ws = ws
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    symbol = self.resolve(data.get('s', ''))
                    if symbol is None:
                        continue
                    self.callback(book_sample(self.venue, symbol,
                                              float(data['b']), float(data['B']),
                                              float(data['a']), float(data['A'])))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break


class OkxStream(ExchangeStream):
    venue = "okx"

    @staticmethod
    def native(symbol: str) -> str:
        return symbol.replace('/', '-').upper()

    async def connect(self, session: aiohttp.ClientSession):
        url = "wss://ws.okx.com:8443/ws/v5/public"
        async with session.ws_connect(url) as ws:
            self.ws = ws
            args = [{"channel": "tickers", "instId": self.native(s)} for s in self.symbols]
            await ws.send_json({"op": "subscribe", "args": args})

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    for t in data.get('data', []):
                        symbol = self.resolve(t.get('instId', ''))
                        if symbol is None:
                            continue
                        self.callback(book_sample(self.venue, symbol,
                                                  float(t['bidPx']), float(t['bidSz']),
                                                  float(t['askPx']), float(t['askSz'])))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break


class BybitStream(ExchangeStream):
    venue = "bybit"

    async def connect(self, session: aiohttp.ClientSession):
        url = "wss://stream.bybit.com/v5/public/spot"
        async with session.ws_connect(url) as ws:
            self.ws = ws
            args = [f"tickers.{self.native(s)}" for s in self.symbols]
            await ws.send_json({"op": "subscribe", "args": args, "req_id": "1001"})

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    topic = data.get('topic', '')
                    if not topic.startswith('tickers.'):
                        continue
                    symbol = self.resolve(topic.split('.', 1)[1])
                    t = data.get('data') or {}
                    # spot tickers carry no book sizes, fall back to last price
                    if symbol is None or 'lastPrice' not in t:
                        continue
                    self.callback(PriceSample(
                        symbol=symbol,
                        venue=self.venue,
                        price=float(t['lastPrice']),
                        volume_24h=float(t['turnover24h']) if t.get('turnover24h') else None,
                        timestamp=time.time(),
                    ))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break


STREAMS = {cls.venue: cls for cls in (BinanceStream, OkxStream, BybitStream)}


class StreamingFeed:
    """
    Runs one websocket per selected venue and publishes every quote into the PriceCache.
    Dropped connections are retried until shutdown.
    """
    def __init__(self, venues: Sequence[str], symbols: List[str], cache: PriceCache, logger: logging.Logger):
        self.venues = [v for v in venues if v in STREAMS]
        self.symbols = symbols
        self.cache = cache
        self.logger = logger
        self.running = False
        self._session: Optional[aiohttp.ClientSession] = None
        self.tasks: List[asyncio.Task] = []

    def _handle_update(self, sample: PriceSample):
        self.cache.update(sample)

    async def start(self):
        self.running = True
        self._session = aiohttp.ClientSession()
        streams = [STREAMS[v](self.symbols, self._handle_update) for v in self.venues]
        self.logger.info(f"⚡ CONNECTING {len(streams)} STREAMS FOR {len(self.symbols)} MARKETS...")
        self.tasks = [asyncio.create_task(self._run_stream_forever(s)) for s in streams]

    async def _run_stream_forever(self, stream: ExchangeStream):
        while self.running:
            try:
                await stream.connect(self._session)
            except Exception as e:
                self.logger.error(f"WS Error ({stream.venue}): {type(e).__name__}: {e}")
            if self.running:
                await asyncio.sleep(RECONNECT_DELAY)

    async def shutdown(self):
        self.running = False
        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        if self._session:
            await self._session.close()


class VenuePollingFeed:
    """REST fallback: polls Venue.get_prices for venues without a stream."""
    def __init__(self, venues: Sequence[Venue], symbols: List[str], cache: PriceCache,
                 logger: logging.Logger, interval: float = 2.0):
        self.venues = list(venues)
        self.symbols = symbols
        self.cache = cache
        self.logger = logger
        self.interval = interval
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self) -> int:
        stored = 0
        for venue in self.venues:
            try:
                samples = await venue.get_prices(self.symbols)
            except VenueError as e:
                self.logger.warning(f"⚠️ Price poll failed: {e}")
                continue
            stored += self.cache.update_many(samples)
        return stored

    async def _run(self):
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                self.logger.error(f"Price poll error: {type(e).__name__}: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def start(self):
        self.logger.info(f"📡 POLLING {len(self.venues)} VENUE(S) EVERY {self.interval:.1f}s")
        self._task = asyncio.create_task(self._run())

    async def shutdown(self):
        self._stop.set()
        if self._task:
            await self._task
