"""
Tests for the ccxt venue adapter, stream parsing helpers and the REST polling feed.
Uses mocked ccxt clients; no network access.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt
import pytest

from arbloop.config import VenueSettings
from arbloop.exceptions import VenueError
from arbloop.feeds import (STREAMS, BinanceStream, ExchangeStream, OkxStream, StreamingFeed,
                           VenuePollingFeed, book_sample)
from arbloop.models import LegStatus, PriceSample, Side
from arbloop.venues import CcxtVenue, order_status, ticker_to_sample


@pytest.fixture
def client():
    mock = MagicMock()
    mock.markets = {"SOL/USDT": {}, "ETH/USDT": {}}
    mock.fetch_ticker = AsyncMock(return_value={"bid": 99.5, "ask": 100.0, "last": 99.8})
    mock.create_order = AsyncMock(return_value={"id": 42, "average": 100.2, "fee": {"cost": 0.1}})
    mock.fetch_order = AsyncMock(return_value={"status": "closed"})
    mock.fetch_tickers = AsyncMock(return_value={})
    mock.close = AsyncMock()
    mock.amount_to_precision = lambda symbol, amount: f"{amount:.4f}"
    mock.price_to_precision = lambda symbol, price: f"{price:.2f}"
    return mock


@pytest.fixture
def venue(client, logger):
    return CcxtVenue("binance", VenueSettings(fee_rate=0.001), logger, client=client)


# ─────────────────────────────────────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────────────────────────────────────


class TestTickerToSample:
    """Tests for ccxt ticker normalisation."""

    def test_mid_price_and_book_liquidity(self):
        sample = ticker_to_sample("okx", "SOL/USDT", {
            "bid": 99.0, "ask": 101.0, "bidVolume": 10.0, "askVolume": 20.0,
            "quoteVolume": 5e6, "timestamp": 1_700_000_000_000,
        })
        assert sample.price == 100.0
        assert sample.liquidity == pytest.approx(99.0 * 10 + 101.0 * 20)
        assert sample.volume_24h == 5e6
        assert sample.timestamp == 1_700_000_000.0

    def test_last_price_fallback(self):
        sample = ticker_to_sample("okx", "SOL/USDT", {"bid": None, "ask": None, "last": 98.0})
        assert sample.price == 98.0
        assert sample.liquidity is None

    def test_no_price(self):
        assert ticker_to_sample("okx", "SOL/USDT", {"last": None}) is None


class TestOrderStatus:
    """Tests for ccxt order status mapping."""

    @pytest.mark.parametrize("order,expected", [
        ({"status": "closed"}, LegStatus.CONFIRMED),
        ({"status": "open"}, LegStatus.SUBMITTED),
        ({"status": None}, LegStatus.SUBMITTED),
        ({"status": "canceled", "amount": 10, "filled": 10}, LegStatus.CONFIRMED),
        ({"status": "canceled", "amount": 10, "filled": 4}, LegStatus.FAILED),
        ({"status": "rejected"}, LegStatus.FAILED),
        ({"status": "expired", "amount": 1, "filled": 0}, LegStatus.FAILED),
    ])
    def test_mapping(self, order, expected):
        assert order_status(order) is expected


# ─────────────────────────────────────────────────────────────────────────────
# CcxtVenue
# ─────────────────────────────────────────────────────────────────────────────


class TestCcxtVenue:
    """Tests for swap submission and confirmation through a mocked client."""

    @pytest.mark.asyncio
    async def test_buy_is_ioc_limit_above_ask(self, venue, client):
        result = await venue.submit_swap(Side.BUY, "SOL/USDT", 2.5, 0.005)
        assert result.success is True
        assert result.receipt == "42"
        assert result.fee_cost == pytest.approx(0.1)
        assert result.price == pytest.approx(100.2)

        args = client.create_order.call_args.args
        assert args[:3] == ("SOL/USDT", "limit", "buy")
        assert args[3] == "2.5000"
        assert args[4] == "100.50"
        assert args[5] == {"timeInForce": "IOC"}

    @pytest.mark.asyncio
    async def test_sell_is_priced_below_bid(self, venue, client):
        await venue.submit_swap(Side.SELL, "SOL/USDT", 1.0, 0.01)
        assert client.create_order.call_args.args[4] == f"{99.5 * 0.99:.2f}"

    @pytest.mark.asyncio
    async def test_fee_estimated_when_missing(self, venue, client):
        client.create_order.return_value = {"id": "x1", "price": 100.0}
        result = await venue.submit_swap(Side.BUY, "SOL/USDT", 2.0, 0.005)
        assert result.fee_cost == pytest.approx(2.0 * 100.0 * 0.001)

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_rejection(self, venue, client):
        client.create_order.side_effect = ccxt.InsufficientFunds("balance too low")
        result = await venue.submit_swap(Side.BUY, "SOL/USDT", 2.0, 0.005)
        assert result.success is False
        assert result.error.startswith("insufficient funds")

    @pytest.mark.asyncio
    async def test_network_error_is_rejection(self, venue, client):
        client.fetch_ticker.side_effect = ccxt.NetworkError("reset")
        result = await venue.submit_swap(Side.BUY, "SOL/USDT", 2.0, 0.005)
        assert result.success is False
        assert venue.last_error == "reset"

    @pytest.mark.asyncio
    async def test_confirm(self, venue, client):
        assert await venue.confirm("42", "SOL/USDT") is LegStatus.CONFIRMED
        client.fetch_order.assert_awaited_with("42", "SOL/USDT")

    @pytest.mark.asyncio
    async def test_confirm_network_error_keeps_polling(self, venue, client):
        client.fetch_order.side_effect = ccxt.NetworkError("timeout")
        assert await venue.confirm("42", "SOL/USDT") is LegStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_confirm_order_not_found(self, venue, client):
        client.fetch_order.side_effect = ccxt.OrderNotFound("gone")
        assert await venue.confirm("42", "SOL/USDT") is LegStatus.FAILED

    @pytest.mark.asyncio
    async def test_confirm_exchange_error_raises(self, venue, client):
        client.fetch_order.side_effect = ccxt.ExchangeError("bad")
        with pytest.raises(VenueError):
            await venue.confirm("42", "SOL/USDT")

    @pytest.mark.asyncio
    async def test_get_prices_filters_unknown_markets(self, venue, client):
        client.fetch_tickers.return_value = {
            "SOL/USDT": {"bid": 99.0, "ask": 101.0, "timestamp": 1_700_000_000_000},
        }
        samples = await venue.get_prices(["SOL/USDT", "DOGE/USDT"])
        client.fetch_tickers.assert_awaited_once_with(["SOL/USDT"])
        assert [(s.symbol, s.venue, s.price) for s in samples] == [("SOL/USDT", "binance", 100.0)]

    @pytest.mark.asyncio
    async def test_get_prices_failure_raises(self, venue, client):
        client.fetch_tickers.side_effect = ccxt.ExchangeNotAvailable("maintenance")
        with pytest.raises(VenueError):
            await venue.get_prices(["SOL/USDT"])

    @pytest.mark.asyncio
    async def test_not_connected(self, logger):
        venue = CcxtVenue("binance", VenueSettings(), logger)
        with pytest.raises(VenueError):
            await venue.get_prices(["SOL/USDT"])

    @pytest.mark.asyncio
    async def test_connect_auth_failure(self, venue, client):
        client.load_markets = AsyncMock(side_effect=ccxt.AuthenticationError("bad key"))
        venue.cfg.api_key = "key"
        assert await venue.connect() is False
        assert venue.connected is False
        assert venue.last_error.startswith("AUTH FAILED")
        client.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_connect_public_only(self, venue, client):
        client.load_markets = AsyncMock()
        client.fetch_balance = AsyncMock()
        assert await venue.connect(check_auth=False) is True
        client.fetch_balance.assert_not_awaited()
        health = await venue.get_health_status()
        assert health["healthy"] is True


# ─────────────────────────────────────────────────────────────────────────────
# Feeds
# ─────────────────────────────────────────────────────────────────────────────


class TestStreams:
    """Tests for websocket symbol mapping."""

    def test_registry(self):
        assert set(STREAMS) == {"binance", "okx", "bybit"}

    def test_native_symbols(self):
        binance = BinanceStream(["SOL/USDT"], lambda s: None)
        okx = OkxStream(["SOL/USDT"], lambda s: None)
        assert binance.resolve("solusdt") == "SOL/USDT"
        assert okx.resolve("SOL-USDT") == "SOL/USDT"
        assert okx.resolve("ETH-USDT") is None

    def test_book_sample(self):
        sample = book_sample("binance", "SOL/USDT", 99.0, 2.0, 101.0, 3.0)
        assert sample.price == 100.0
        assert sample.liquidity == pytest.approx(99.0 * 2 + 101.0 * 3)


class FlakyStream(ExchangeStream):
    """Fails with a parse error on the first connect, stops the feed on the second."""
    venue = "binance"

    def __init__(self, feed):
        super().__init__(["SOL/USDT"], lambda s: None)
        self.feed = feed
        self.connects = 0

    async def connect(self, session):
        self.connects += 1
        if self.connects == 1:
            raise TypeError("float() argument must be a string or a real number, not 'NoneType'")
        self.feed.running = False


class TestStreamingFeed:
    """Tests for the websocket reconnect loop."""

    @pytest.mark.asyncio
    async def test_unexpected_error_reconnects(self, cache, logger, monkeypatch):
        monkeypatch.setattr("arbloop.feeds.RECONNECT_DELAY", 0.0)
        feed = StreamingFeed(["binance"], ["SOL/USDT"], cache, logger)
        feed.running = True
        stream = FlakyStream(feed)

        await asyncio.wait_for(feed._run_stream_forever(stream), timeout=1)

        assert stream.connects == 2


class TestVenuePollingFeed:
    """Tests for the REST fallback feed."""

    @pytest.mark.asyncio
    async def test_poll_once_stores_and_skips_failures(self, cache, logger, clock):
        good = MagicMock()
        good.get_prices = AsyncMock(return_value=[PriceSample("SOL/USDT", "kraken", 100.0, timestamp=clock())])
        bad = MagicMock()
        bad.get_prices = AsyncMock(side_effect=VenueError("gate", "down"))

        feed = VenuePollingFeed([bad, good], ["SOL/USDT"], cache, logger)
        assert await feed.poll_once() == 1
        assert cache.get("SOL/USDT", "kraken").price == 100.0

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, cache, logger):
        venue = MagicMock()
        venue.get_prices = AsyncMock(return_value=[])
        feed = VenuePollingFeed([venue], ["SOL/USDT"], cache, logger, interval=10.0)
        await feed.start()
        await asyncio.sleep(0)
        await feed.shutdown()
        venue.get_prices.assert_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_keeps_polling(self, cache, logger):
        venue = MagicMock()
        venue.get_prices = AsyncMock(side_effect=[TypeError("bad ticker")] + [[]] * 1000)
        feed = VenuePollingFeed([venue], ["SOL/USDT"], cache, logger, interval=0.001)
        await feed.start()
        for _ in range(20):
            if venue.get_prices.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await feed.shutdown()
        assert venue.get_prices.await_count >= 2
