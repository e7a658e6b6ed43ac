"""
Tests for the CSV audit trail and console logger setup.
"""

import csv
import logging

import pytest

from arbloop.logger import OPPORTUNITY_HEADER, TRADE_HEADER, AuditTrail, setup_console_logger
from arbloop.models import OutcomeKind


def read_rows(path):
    with open(path, newline="") as f:
        return list(csv.reader(f))


class TestAuditTrail:
    """Tests for the background CSV writer."""

    @pytest.mark.asyncio
    async def test_headers_and_rows(self, tmp_path, spread_opportunity, make_outcome):
        trades = tmp_path / "logs" / "trades.csv"
        opps = tmp_path / "logs" / "opportunities.csv"
        audit = AuditTrail(str(trades), str(opps))
        await audit.start()

        opp = spread_opportunity()
        audit.record_opportunity(opp)
        audit.record_outcome(make_outcome(OutcomeKind.SETTLED, pnl=12.5, opp=opp))
        await audit.stop()

        opp_rows = read_rows(opps)
        assert opp_rows[0] == OPPORTUNITY_HEADER
        assert opp_rows[1][1] == opp.id
        assert opp_rows[1][2] == "spread"

        trade_rows = read_rows(trades)
        assert trade_rows[0] == TRADE_HEADER
        assert trade_rows[1][2] == "SETTLED"
        assert float(trade_rows[1][7]) == pytest.approx(12.5)

    @pytest.mark.asyncio
    async def test_existing_file_keeps_header_once(self, tmp_path, spread_opportunity):
        trades, opps = tmp_path / "t.csv", tmp_path / "o.csv"
        for _ in range(2):
            audit = AuditTrail(str(trades), str(opps))
            await audit.start()
            audit.record_opportunity(spread_opportunity())
            await audit.stop()

        rows = read_rows(opps)
        assert rows.count(OPPORTUNITY_HEADER) == 1
        assert len(rows) == 3

    @pytest.mark.asyncio
    async def test_stop_without_start(self, tmp_path):
        audit = AuditTrail(str(tmp_path / "t.csv"), str(tmp_path / "o.csv"))
        await audit.stop()


class TestConsoleLogger:
    """Tests for setup_console_logger."""

    def test_idempotent(self):
        first = setup_console_logger("arbloop.tests.console", "DEBUG")
        second = setup_console_logger("arbloop.tests.console", "DEBUG")
        assert first is second
        assert len(second.handlers) == 1
        assert second.level == logging.DEBUG

    def test_rich_handler(self):
        from rich.logging import RichHandler
        logger = setup_console_logger("arbloop.tests.rich", "INFO", use_rich=True)
        assert isinstance(logger.handlers[0], RichHandler)
