# arbloop/logger.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
from datetime import datetime, timezone
import logging
import sys
import os
from typing import Optional, Protocol
from rich.logging import RichHandler

from .models import Opportunity, ExecutionOutcome

OPPORTUNITY_HEADER = ["ts", "id", "strategy", "path", "profit_pct", "confidence", "trade_size", "est_profit"]
TRADE_HEADER = ["ts", "id", "kind", "path", "size", "legs_confirmed", "fees", "realized_pnl", "reason"]


class MonitoringSink(Protocol):
    """Fire-and-forget consumer of per-cycle records."""

    def record_opportunity(self, opp: Opportunity) -> None: ...

    def record_outcome(self, outcome: ExecutionOutcome) -> None: ...


class AuditTrail:
    """
    Non-blocking CSV audit of found opportunities and execution outcomes.
    Decouples disk I/O from the trading loop using an asyncio Queue.
    """
    def __init__(self, trade_path: str, opportunity_path: str):
        self.trade_path = trade_path
        self.opportunity_path = opportunity_path
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Creates the log files (with headers when new) and starts the background writer.
        """
        for path, header in ((self.trade_path, TRADE_HEADER), (self.opportunity_path, OPPORTUNITY_HEADER)):
            directory = os.path.dirname(path)
            if directory and not os.path.exists(directory):
                os.makedirs(directory, exist_ok=True)
            if not os.path.exists(path) or os.path.getsize(path) == 0:
                async with aiofiles.open(path, mode='w', newline='') as f:
                    await AsyncWriter(f, dialect='unix').writerow(header)
        self._worker_task = asyncio.create_task(self._writer_worker())

    def record_opportunity(self, opp: Opportunity):
        self._queue.put_nowait((self.opportunity_path, [
            _now_iso(), opp.id, opp.strategy, opp.cycle.path(),
            f"{opp.profit_percent:.6f}", f"{opp.confidence:.3f}",
            f"{opp.trade_size:.4f}", f"{opp.estimated_profit:.4f}",
        ]))

    def record_outcome(self, outcome: ExecutionOutcome):
        opp = outcome.opportunity
        self._queue.put_nowait((self.trade_path, [
            _now_iso(), opp.id, outcome.kind.value, opp.cycle.path(),
            f"{outcome.executed_size:.4f}", len(outcome.confirmed_legs),
            f"{outcome.total_fees:.6f}", f"{outcome.realized_pnl:.6f}", outcome.reason,
        ]))

    async def flush(self):
        await self._queue.join()

    async def stop(self):
        if self._worker_task is None:
            return
        await self.flush()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None

    async def _writer_worker(self):
        """
        Background consumer that writes to disk.
        """
        while True:
            path, row = await self._queue.get()
            try:
                async with aiofiles.open(path, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except Exception as e:
                # Fallback to stderr if disk I/O fails, don't crash the bot
                print(f"AUDIT FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def setup_console_logger(name: str, level: str, use_rich: bool = False):
    """
    Sets up the standard Python logger for console output.
    With use_rich=True the records go through RichHandler so they render above a Live dashboard.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        if use_rich:
            handler = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
            handler.setFormatter(logging.Formatter('%(module)s | %(message)s'))
        else:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s'))
        logger.addHandler(handler)

    return logger


def child_logger(parent: logging.Logger, suffix: str) -> logging.Logger:
    return parent.getChild(suffix)
