# arbloop/context.py
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable
import logging
import time

from .config import Settings
from .logger import child_logger


@dataclass
class BotContext:
    """
    Explicit bundle of settings, logger and clock handed to every component.
    Tests inject a fake clock to move through calendar days.
    """
    settings: Settings
    logger: logging.Logger
    clock: Callable[[], float] = field(default=time.time)

    def now(self) -> float:
        return self.clock()

    def today(self) -> date:
        return datetime.fromtimestamp(self.clock()).date()

    def logger_for(self, component: str) -> logging.Logger:
        return child_logger(self.logger, component)
