# arbloop/price_cache.py
import threading
import time
import logging
from typing import Callable, Dict, List, Optional

from .exceptions import StaleDataError
from .models import PriceSample, SampleKey


class PriceCache:
    """
    Freshest quote per (symbol, venue).
    Feed connectors may write from other tasks or threads; readers take a
    consistent copy with snapshot() so one detection pass never sees a
    half-applied update.
    """
    def __init__(self, max_age: float, logger: logging.Logger, clock: Callable[[], float] = time.time):
        self.max_age = max_age
        self.logger = logger
        self.clock = clock
        self._lock = threading.Lock()
        # { ('SOL/USDC', 'binance'): PriceSample }
        self._samples: Dict[SampleKey, PriceSample] = {}
        self.dropped_out_of_order = 0

    def update(self, sample: PriceSample) -> bool:
        """Stores the sample unless a newer one is already cached for its key."""
        with self._lock:
            current = self._samples.get(sample.key)
            if current is not None and sample.timestamp < current.timestamp:
                self.dropped_out_of_order += 1
                return False
            self._samples[sample.key] = sample
            return True

    def update_many(self, samples: List[PriceSample]) -> int:
        return sum(1 for s in samples if self.update(s))

    def _is_fresh(self, sample: PriceSample, now: float) -> bool:
        return sample.age(now) <= self.max_age

    def get_fresh(self, symbol: str, venue: str) -> PriceSample:
        """Latest sample for the key; raises StaleDataError past the staleness bound, KeyError when absent."""
        with self._lock:
            sample = self._samples[(symbol, venue)]
        now = self.clock()
        if not self._is_fresh(sample, now):
            raise StaleDataError(f"{symbol}@{venue} is {sample.age(now):.1f}s old (max {self.max_age:.1f}s)")
        return sample

    def snapshot(self) -> Dict[SampleKey, PriceSample]:
        """
        Atomic copy of every fresh sample. Stale samples are excluded, not fatal.
        """
        now = self.clock()
        with self._lock:
            view = dict(self._samples)
        fresh = {k: s for k, s in view.items() if self._is_fresh(s, now)}
        stale = len(view) - len(fresh)
        if stale:
            self.logger.debug(f"Excluded {stale} stale sample(s) older than {self.max_age:.1f}s")
        return fresh

    def get_latest_samples(self, symbol: str) -> List[PriceSample]:
        """One fresh sample per venue for the given symbol."""
        now = self.clock()
        with self._lock:
            matches = [s for (sym, _), s in self._samples.items() if sym == symbol]
        return [s for s in matches if self._is_fresh(s, now)]

    def get(self, symbol: str, venue: str) -> Optional[PriceSample]:
        with self._lock:
            return self._samples.get((symbol, venue))

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted({sym for sym, _ in self._samples})

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)
