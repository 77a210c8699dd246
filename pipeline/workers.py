"""
Bounded worker pools, one per category of pipeline work.

Blocking calls (classification requests in particular) run on these
threads, never on the caller's thread, so one slow book does not hold up
others. Limits come from config.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

EXTRACTION = "extraction"
AI_ANALYSIS = "ai_analysis"
DEFAULT = "default"


def default_limits() -> Dict[str, int]:
    return {
        EXTRACTION: config.EXTRACTION_CONCURRENCY,
        AI_ANALYSIS: config.AI_ANALYSIS_CONCURRENCY,
        DEFAULT: config.DEFAULT_CONCURRENCY,
    }


class WorkerPools:
    """Named ThreadPoolExecutors with fixed concurrency limits."""

    def __init__(self, limits: Optional[Dict[str, int]] = None):
        self.limits = limits or default_limits()
        self._pools: Dict[str, ThreadPoolExecutor] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _pool(self, category: str) -> ThreadPoolExecutor:
        if category not in self.limits:
            raise KeyError(f"Unknown worker pool: {category}")
        with self._lock:
            if self._closed:
                raise RuntimeError("Worker pools have been shut down")
            pool = self._pools.get(category)
            if pool is None:
                pool = ThreadPoolExecutor(
                    max_workers=self.limits[category],
                    thread_name_prefix=f"{category}-worker"
                )
                self._pools[category] = pool
                logger.info(f"Started '{category}' pool with {self.limits[category]} workers")
            return pool

    def submit(self, category: str, fn: Callable, *args, **kwargs) -> Future:
        """Schedule `fn` on the pool for `category`."""
        return self._pool(category).submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.shutdown(wait=wait)

    def __enter__(self) -> "WorkerPools":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)
