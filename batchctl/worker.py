# batchctl/worker.py
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, TypeVar

from .readers import PARTITION_END_KEY, PARTITION_START_KEY

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RangePartitioner:
    """Split positions [0, total) into `grid_size` contiguous ranges."""

    def __init__(self, grid_size: int):
        if grid_size <= 0:
            raise ValueError("grid_size must be > 0")
        self.grid_size = grid_size

    def partition(self, total: int) -> List[Dict[str, int]]:
        size, extra = divmod(max(total, 0), self.grid_size)
        ranges = []
        start = 0
        for i in range(self.grid_size):
            end = start + size + (1 if i < extra else 0)
            ranges.append({PARTITION_START_KEY: start, PARTITION_END_KEY: end})
            start = end
        return ranges


def run_partitions(tasks: List[Callable[[], T]], max_threads: int) -> List[T]:
    """
    Run independent tasks on at most `max_threads` worker threads and
    return their results in submission order. Each task owns its own
    reader/pipeline/writer; nothing mutable is shared between them.
    """
    if not tasks:
        return []
    workers = max(1, min(max_threads, len(tasks)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch-worker") as pool:
        futures = [pool.submit(t) for t in tasks]
        try:
            return [f.result() for f in futures]
        except KeyboardInterrupt:
            # parent interrupted -> drop queued partitions, running ones finish their chunk
            for f in futures:
                f.cancel()
            raise


class TaskPool:
    """Bounded pool for launching whole jobs concurrently."""

    def __init__(self, max_threads: int):
        self.max_threads = max_threads
        self._pool: Optional[ThreadPoolExecutor] = None

    def submit(self, fn: Callable[..., T], *args, **kwargs) -> "Future[T]":
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_threads, thread_name_prefix="batch-job")
        return self._pool.submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
