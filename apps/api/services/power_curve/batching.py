"""
Bounded, batch-joined concurrent execution.

Items are split into fixed-size batches. Each batch is submitted to a
thread pool and fully joined before the next one starts, with an optional
pause in between so downstream storage is not flooded. Exceptions raised
by `fn` are captured per item, never propagated.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class Outcome(Generic[T, R]):
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def run_in_batches(
    items: Sequence[T],
    fn: Callable[[T], R],
    batch_size: int,
    max_workers: int,
    delay_s: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> List[Outcome[T, R]]:
    """Apply `fn` to every item; outcomes come back in input order."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    if not items:
        return []

    outcomes: List[Outcome[T, R]] = []
    workers = max(1, min(max_workers, batch_size))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="power-curve") as pool:
        for index, batch in enumerate(_chunks(items, batch_size)):
            if index > 0 and delay_s > 0:
                sleep(delay_s)
            futures = [(item, pool.submit(fn, item)) for item in batch]
            for item, future in futures:
                try:
                    outcomes.append(Outcome(item=item, result=future.result()))
                except Exception as e:
                    outcomes.append(Outcome(item=item, error=e))
    return outcomes
