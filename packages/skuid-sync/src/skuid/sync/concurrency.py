from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

from skuid.sync.context import CancelToken

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class Settled(Generic[T, R]):
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_thread_pool(
    items: Iterable[T],
    fn: Callable[[T], R],
    *,
    workers: int = 4,
    cancel: Optional[CancelToken] = None,
) -> List[Settled[T, R]]:
    """Run `fn` over `items` with at most `workers` in flight; never fail fast.

    Every item gets a Settled record in input order. Items that have not
    started when `cancel` fires are recorded as OperationCancelled.
    """
    items = list(items)
    if not items:
        return []

    results: List[Settled[T, R]] = [Settled(item=item) for item in items]

    def _run(item: T) -> R:
        if cancel is not None:
            cancel.raise_if_cancelled()
        return fn(item)

    ex = ThreadPoolExecutor(max_workers=max(1, int(workers)), thread_name_prefix="shard")
    try:
        fut_map = {ex.submit(_run, item): idx for idx, item in enumerate(items)}
        for fut in as_completed(fut_map):
            idx = fut_map[fut]
            try:
                results[idx].value = fut.result()
            except Exception as e:
                results[idx].error = e
    except BaseException:
        # Ctrl-C in the waiting thread: stop queued work, let running calls hit their timeouts.
        if cancel is not None:
            cancel.cancel("interrupted")
        ex.shutdown(wait=False, cancel_futures=True)
        raise
    ex.shutdown(wait=True)

    return results
