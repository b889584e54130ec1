"""Bounded worker pool for fallible tasks."""

from __future__ import annotations

import concurrent.futures
import threading
from typing import Callable, Sequence, TypeVar

__all__ = ["run_with_concurrency"]

T = TypeVar("T")


def run_with_concurrency(
    tasks: Sequence[Callable[[], T]],
    limit: int,
    *,
    thread_name_prefix: str = "memory-batch",
) -> dict[int, T]:
    """Run ``tasks`` on at most ``limit`` threads, keyed by task index.

    Workers pull the next unclaimed task until the list is exhausted. A worker
    stops pulling after its task raises, while the remaining workers keep
    going; once every worker finishes the first recorded error is re-raised
    and all results are discarded. Running tasks are never cancelled.

    Example:
        >>> run_with_concurrency([lambda: 1, lambda: 2], limit=4)
        {0: 1, 1: 2}
    """

    if not tasks:
        return {}
    workers = min(max(1, limit), len(tasks))

    results: dict[int, T] = {}
    errors: list[BaseException] = []
    state_lock = threading.Lock()
    cursor = 0

    def _worker() -> None:
        nonlocal cursor
        while True:
            with state_lock:
                index = cursor
                cursor += 1
            if index >= len(tasks):
                return
            try:
                value = tasks[index]()
            except Exception as exc:
                with state_lock:
                    errors.append(exc)
                return
            with state_lock:
                results[index] = value

    with concurrent.futures.ThreadPoolExecutor(
        max_workers=workers,
        thread_name_prefix=thread_name_prefix,
    ) as executor:
        futures = [executor.submit(_worker) for _ in range(workers)]
        concurrent.futures.wait(futures)

    if errors:
        raise errors[0]
    return results
