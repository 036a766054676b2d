"""Bounded background queue for work off the write path.

Embedding generation and semantic linking run here after an item is stored.
Failures are logged and counted, never raised to the caller that submitted
the work.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


@dataclass
class QueueStats:
    """Counters describing background work so far."""

    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    pending: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "submitted": self.submitted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
            "last_error": self.last_error,
        }


class BackgroundQueue:
    """Runs coroutines as tasks with at most ``max_concurrency`` in flight.

    Args:
        max_concurrency: Maximum number of tasks running at once

    Example:
        >>> queue = BackgroundQueue(max_concurrency=2)
        >>> queue.submit(store.embed_and_index(ref, text), label=ref.key)
        >>> await queue.drain()
        >>> queue.stats().succeeded
        1
    """

    def __init__(self, max_concurrency: int = 2):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._submitted = 0
        self._succeeded = 0
        self._failed = 0
        self._last_error: Optional[str] = None

    def submit(self, coro: Coroutine[Any, Any, Any], label: str = "task") -> asyncio.Task:
        """Schedule a coroutine on the running event loop.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise
        self._submitted += 1
        task = loop.create_task(self._run(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], label: str) -> Any:
        async with self._semaphore:
            try:
                result = await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failed += 1
                self._last_error = f"{label}: {e}"
                logger.warning(f"Background task {label} failed: {e}")
                return None
            self._succeeded += 1
            return result

    async def drain(self) -> None:
        """Wait until every submitted task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def stats(self) -> QueueStats:
        return QueueStats(
            submitted=self._submitted,
            succeeded=self._succeeded,
            failed=self._failed,
            pending=self.pending,
            last_error=self._last_error,
        )

    async def close(self, cancel: bool = False) -> None:
        """Finish (or cancel) outstanding work."""
        if cancel:
            for task in list(self._tasks):
                task.cancel()
        await self.drain()
