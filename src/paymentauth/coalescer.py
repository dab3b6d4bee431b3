"""Deduplication of concurrent verifications for the same reference."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VerificationCoalescer(Generic[T]):
    """Runs at most one verification per reference at a time.

    Callers that arrive while a verification for the same reference is in
    flight await the same task and receive its result or exception. The entry
    is dropped once the task settles, so a later call runs fresh.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task[T]] = {}

    async def verify(self, reference: str, run_verify: Callable[[], Coroutine[Any, Any, T]]) -> T:
        key = reference.lower()
        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(run_verify())
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug("Joining in-flight verification for %s", reference)
        # shield: one cancelled waiter must not cancel the shared call
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Verification for %s raised %r", key, task.exception())

    def pending_count(self) -> int:
        return len(self._pending)


__all__ = ["VerificationCoalescer"]
