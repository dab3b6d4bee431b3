"""Time-windowed replay protection for transaction references.

Payment credentials are bearer-style and single-use. Every accepted
reference is remembered for ``window_ms``; a second claim inside the window
is rejected no matter which challenge it arrives with.

Two usage patterns:
- ``mark_used`` for a one-shot check-and-insert
- ``begin_verification`` / ``commit_verification`` / ``rollback_verification``
  when verification is asynchronous and may fail, so that a transient
  verifier outage does not permanently burn a legitimate transaction
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from .config import DEFAULT_REPLAY_MAX_ENTRIES, DEFAULT_REPLAY_WINDOW_MS
from .storage import InMemoryKeyValueStore, KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "replay:"

STATE_PENDING = "pending"
STATE_VERIFIED = "verified"


class ReplayProtection:
    """Tracks references accepted inside the retention window.

    Args:
        window_ms: Retention window; entries older than this are evicted
            lazily and no longer block resubmission.
        store: Backing store. Defaults to an in-memory store bounded by
            ``max_entries``.
        max_entries: Size bound for the default in-memory store.
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_REPLAY_WINDOW_MS,
        store: Optional[KeyValueStore] = None,
        max_entries: int = DEFAULT_REPLAY_MAX_ENTRIES,
    ):
        self.window_ms = window_ms
        self._store = store if store is not None else InMemoryKeyValueStore(max_entries=max_entries)

    @staticmethod
    def _key(reference: str) -> str:
        return f"{KEY_PREFIX}{reference.lower()}"

    @staticmethod
    def _record(state: str) -> dict:
        return {"state": state, "accepted_at": int(time.time() * 1000)}

    async def _claim(self, reference: str, state: str) -> bool:
        claimed = await self._store.compare_and_swap(
            self._key(reference), None, self._record(state), ttl_ms=self.window_ms
        )
        if not claimed:
            logger.warning("Replay detected for reference %s", reference)
        return claimed

    async def mark_used(self, reference: str) -> bool:
        """Insert ``reference`` as accepted. Returns False if already present."""
        return await self._claim(reference, STATE_VERIFIED)

    async def begin_verification(self, reference: str) -> bool:
        """Reserve ``reference`` for an in-flight verification.

        Returns False if the reference is already reserved or accepted.
        """
        return await self._claim(reference, STATE_PENDING)

    async def commit_verification(self, reference: str) -> None:
        """Finalize a reservation as accepted, restarting its window."""
        await self._store.set(self._key(reference), self._record(STATE_VERIFIED), ttl_ms=self.window_ms)

    async def rollback_verification(self, reference: str) -> None:
        """Release a pending reservation. Accepted references stay blocked."""
        key = self._key(reference)
        current = await self._store.get(key)
        if current is not None and current.get("state") == STATE_PENDING:
            await self._store.compare_and_swap(key, current, None)

    async def is_used(self, reference: str) -> bool:
        return await self._store.get(self._key(reference)) is not None

    async def size(self) -> int:
        return len(await self._store.scan(KEY_PREFIX))


__all__ = [
    "STATE_PENDING",
    "STATE_VERIFIED",
    "ReplayProtection",
]
