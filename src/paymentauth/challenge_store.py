"""Challenge issuance and single-use bookkeeping."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import PaymentAuthSettings
from .encoding import generate_challenge_id
from .storage import InMemoryKeyValueStore, KeyValueStore
from .types import INTENT_CHARGE, ChargeRequest, PaymentChallenge

logger = logging.getLogger(__name__)

KEY_PREFIX = "challenge:"

# Stored entries outlive their expiry by this much so late credentials still
# resolve to PAYMENT_EXPIRED rather than UNKNOWN_CHALLENGE
CHALLENGE_TTL_MARGIN_MS = 60_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    # fromisoformat only accepts "Z" from Python 3.11 on
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(slots=True)
class ChallengeEntry:
    challenge: PaymentChallenge
    used: bool = False

    @property
    def expires_at(self) -> datetime:
        return parse_timestamp(self.challenge.expires)

    def ttl_ms(self, now: Optional[datetime] = None) -> int:
        remaining = self.expires_at - (now or utcnow())
        return max(int(remaining.total_seconds() * 1000) + CHALLENGE_TTL_MARGIN_MS, 1)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """A challenge is unusable at and after its expiry instant."""
        return self.expires_at <= (now or utcnow())

    def to_record(self) -> dict:
        return {"challenge": self.challenge.to_dict(), "used": self.used}

    @classmethod
    def from_record(cls, record: dict) -> "ChallengeEntry":
        return cls(challenge=PaymentChallenge.from_dict(record["challenge"]), used=bool(record["used"]))


class ChallengeStore:
    """Stores issued challenges keyed by id.

    Entries carry a store TTL of their validity plus a margin, and every write
    keeps the remaining TTL. Purging on issuance still removes entries that
    are past expiry but inside the margin.
    """

    def __init__(self, store: Optional[KeyValueStore] = None):
        self._store = store if store is not None else InMemoryKeyValueStore()

    @staticmethod
    def _key(challenge_id: str) -> str:
        return f"{KEY_PREFIX}{challenge_id}"

    async def create(self, settings: PaymentAuthSettings) -> PaymentChallenge:
        """Mint, store and return a fresh challenge for the configured charge."""
        expires = isoformat(utcnow() + timedelta(milliseconds=settings.challenge_validity_ms))
        challenge = PaymentChallenge(
            id=generate_challenge_id(),
            realm=settings.realm,
            method=settings.method,
            intent=INTENT_CHARGE,
            request=ChargeRequest(
                amount=settings.amount,
                asset=settings.asset,
                destination=settings.destination,
                expires=expires,
            ),
            expires=expires,
            description=settings.description,
        )
        await self._store.set(
            self._key(challenge.id),
            ChallengeEntry(challenge).to_record(),
            ttl_ms=settings.challenge_validity_ms + CHALLENGE_TTL_MARGIN_MS,
        )
        await self.purge_expired()
        logger.debug("Issued challenge %s (expires=%s)", challenge.id, expires)
        return challenge

    async def get(self, challenge_id: str) -> Optional[ChallengeEntry]:
        record = await self._store.get(self._key(challenge_id))
        return ChallengeEntry.from_record(record) if record is not None else None

    async def mark_used(self, challenge_id: str) -> bool:
        """Atomically flip ``used`` from False to True.

        Returns False if the challenge is gone or another caller already
        consumed it.
        """
        entry = await self.get(challenge_id)
        if entry is None or entry.used:
            return False
        unused = entry.to_record()
        entry.used = True
        return await self._store.compare_and_swap(
            self._key(challenge_id), unused, entry.to_record(), ttl_ms=entry.ttl_ms()
        )

    async def unmark_used(self, challenge_id: str) -> bool:
        """Revert a consumed challenge so the client may retry."""
        entry = await self.get(challenge_id)
        if entry is None or not entry.used:
            return False
        used = entry.to_record()
        entry.used = False
        return await self._store.compare_and_swap(
            self._key(challenge_id), used, entry.to_record(), ttl_ms=entry.ttl_ms()
        )

    async def delete(self, challenge_id: str) -> bool:
        return await self._store.delete(self._key(challenge_id))

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every entry whose expiry lies in the past.

        Returns:
            Number of entries removed.
        """
        current = now or utcnow()
        removed = 0
        for key, record in await self._store.scan(KEY_PREFIX):
            entry = ChallengeEntry.from_record(record)
            if entry.expires_at < current:
                if await self._store.delete(key):
                    removed += 1
        if removed:
            logger.debug("Purged %d expired challenges", removed)
        return removed


__all__ = [
    "CHALLENGE_TTL_MARGIN_MS",
    "ChallengeEntry",
    "ChallengeStore",
    "utcnow",
    "isoformat",
    "parse_timestamp",
]
