"""At-most-once gate for lifecycle events.

A claim is a single ``INSERT`` against the ``idempotency_keys`` primary key.
Whoever inserts the row owns the event; everyone else hits the unique
constraint and is told the event was already processed. Once a key's
``expires_at`` has passed it can be reclaimed with one conditional
``UPDATE``, so reclaiming is as race-free as the first claim.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from quotelink.domain.models import IdempotencyKey
from quotelink.domain.stages import EventKind
from quotelink.services.utils import from_iso, to_iso, utc_now
from quotelink.store.sqlite import SqliteStore

logger = structlog.get_logger(__name__)

DEFAULT_TTL = timedelta(hours=24)
VIEWED_TTL = timedelta(hours=1)


@dataclass(frozen=True)
class ClaimResult:
    key: str
    already_processed: bool


def derive_key(kind: EventKind, quote_id: str, revision_number: int) -> str:
    return f"{kind.value}:{quote_id}:{revision_number}"


class IdempotencyGuard:
    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def claim(self, key: str, ttl: timedelta = DEFAULT_TTL, now: datetime | None = None) -> ClaimResult:
        """Claim ``key`` for ``ttl``.

        Raises StoreUnavailableError when the store cannot be reached; callers
        must not treat that as "not yet processed".
        """
        now = now or utc_now()
        created_at = to_iso(now)
        expires_at = to_iso(now + ttl)
        with self.store.session() as session:
            try:
                session.execute(
                    "INSERT INTO idempotency_keys (key, created_at, expires_at) VALUES (?, ?, ?)",
                    (key, created_at, expires_at),
                )
            except sqlite3.IntegrityError:
                reclaimed = session.execute(
                    "UPDATE idempotency_keys SET created_at = ?, expires_at = ? "
                    "WHERE key = ? AND expires_at <= ?",
                    (created_at, expires_at, key, created_at),
                )
                if reclaimed != 1:
                    logger.info("idempotency.replay", key=key)
                    return ClaimResult(key=key, already_processed=True)
                logger.info("idempotency.reclaimed", key=key)
        return ClaimResult(key=key, already_processed=False)

    def lookup(self, key: str) -> IdempotencyKey | None:
        row = self.store.fetch_one(
            "SELECT key, created_at, expires_at FROM idempotency_keys WHERE key = ?",
            (key,),
        )
        if row is None:
            return None
        return IdempotencyKey(
            key=row["key"],
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
        )

    def is_claimed(self, key: str, now: datetime | None = None) -> bool:
        record = self.lookup(key)
        return record is not None and record.expires_at > (now or utc_now())

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        removed = self.store.execute(
            "DELETE FROM idempotency_keys WHERE expires_at <= ?",
            (to_iso(now),),
        )
        logger.info("idempotency.purged", removed=removed)
        return removed
