from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from quotelink.domain.errors import StoreUnavailableError
from quotelink.domain.stages import EventKind
from quotelink.services.idempotency import VIEWED_TTL, IdempotencyGuard, derive_key
from quotelink.store.sqlite import SqliteStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _store(tmp_path: Path) -> SqliteStore:
    db_path = tmp_path / "test.sqlite"
    store = SqliteStore(db_path)
    schema_path = (
        Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"
    )
    store.apply_schema(schema_path)
    return store


def test_derive_key() -> None:
    assert derive_key(EventKind.ACCEPTED, "q-1", 3) == "accepted:q-1:3"


def test_second_claim_is_already_processed(tmp_path: Path) -> None:
    guard = IdempotencyGuard(_store(tmp_path))

    first = guard.claim("revision_sent:q-1:1", now=NOW)
    second = guard.claim("revision_sent:q-1:1", now=NOW + timedelta(hours=23))

    assert first.already_processed is False
    assert second.already_processed is True
    assert guard.is_claimed("revision_sent:q-1:1", now=NOW + timedelta(hours=1))
    assert not guard.is_claimed("revision_sent:q-1:1", now=NOW + timedelta(hours=24))
    record = guard.lookup("revision_sent:q-1:1")
    assert record.created_at == NOW
    assert record.expires_at == NOW + timedelta(hours=24)
    assert guard.lookup("revision_sent:q-1:2") is None


def test_expired_key_can_be_reclaimed(tmp_path: Path) -> None:
    guard = IdempotencyGuard(_store(tmp_path))
    guard.claim("viewed:q-1:1", ttl=VIEWED_TTL, now=NOW)

    again = guard.claim("viewed:q-1:1", ttl=VIEWED_TTL, now=NOW + timedelta(hours=2))

    assert again.already_processed is False
    assert guard.claim("viewed:q-1:1", ttl=VIEWED_TTL, now=NOW + timedelta(hours=2)).already_processed


def test_purge_expired(tmp_path: Path) -> None:
    store = _store(tmp_path)
    guard = IdempotencyGuard(store)
    guard.claim("viewed:q-1:1", ttl=VIEWED_TTL, now=NOW)
    guard.claim("revision_sent:q-1:1", now=NOW)

    removed = guard.purge_expired(now=NOW + timedelta(hours=2))

    assert removed == 1
    rows = store.fetch_all("SELECT key FROM idempotency_keys")
    assert [row["key"] for row in rows] == ["revision_sent:q-1:1"]


def test_claim_fails_closed_when_store_unavailable(tmp_path: Path) -> None:
    # A directory cannot be opened as a database file.
    guard = IdempotencyGuard(SqliteStore(tmp_path))

    with pytest.raises(StoreUnavailableError):
        guard.claim("revision_sent:q-1:1", now=NOW)


def test_concurrent_claims_have_one_winner(tmp_path: Path) -> None:
    guard = IdempotencyGuard(_store(tmp_path))

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: guard.claim("accepted:q-1:1", now=NOW), range(8)))

    assert sum(1 for result in results if not result.already_processed) == 1
