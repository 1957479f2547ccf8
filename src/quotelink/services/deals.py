from __future__ import annotations

import sqlite3
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from quotelink.domain.models import Deal
from quotelink.domain.stages import ClosedReason, DealSource, DealStage, ValueType
from quotelink.services.utils import from_iso, from_text, to_iso, to_text
from quotelink.store.sqlite import SqliteSession, SqliteStore

DEAL_COLUMNS = (
    "deal_id",
    "account_id",
    "primary_contact_id",
    "owner_user_id",
    "stage",
    "deal_value",
    "value_type",
    "range_low",
    "range_high",
    "currency",
    "latest_quote_id",
    "latest_quote_revision_number",
    "source",
    "is_closed",
    "closed_reason",
    "last_activity_at",
    "next_action_at",
    "at_risk",
    "version",
    "created_at",
    "updated_at",
)

# Fields the engine may change through compare_and_set. Identity, version and
# timestamps are managed here.
MUTABLE_FIELDS = frozenset(
    {
        "stage",
        "deal_value",
        "value_type",
        "range_low",
        "range_high",
        "latest_quote_id",
        "latest_quote_revision_number",
        "is_closed",
        "closed_reason",
        "last_activity_at",
        "next_action_at",
        "at_risk",
    }
)


def row_to_deal(row: sqlite3.Row) -> Deal:
    return Deal(
        deal_id=row["deal_id"],
        account_id=row["account_id"],
        primary_contact_id=row["primary_contact_id"],
        owner_user_id=row["owner_user_id"],
        stage=DealStage(row["stage"]),
        deal_value=from_text(row["deal_value"]),
        value_type=ValueType(row["value_type"]),
        range_low=from_text(row["range_low"]),
        range_high=from_text(row["range_high"]),
        currency=row["currency"],
        latest_quote_id=row["latest_quote_id"],
        latest_quote_revision_number=row["latest_quote_revision_number"],
        source=DealSource(row["source"]),
        is_closed=bool(row["is_closed"]),
        closed_reason=ClosedReason(row["closed_reason"]) if row["closed_reason"] else None,
        last_activity_at=from_iso(row["last_activity_at"]),
        next_action_at=from_iso(row["next_action_at"]),
        at_risk=bool(row["at_risk"]),
        version=row["version"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def load_deal(session: SqliteSession, deal_id: str) -> Deal | None:
    row = session.fetch_one("SELECT * FROM deals WHERE deal_id = ?", (deal_id,))
    return row_to_deal(row) if row else None


def get_deal(store: SqliteStore, deal_id: str) -> Deal | None:
    with store.session() as session:
        return load_deal(session, deal_id)


def insert_deal(session: SqliteSession, deal: Deal) -> None:
    placeholders = ", ".join("?" for _ in DEAL_COLUMNS)
    session.execute(
        f"INSERT INTO deals ({', '.join(DEAL_COLUMNS)}) VALUES ({placeholders})",
        [_column_value(getattr(deal, column)) for column in DEAL_COLUMNS],
    )


def compare_and_set(
    session: SqliteSession, deal: Deal, changes: dict[str, Any], now: datetime
) -> bool:
    """Apply ``changes`` only if the stored row is still at ``deal.version``.

    Returns False when another writer got there first; the caller re-reads and
    retries. Every successful write bumps ``version`` and ``updated_at``.
    """
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported deal fields: {', '.join(sorted(unknown))}")
    updates = [f"{name} = ?" for name in changes]
    params: list[object] = [_column_value(value) for value in changes.values()]
    updates.extend(["version = version + 1", "updated_at = ?"])
    params.extend([to_iso(now), deal.deal_id, deal.version])
    query = f"UPDATE deals SET {', '.join(updates)} WHERE deal_id = ? AND version = ?"
    return session.execute(query, params) == 1


def list_deals(store: SqliteStore, open_only: bool = False, limit: int = 50) -> list[Deal]:
    where = "WHERE is_closed = 0" if open_only else ""
    rows = store.fetch_all(
        f"SELECT * FROM deals {where} ORDER BY updated_at DESC, deal_id LIMIT ?",
        (limit,),
    )
    return [row_to_deal(row) for row in rows]


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return to_text(value)
    if isinstance(value, datetime):
        return to_iso(value)
    return value
