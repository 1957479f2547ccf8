from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

from quotelink.domain import rules
from quotelink.domain.errors import NotFoundError
from quotelink.domain.models import Quote, QuoteLineItem, QuoteRevision
from quotelink.domain.stages import QuoteType, RevisionType
from quotelink.services.utils import from_iso, from_text, to_text, utc_now_iso
from quotelink.store.sqlite import SqliteSession, SqliteStore

DEFAULT_CURRENCY = "CAD"


@dataclass(frozen=True)
class LineItemInput:
    name: str
    range_low: Decimal | None = None
    range_high: Decimal | None = None
    line_total: Decimal | None = None


def add_quote(
    store: SqliteStore,
    account_id: str,
    contact_id: str | None,
    owner_user_id: str | None,
    quote_type: str = QuoteType.STANDARD.value,
    currency: str | None = None,
) -> str:
    rules.require(account_id, "account")
    rules.validate_enum(quote_type, [t.value for t in QuoteType], "quote_type")

    now = utc_now_iso()
    quote_id = str(uuid4())
    store.execute(
        "INSERT INTO quotes (quote_id, deal_id, account_id, primary_contact_id, owner_user_id, quote_type, "
        "currency, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            quote_id,
            None,
            account_id,
            contact_id,
            owner_user_id,
            quote_type,
            currency or DEFAULT_CURRENCY,
            now,
            now,
        ),
    )
    return quote_id


def add_revision(
    store: SqliteStore,
    quote_id: str,
    revision_type: str,
    total: Decimal | None,
    is_binding: bool,
    line_items: Sequence[LineItemInput] = (),
) -> int:
    """Append the next revision of a quote and return its number.

    Revisions are immutable snapshots, so this only ever inserts.
    """
    rules.validate_enum(revision_type, [t.value for t in RevisionType], "revision_type")
    if is_binding and total is None:
        raise rules.ValidationError("A binding revision needs a total.")

    now = utc_now_iso()
    with store.session(immediate=True) as session:
        if session.fetch_one("SELECT 1 FROM quotes WHERE quote_id = ?", (quote_id,)) is None:
            raise NotFoundError(f"Quote {quote_id} not found.")
        row = session.fetch_one(
            "SELECT COALESCE(MAX(revision_number), 0) AS latest FROM quote_revisions WHERE quote_id = ?",
            (quote_id,),
        )
        revision_number = row["latest"] + 1
        session.execute(
            "INSERT INTO quote_revisions (quote_id, revision_number, revision_type, total, is_binding, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (quote_id, revision_number, revision_type, to_text(total), int(is_binding), now),
        )
        for order, item in enumerate(line_items):
            rules.require(item.name, "line item name")
            session.execute(
                "INSERT INTO quote_line_items (line_item_id, quote_id, revision_number, name, range_low, "
                "range_high, line_total, display_order, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    str(uuid4()),
                    quote_id,
                    revision_number,
                    item.name,
                    to_text(item.range_low),
                    to_text(item.range_high),
                    to_text(item.line_total),
                    order,
                    now,
                ),
            )
    return revision_number


def load_quote(session: SqliteSession, quote_id: str) -> Quote:
    row = session.fetch_one("SELECT * FROM quotes WHERE quote_id = ?", (quote_id,))
    if row is None:
        raise NotFoundError(f"Quote {quote_id} not found.")
    return _row_to_quote(row)


def load_revision(session: SqliteSession, quote_id: str, revision_number: int) -> QuoteRevision:
    row = session.fetch_one(
        "SELECT * FROM quote_revisions WHERE quote_id = ? AND revision_number = ?",
        (quote_id, revision_number),
    )
    if row is None:
        raise NotFoundError(f"Revision {revision_number} of quote {quote_id} not found.")
    items = load_line_items(session, quote_id, revision_number)
    lows = [item.range_low for item in items if item.range_low is not None]
    highs = [item.range_high for item in items if item.range_high is not None]
    return QuoteRevision(
        quote_id=row["quote_id"],
        revision_number=row["revision_number"],
        revision_type=RevisionType(row["revision_type"]),
        total=from_text(row["total"]),
        is_binding=bool(row["is_binding"]),
        range_low=min(lows) if lows else None,
        range_high=max(highs) if highs else None,
        created_at=from_iso(row["created_at"]),
    )


def load_line_items(session: SqliteSession, quote_id: str, revision_number: int) -> list[QuoteLineItem]:
    rows = session.fetch_all(
        "SELECT * FROM quote_line_items WHERE quote_id = ? AND revision_number = ? ORDER BY display_order",
        (quote_id, revision_number),
    )
    return [
        QuoteLineItem(
            line_item_id=row["line_item_id"],
            quote_id=row["quote_id"],
            revision_number=row["revision_number"],
            name=row["name"],
            range_low=from_text(row["range_low"]),
            range_high=from_text(row["range_high"]),
            line_total=from_text(row["line_total"]),
            display_order=row["display_order"],
        )
        for row in rows
    ]


def link_quote(session: SqliteSession, quote_id: str, deal_id: str, now: str) -> None:
    # A quote's deal link is repointed, never cleared.
    if not deal_id:
        raise ValueError("deal_id is required to link a quote.")
    session.execute(
        "UPDATE quotes SET deal_id = ?, updated_at = ? WHERE quote_id = ?",
        (deal_id, now, quote_id),
    )


def get_quote(store: SqliteStore, quote_id: str) -> Quote:
    with store.session() as session:
        return load_quote(session, quote_id)


def linked_deal_id(store: SqliteStore, quote_id: str) -> str | None:
    row = store.fetch_one("SELECT deal_id FROM quotes WHERE quote_id = ?", (quote_id,))
    return row["deal_id"] if row else None


def _row_to_quote(row: sqlite3.Row) -> Quote:
    return Quote(
        quote_id=row["quote_id"],
        deal_id=row["deal_id"],
        account_id=row["account_id"],
        primary_contact_id=row["primary_contact_id"],
        owner_user_id=row["owner_user_id"],
        quote_type=QuoteType(row["quote_type"]),
        currency=row["currency"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )
