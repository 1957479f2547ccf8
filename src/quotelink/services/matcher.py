from __future__ import annotations

from datetime import datetime, timedelta

from quotelink.services.utils import to_iso, utc_now
from quotelink.store.sqlite import SqliteSession

DEFAULT_DEDUPE_WINDOW_DAYS = 30

# Most recently touched deal first; equal timestamps prefer the larger deal.
_ORDER_BY = "ORDER BY updated_at DESC, CAST(deal_value AS REAL) DESC NULLS LAST, deal_id"


def find_matching_active_deal(
    session: SqliteSession,
    account_id: str,
    contact_id: str | None = None,
    dedupe_window_days: int = DEFAULT_DEDUPE_WINDOW_DAYS,
    now: datetime | None = None,
    linked_deal_id: str | None = None,
) -> str | None:
    """Resolve the open deal a quote event should attach to.

    Checks, in order: the deal already linked to the quote (if still open),
    an open deal for the same account and contact, then an open deal for the
    account created inside the dedupe window. Returns None when the caller
    should create a new deal.
    """
    if linked_deal_id:
        row = session.fetch_one(
            "SELECT deal_id FROM deals WHERE deal_id = ? AND is_closed = 0",
            (linked_deal_id,),
        )
        if row:
            return row["deal_id"]

    if contact_id:
        row = session.fetch_one(
            "SELECT deal_id FROM deals "
            "WHERE account_id = ? AND primary_contact_id = ? AND is_closed = 0 "
            f"{_ORDER_BY} LIMIT 1",
            (account_id, contact_id),
        )
        if row:
            return row["deal_id"]

    now = now or utc_now()
    window_start = now - timedelta(days=dedupe_window_days)
    row = session.fetch_one(
        "SELECT deal_id FROM deals "
        "WHERE account_id = ? AND is_closed = 0 AND created_at >= ? "
        f"{_ORDER_BY} LIMIT 1",
        (account_id, to_iso(window_start)),
    )
    if row:
        return row["deal_id"]
    return None
