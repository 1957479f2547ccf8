from decimal import Decimal
from pathlib import Path

import pytest

from quotelink.domain.errors import NotFoundError
from quotelink.domain.rules import ValidationError
from quotelink.domain.stages import QuoteType, RevisionType
from quotelink.services import quotes
from quotelink.services.quotes import LineItemInput
from quotelink.store.sqlite import SqliteStore


def _store(tmp_path: Path) -> SqliteStore:
    db_path = tmp_path / "test.sqlite"
    store = SqliteStore(db_path)
    schema_path = (
        Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"
    )
    store.apply_schema(schema_path)
    return store


def test_add_quote_defaults(tmp_path: Path) -> None:
    store = _store(tmp_path)
    quote_id = quotes.add_quote(store, "acct-1", None, "owner-1")

    quote = quotes.get_quote(store, quote_id)
    assert quote.quote_type is QuoteType.STANDARD
    assert quote.currency == "CAD"
    assert quote.deal_id is None


def test_add_quote_rejects_unknown_type(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValidationError):
        quotes.add_quote(store, "acct-1", None, None, quote_type="rush")


def test_revisions_are_numbered_in_order(tmp_path: Path) -> None:
    store = _store(tmp_path)
    quote_id = quotes.add_quote(store, "acct-1", None, None)

    first = quotes.add_revision(store, quote_id, "walkthrough_proposal", None, False)
    second = quotes.add_revision(store, quote_id, "final_quote", Decimal("5000"), True)

    assert (first, second) == (1, 2)
    with store.session() as session:
        revision = quotes.load_revision(session, quote_id, 2)
    assert revision.revision_type is RevisionType.FINAL_QUOTE
    assert revision.total == Decimal("5000")
    assert revision.is_binding is True


def test_revision_range_spans_line_items(tmp_path: Path) -> None:
    store = _store(tmp_path)
    quote_id = quotes.add_quote(store, "acct-1", None, None)
    quotes.add_revision(
        store,
        quote_id,
        "other",
        None,
        False,
        [
            LineItemInput("Install", Decimal("1000"), Decimal("1500")),
            LineItemInput("Materials", Decimal("3000"), Decimal("4500")),
            LineItemInput("Permit fee", line_total=Decimal("120")),
        ],
    )

    with store.session() as session:
        revision = quotes.load_revision(session, quote_id, 1)
        items = quotes.load_line_items(session, quote_id, 1)
    assert revision.range_low == Decimal("1000")
    assert revision.range_high == Decimal("4500")
    assert [item.name for item in items] == ["Install", "Materials", "Permit fee"]


def test_binding_revision_needs_total(tmp_path: Path) -> None:
    store = _store(tmp_path)
    quote_id = quotes.add_quote(store, "acct-1", None, None)

    with pytest.raises(ValidationError):
        quotes.add_revision(store, quote_id, "final_quote", None, True)


def test_revision_for_unknown_quote(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(NotFoundError):
        quotes.add_revision(store, "missing", "other", None, False)


def test_missing_revision_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)
    quote_id = quotes.add_quote(store, "acct-1", None, None)

    with pytest.raises(NotFoundError):
        with store.session() as session:
            quotes.load_revision(session, quote_id, 1)
