from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from quotelink.domain import rules
from quotelink.domain.stages import EventKind


@dataclass(frozen=True)
class RevisionSent:
    kind: ClassVar[EventKind] = EventKind.REVISION_SENT

    quote_id: str
    revision_number: int
    actor: str | None = None


@dataclass(frozen=True)
class QuoteViewed:
    kind: ClassVar[EventKind] = EventKind.VIEWED

    quote_id: str
    revision_number: int
    actor: str | None = None


@dataclass(frozen=True)
class QuoteAccepted:
    kind: ClassVar[EventKind] = EventKind.ACCEPTED

    quote_id: str
    revision_number: int
    signer_name: str | None = None
    signer_email: str | None = None
    actor: str | None = None


@dataclass(frozen=True)
class QuoteDeclined:
    kind: ClassVar[EventKind] = EventKind.DECLINED

    quote_id: str
    revision_number: int
    reason: str | None = None
    actor: str | None = None


@dataclass(frozen=True)
class QuoteExpired:
    kind: ClassVar[EventKind] = EventKind.EXPIRED

    quote_id: str
    revision_number: int
    actor: str | None = None


LifecycleEvent = RevisionSent | QuoteViewed | QuoteAccepted | QuoteDeclined | QuoteExpired

# Short names accepted from callers such as the CLI.
KIND_ALIASES = {
    "sent": EventKind.REVISION_SENT,
    "revision_sent": EventKind.REVISION_SENT,
    "viewed": EventKind.VIEWED,
    "accepted": EventKind.ACCEPTED,
    "declined": EventKind.DECLINED,
    "expired": EventKind.EXPIRED,
}


def parse_kind(value: str) -> EventKind:
    rules.validate_enum(value, KIND_ALIASES, "kind")
    return KIND_ALIASES[value]


def build_event(
    kind: EventKind,
    quote_id: str,
    revision_number: int,
    *,
    actor: str | None = None,
    signer_name: str | None = None,
    signer_email: str | None = None,
    reason: str | None = None,
) -> LifecycleEvent:
    rules.require(quote_id, "quote_id")
    if revision_number < 1:
        raise rules.ValidationError("revision must be a positive integer.")
    if kind is EventKind.ACCEPTED:
        return QuoteAccepted(
            quote_id,
            revision_number,
            signer_name=signer_name,
            signer_email=signer_email,
            actor=actor,
        )
    if kind is EventKind.DECLINED:
        return QuoteDeclined(quote_id, revision_number, reason=reason, actor=actor)
    if kind is EventKind.EXPIRED:
        return QuoteExpired(quote_id, revision_number, actor=actor)
    if kind is EventKind.VIEWED:
        return QuoteViewed(quote_id, revision_number, actor=actor)
    return RevisionSent(quote_id, revision_number, actor=actor)
