"""Deal state engine: turns quote lifecycle events into deal state.

Every entry point follows the same shape. Check that the quote revision
exists, claim the event's idempotency key, then inside one write transaction
resolve or create the target deal, apply a bounded mutation with
compare-and-set, append the deal events and link the quote. An event for a
quote or revision that does not exist yet claims nothing, so a redelivery is
processed once it does. After a successful claim the key stays spent even when
the work fails.

Closed deals never change stage or closed reason here; later events on them
only touch bookkeeping fields.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import structlog
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from quotelink.adapters.directory.client import DirectoryError
from quotelink.config import LinkingConfig
from quotelink.domain.errors import ConflictError, LinkingError, NotFoundError, StoreUnavailableError
from quotelink.domain.lifecycle import (
    LifecycleEvent,
    QuoteAccepted,
    QuoteDeclined,
    QuoteExpired,
    QuoteViewed,
    RevisionSent,
)
from quotelink.domain.mapping import DEFAULT_STAGE_MAPPING, StageMapping, map_revision_to_stage
from quotelink.domain.models import Deal, DealEvent, Quote, QuoteRevision
from quotelink.domain.stages import (
    ClosedReason,
    DealEventType,
    DealSource,
    DealStage,
    EventKind,
    ValueType,
)
from quotelink.domain.values import ResolvedValue, resolve_value, should_overwrite
from quotelink.services import deals, quotes
from quotelink.services.directory import AccountsDirectory
from quotelink.services.events import EventFeed, append_event
from quotelink.services.idempotency import IdempotencyGuard, derive_key
from quotelink.services.matcher import find_matching_active_deal
from quotelink.services.utils import to_iso, to_text, utc_now
from quotelink.store.sqlite import SqliteSession, SqliteStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LinkResult:
    deal_id: str | None
    created: bool = False
    already_processed: bool = False


@dataclass
class _Outcome:
    deal_id: str | None
    created: bool = False
    events: list[DealEvent] = field(default_factory=list)


class _StaleDeal(Exception):
    """A compare-and-set lost to a concurrent writer."""


class DealEngine:
    def __init__(
        self,
        store: SqliteStore,
        config: LinkingConfig | None = None,
        stage_mapping: StageMapping = DEFAULT_STAGE_MAPPING,
        directory: AccountsDirectory | None = None,
        feed: EventFeed | None = None,
        clock: Callable[[], datetime] = utc_now,
        retry_wait: wait_base | None = None,
    ) -> None:
        self.store = store
        self.config = config or LinkingConfig()
        self.stage_mapping = stage_mapping
        self.directory = directory
        self.feed = feed
        self.clock = clock
        self.guard = IdempotencyGuard(store)
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.05, max=1)
        self._handlers: dict[EventKind, tuple[Callable[..., _Outcome], timedelta]] = {
            EventKind.REVISION_SENT: (self._apply_revision_sent, self.config.idempotency_ttl),
            EventKind.ACCEPTED: (self._apply_accepted, self.config.idempotency_ttl),
            EventKind.DECLINED: (self._apply_declined, self.config.idempotency_ttl),
            EventKind.EXPIRED: (self._apply_expired, self.config.idempotency_ttl),
            EventKind.VIEWED: (self._apply_viewed, self.config.viewed_ttl),
        }

    # Entry points

    def on_quote_revision_sent(
        self, quote_id: str, revision_number: int, actor: str | None = None
    ) -> LinkResult:
        return self.handle(RevisionSent(quote_id, revision_number, actor=actor))

    def on_quote_accepted(
        self,
        quote_id: str,
        revision_number: int,
        signer_name: str | None = None,
        signer_email: str | None = None,
        actor: str | None = None,
    ) -> LinkResult:
        return self.handle(
            QuoteAccepted(
                quote_id,
                revision_number,
                signer_name=signer_name,
                signer_email=signer_email,
                actor=actor,
            )
        )

    def on_quote_declined(
        self,
        quote_id: str,
        revision_number: int,
        reason: str | None = None,
        actor: str | None = None,
    ) -> LinkResult:
        return self.handle(QuoteDeclined(quote_id, revision_number, reason=reason, actor=actor))

    def on_quote_expired(
        self, quote_id: str, revision_number: int, actor: str | None = None
    ) -> LinkResult:
        return self.handle(QuoteExpired(quote_id, revision_number, actor=actor))

    def on_quote_viewed(
        self, quote_id: str, revision_number: int, actor: str | None = None
    ) -> LinkResult:
        return self.handle(QuoteViewed(quote_id, revision_number, actor=actor))

    def handle(self, event: LifecycleEvent) -> LinkResult:
        apply, ttl = self._handlers[event.kind]
        key = derive_key(event.kind, event.quote_id, event.revision_number)
        log = logger.bind(key=key, quote_id=event.quote_id, revision=event.revision_number)

        try:
            self._require_revision(event)
        except NotFoundError as exc:
            log.error("lifecycle.failed", error=str(exc), error_type=type(exc).__name__)
            raise

        claim = self.guard.claim(key, ttl, now=self.clock())
        if claim.already_processed:
            return LinkResult(
                deal_id=quotes.linked_deal_id(self.store, event.quote_id),
                already_processed=True,
            )

        try:
            outcome = self._run(event, apply)
        except LinkingError as exc:
            log.error("lifecycle.failed", error=str(exc), error_type=type(exc).__name__)
            raise

        if self.feed is not None:
            self.feed.publish(outcome.events)
        log.info(
            "lifecycle.applied",
            deal_id=outcome.deal_id,
            created=outcome.created,
            events=[e.event_type.value for e in outcome.events],
        )
        return LinkResult(deal_id=outcome.deal_id, created=outcome.created)

    def _require_revision(self, event: LifecycleEvent) -> None:
        """Raise NotFoundError unless the event's quote revision is stored."""
        with self.store.session() as session:
            quotes.load_quote(session, event.quote_id)
            quotes.load_revision(session, event.quote_id, event.revision_number)

    def _run(self, event: LifecycleEvent, apply: Callable[..., _Outcome]) -> _Outcome:
        attempts = self.config.conflict_retries
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(_StaleDeal),
            reraise=False,
            before_sleep=lambda state: logger.warning(
                "deal.cas_conflict", quote_id=event.quote_id, attempt=state.attempt_number
            ),
        )
        try:
            return retrying(self._attempt, event, apply)
        except RetryError as exc:
            raise ConflictError(
                f"Deal for quote {event.quote_id} changed concurrently {attempts} times; giving up."
            ) from exc

    def _attempt(self, event: LifecycleEvent, apply: Callable[..., _Outcome]) -> _Outcome:
        with self.store.session(immediate=True) as session:
            return apply(session, event, self.clock())

    # Handlers. Each runs inside a single write transaction.

    def _apply_revision_sent(
        self, session: SqliteSession, event: RevisionSent, now: datetime
    ) -> _Outcome:
        quote = quotes.load_quote(session, event.quote_id)
        revision = quotes.load_revision(session, event.quote_id, event.revision_number)

        deal, created, emitted = self._resolve_or_create(session, quote, revision, now, event.actor)
        if not created:
            emitted.extend(self._apply_revision_to_deal(session, deal, quote, revision, now, event.actor))
        quotes.link_quote(session, quote.quote_id, deal.deal_id, to_iso(now))

        resolved = self._resolve(revision)
        emitted.append(
            append_event(
                session,
                deal_id=deal.deal_id,
                event_type=DealEventType.QUOTE_REVISION_SENT,
                timestamp=now,
                metadata={
                    **_quote_ref(quote, revision),
                    "revision_type": revision.revision_type.value,
                    "total": to_text(revision.total),
                    "range_low": to_text(resolved.range_low),
                    "range_high": to_text(resolved.range_high),
                    "is_binding": revision.is_binding,
                    "stage_locked": deal.is_closed,
                },
                created_by=event.actor,
            )
        )
        return _Outcome(deal_id=deal.deal_id, created=created, events=emitted)

    def _apply_accepted(
        self, session: SqliteSession, event: QuoteAccepted, now: datetime
    ) -> _Outcome:
        quote = quotes.load_quote(session, event.quote_id)
        revision = quotes.load_revision(session, event.quote_id, event.revision_number)

        created = False
        matched = not quote.deal_id
        emitted: list[DealEvent] = []
        if quote.deal_id:
            deal = self._linked_deal(session, quote)
        else:
            # Accepted can arrive before revision_sent was processed.
            deal, created, emitted = self._resolve_or_create(session, quote, revision, now, event.actor)
            quotes.link_quote(session, quote.quote_id, deal.deal_id, to_iso(now))

        metadata = {
            **_quote_ref(quote, revision),
            "signer_name": event.signer_name,
            "signer_email": event.signer_email,
        }
        if deal.is_closed:
            emitted.extend(
                self._touch_closed(session, deal, DealEventType.QUOTE_ACCEPTED, metadata, now, event.actor)
            )
            return _Outcome(deal_id=deal.deal_id, created=created, events=emitted)

        changes: dict[str, Any] = {
            "stage": DealStage.CLOSED_WON,
            "is_closed": True,
            "closed_reason": ClosedReason.WON,
            "last_activity_at": now,
        }
        if matched and not created:
            changes["latest_quote_id"] = quote.quote_id
            changes["latest_quote_revision_number"] = revision.revision_number
        value_changes = _accepted_value_changes(deal, revision)
        changes.update(value_changes)
        self._write(session, deal, changes, now)

        emitted.append(
            append_event(
                session,
                deal_id=deal.deal_id,
                event_type=DealEventType.QUOTE_ACCEPTED,
                timestamp=now,
                metadata={**metadata, "total": to_text(revision.total), "is_binding": revision.is_binding},
                created_by=event.actor,
            )
        )
        emitted.extend(
            self._transition_events(session, deal, changes, now, event.actor, quote, revision)
        )
        return _Outcome(deal_id=deal.deal_id, created=created, events=emitted)

    def _apply_declined(
        self, session: SqliteSession, event: QuoteDeclined, now: datetime
    ) -> _Outcome:
        quote = quotes.load_quote(session, event.quote_id)
        revision = quotes.load_revision(session, event.quote_id, event.revision_number)
        if not quote.deal_id:
            # Nothing to close: a decline on an unlinked quote has no deal to represent it.
            return _Outcome(deal_id=None)

        deal = self._linked_deal(session, quote)
        metadata = {**_quote_ref(quote, revision), "reason": event.reason}
        if deal.is_closed:
            events = self._touch_closed(session, deal, DealEventType.QUOTE_DECLINED, metadata, now, event.actor)
            return _Outcome(deal_id=deal.deal_id, events=events)

        changes: dict[str, Any] = {
            "stage": DealStage.CLOSED_LOST,
            "is_closed": True,
            "closed_reason": ClosedReason.LOST,
            "last_activity_at": now,
        }
        self._write(session, deal, changes, now)
        emitted = [
            append_event(
                session,
                deal_id=deal.deal_id,
                event_type=DealEventType.QUOTE_DECLINED,
                timestamp=now,
                metadata=metadata,
                created_by=event.actor,
            )
        ]
        emitted.extend(self._transition_events(session, deal, changes, now, event.actor, quote, revision))
        return _Outcome(deal_id=deal.deal_id, events=emitted)

    def _apply_expired(
        self, session: SqliteSession, event: QuoteExpired, now: datetime
    ) -> _Outcome:
        quote = quotes.load_quote(session, event.quote_id)
        revision = quotes.load_revision(session, event.quote_id, event.revision_number)
        if not quote.deal_id:
            return _Outcome(deal_id=None)

        deal = self._linked_deal(session, quote)
        # Expiry is a warning, not an outcome: the deal stays open.
        if not deal.is_closed:
            self._write(
                session,
                deal,
                {"at_risk": True, "next_action_at": now, "last_activity_at": now},
                now,
            )
        event_row = append_event(
            session,
            deal_id=deal.deal_id,
            event_type=DealEventType.QUOTE_EXPIRED,
            timestamp=now,
            metadata={**_quote_ref(quote, revision), "at_risk": not deal.is_closed or deal.at_risk},
            created_by=event.actor,
        )
        return _Outcome(deal_id=deal.deal_id, events=[event_row])

    def _apply_viewed(
        self, session: SqliteSession, event: QuoteViewed, now: datetime
    ) -> _Outcome:
        quote = quotes.load_quote(session, event.quote_id)
        revision = quotes.load_revision(session, event.quote_id, event.revision_number)
        if not quote.deal_id:
            return _Outcome(deal_id=None)

        deal = self._linked_deal(session, quote)
        self._write(session, deal, {"last_activity_at": now}, now)
        event_row = append_event(
            session,
            deal_id=deal.deal_id,
            event_type=DealEventType.QUOTE_VIEWED,
            timestamp=now,
            metadata=_quote_ref(quote, revision),
            created_by=event.actor,
        )
        return _Outcome(deal_id=deal.deal_id, events=[event_row])

    # Resolution

    def _resolve_or_create(
        self,
        session: SqliteSession,
        quote: Quote,
        revision: QuoteRevision,
        now: datetime,
        actor: str | None,
    ) -> tuple[Deal, bool, list[DealEvent]]:
        if quote.deal_id:
            linked = self._linked_deal(session, quote)
            # A closed linked deal keeps the quote; it only gets bookkeeping updates.
            if linked.is_closed:
                return linked, False, []

        deal_id = find_matching_active_deal(
            session,
            quote.account_id,
            quote.primary_contact_id,
            dedupe_window_days=self.config.dedupe_window_days,
            now=now,
            linked_deal_id=quote.deal_id,
        )
        if deal_id is not None:
            deal = deals.load_deal(session, deal_id)
            if deal is None:
                raise NotFoundError(f"Deal {deal_id} not found.")
            return deal, False, []

        deal = self._new_deal(quote, revision, now)
        deals.insert_deal(session, deal)
        created = append_event(
            session,
            deal_id=deal.deal_id,
            event_type=DealEventType.DEAL_CREATED,
            timestamp=now,
            metadata={
                **_quote_ref(quote, revision),
                "source": deal.source.value,
                "stage": deal.stage.value,
                "deal_value": to_text(deal.deal_value),
                "value_type": deal.value_type.value,
            },
            created_by=actor,
        )
        logger.info(
            "deal.created",
            deal_id=deal.deal_id,
            account_id=deal.account_id,
            quote_id=quote.quote_id,
            stage=deal.stage.value,
        )
        return deal, True, [created]

    def _new_deal(self, quote: Quote, revision: QuoteRevision, now: datetime) -> Deal:
        contact_id = quote.primary_contact_id
        if self.directory is not None:
            try:
                account = self.directory.get_account(quote.account_id)
                contact = self.directory.get_contact(contact_id) if contact_id else None
            except DirectoryError as exc:
                raise StoreUnavailableError(f"Directory unavailable: {exc}") from exc
            if account is None:
                raise NotFoundError(f"Account {quote.account_id} not found in directory.")
            if contact_id and contact is None:
                logger.warning("directory.contact_missing", contact_id=contact_id, quote_id=quote.quote_id)
                contact_id = None

        resolved = self._resolve(revision)
        return Deal(
            deal_id=str(uuid4()),
            account_id=quote.account_id,
            primary_contact_id=contact_id,
            owner_user_id=quote.owner_user_id,
            stage=self._stage_for(quote, revision),
            deal_value=resolved.value,
            value_type=resolved.value_type,
            range_low=resolved.range_low,
            range_high=resolved.range_high,
            currency=quote.currency or self.config.default_currency,
            latest_quote_id=quote.quote_id,
            latest_quote_revision_number=revision.revision_number,
            source=DealSource.QUOTE_AUTO,
            is_closed=False,
            closed_reason=None,
            last_activity_at=now,
            next_action_at=now + self.config.follow_up,
            at_risk=False,
            version=1,
            created_at=now,
            updated_at=now,
        )

    def _linked_deal(self, session: SqliteSession, quote: Quote) -> Deal:
        deal = deals.load_deal(session, quote.deal_id)
        if deal is None:
            raise NotFoundError(f"Deal {quote.deal_id} linked to quote {quote.quote_id} not found.")
        return deal

    # Mutation

    def _apply_revision_to_deal(
        self,
        session: SqliteSession,
        deal: Deal,
        quote: Quote,
        revision: QuoteRevision,
        now: datetime,
        actor: str | None,
    ) -> list[DealEvent]:
        changes: dict[str, Any] = {
            "latest_quote_id": quote.quote_id,
            "latest_quote_revision_number": revision.revision_number,
            "last_activity_at": now,
        }
        if not deal.is_closed:
            stage = self._stage_for(quote, revision)
            if stage != deal.stage:
                changes["stage"] = stage
            changes.update(_merge_value(deal, self._resolve(revision)))
            next_action_at = plan_next_action(deal.next_action_at, now, self.config.follow_up)
            if next_action_at != deal.next_action_at:
                changes["next_action_at"] = next_action_at
        self._write(session, deal, changes, now)
        return self._transition_events(session, deal, changes, now, actor, quote, revision)

    def _touch_closed(
        self,
        session: SqliteSession,
        deal: Deal,
        event_type: DealEventType,
        metadata: dict[str, Any],
        now: datetime,
        actor: str | None,
    ) -> list[DealEvent]:
        self._write(session, deal, {"last_activity_at": now}, now)
        logger.info("deal.stage_locked", deal_id=deal.deal_id, stage=deal.stage.value, event=event_type.value)
        return [
            append_event(
                session,
                deal_id=deal.deal_id,
                event_type=event_type,
                timestamp=now,
                metadata={**metadata, "stage_locked": True, "stage": deal.stage.value},
                created_by=actor,
            )
        ]

    def _write(self, session: SqliteSession, deal: Deal, changes: dict[str, Any], now: datetime) -> None:
        if not deals.compare_and_set(session, deal, changes, now):
            raise _StaleDeal(deal.deal_id)

    def _transition_events(
        self,
        session: SqliteSession,
        deal: Deal,
        changes: dict[str, Any],
        now: datetime,
        actor: str | None,
        quote: Quote,
        revision: QuoteRevision,
    ) -> list[DealEvent]:
        ref = _quote_ref(quote, revision)
        emitted: list[DealEvent] = []
        if "stage" in changes and changes["stage"] != deal.stage:
            emitted.append(
                append_event(
                    session,
                    deal_id=deal.deal_id,
                    event_type=DealEventType.DEAL_STAGE_CHANGED,
                    timestamp=now,
                    metadata={**ref, "from": deal.stage.value, "to": changes["stage"].value},
                    created_by=actor,
                )
            )
        if "deal_value" in changes or "value_type" in changes:
            emitted.append(
                append_event(
                    session,
                    deal_id=deal.deal_id,
                    event_type=DealEventType.DEAL_VALUE_UPDATED,
                    timestamp=now,
                    metadata={
                        **ref,
                        "from": {"deal_value": to_text(deal.deal_value), "value_type": deal.value_type.value},
                        "to": {
                            "deal_value": to_text(changes.get("deal_value", deal.deal_value)),
                            "value_type": changes.get("value_type", deal.value_type).value,
                        },
                    },
                    created_by=actor,
                )
            )
        if changes.get("is_closed") and not deal.is_closed:
            emitted.append(
                append_event(
                    session,
                    deal_id=deal.deal_id,
                    event_type=DealEventType.DEAL_CLOSED,
                    timestamp=now,
                    metadata={**ref, "closed_reason": changes["closed_reason"].value},
                    created_by=actor,
                )
            )
        return emitted

    def _resolve(self, revision: QuoteRevision) -> ResolvedValue:
        return resolve_value(revision.total, revision.range_low, revision.range_high, revision.is_binding)

    def _stage_for(self, quote: Quote, revision: QuoteRevision) -> DealStage:
        return map_revision_to_stage(revision.revision_type, quote.quote_type, self.stage_mapping)


def plan_next_action(current: datetime | None, now: datetime, follow_up: timedelta) -> datetime:
    """Schedule a follow-up unless an earlier one is already pending."""
    candidate = now + follow_up
    if current is not None and now <= current <= candidate:
        return current
    return candidate


def _merge_value(deal: Deal, resolved: ResolvedValue) -> dict[str, Any]:
    if not should_overwrite(deal.value_type, resolved.value_type):
        return {}
    proposed = {
        "deal_value": resolved.value,
        "value_type": resolved.value_type,
        "range_low": resolved.range_low,
        "range_high": resolved.range_high,
    }
    current = {
        "deal_value": deal.deal_value,
        "value_type": deal.value_type,
        "range_low": deal.range_low,
        "range_high": deal.range_high,
    }
    if proposed == current:
        return {}
    return proposed


def _accepted_value_changes(deal: Deal, revision: QuoteRevision) -> dict[str, Any]:
    if revision.total is None:
        return {}
    if revision.is_binding:
        proposed = {
            "deal_value": revision.total,
            "value_type": ValueType.BINDING,
            "range_low": None,
            "range_high": None,
        }
        current = {
            "deal_value": deal.deal_value,
            "value_type": deal.value_type,
            "range_low": deal.range_low,
            "range_high": deal.range_high,
        }
        return {} if proposed == current else proposed
    # A non-binding total never displaces a committed figure.
    if deal.value_type is ValueType.BINDING or revision.total == deal.deal_value:
        return {}
    return {"deal_value": revision.total}


def _quote_ref(quote: Quote, revision: QuoteRevision) -> dict[str, Any]:
    return {"quote_id": quote.quote_id, "revision_number": revision.revision_number}
