from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from quotelink.domain.stages import (
    ClosedReason,
    DealEventType,
    DealSource,
    DealStage,
    QuoteType,
    RevisionType,
    ValueType,
)


@dataclass(frozen=True)
class Account:
    account_id: str
    name: str
    domain: str | None


@dataclass(frozen=True)
class Contact:
    contact_id: str
    account_id: str | None
    full_name: str
    email: str | None


@dataclass(frozen=True)
class Deal:
    deal_id: str
    account_id: str
    primary_contact_id: str | None
    owner_user_id: str | None
    stage: DealStage
    deal_value: Decimal | None
    value_type: ValueType
    range_low: Decimal | None
    range_high: Decimal | None
    currency: str
    latest_quote_id: str | None
    latest_quote_revision_number: int | None
    source: DealSource
    is_closed: bool
    closed_reason: ClosedReason | None
    last_activity_at: datetime | None
    next_action_at: datetime | None
    at_risk: bool
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Quote:
    quote_id: str
    deal_id: str | None
    account_id: str
    primary_contact_id: str | None
    owner_user_id: str | None
    quote_type: QuoteType
    currency: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class QuoteLineItem:
    line_item_id: str
    quote_id: str
    revision_number: int
    name: str
    range_low: Decimal | None
    range_high: Decimal | None
    line_total: Decimal | None
    display_order: int


@dataclass(frozen=True)
class QuoteRevision:
    quote_id: str
    revision_number: int
    revision_type: RevisionType
    total: Decimal | None
    is_binding: bool
    range_low: Decimal | None
    range_high: Decimal | None
    created_at: datetime


@dataclass(frozen=True)
class DealEvent:
    event_id: str
    deal_id: str
    event_type: DealEventType
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str | None = None


@dataclass(frozen=True)
class IdempotencyKey:
    key: str
    created_at: datetime
    expires_at: datetime
