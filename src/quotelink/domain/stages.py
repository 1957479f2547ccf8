from __future__ import annotations

from enum import Enum


class DealStage(str, Enum):
    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


CLOSED_STAGES = frozenset({DealStage.CLOSED_WON, DealStage.CLOSED_LOST})


class ValueType(str, Enum):
    BINDING = "binding"
    NON_BINDING_RANGE = "non_binding_range"
    UNKNOWN = "unknown"


# Higher wins. A stored value is only replaced by one of equal or higher rank.
VALUE_TYPE_PRIORITY = {
    ValueType.UNKNOWN: 0,
    ValueType.NON_BINDING_RANGE: 1,
    ValueType.BINDING: 2,
}


class DealSource(str, Enum):
    QUOTE_AUTO = "quote_auto"
    MANUAL = "manual"


class ClosedReason(str, Enum):
    WON = "won"
    LOST = "lost"
    ABANDONED = "abandoned"
    OTHER = "other"


class DealEventType(str, Enum):
    DEAL_CREATED = "deal_created"
    QUOTE_REVISION_SENT = "quote_revision_sent"
    QUOTE_VIEWED = "quote_viewed"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_DECLINED = "quote_declined"
    QUOTE_EXPIRED = "quote_expired"
    DEAL_STAGE_CHANGED = "deal_stage_changed"
    DEAL_VALUE_UPDATED = "deal_value_updated"
    DEAL_CLOSED = "deal_closed"


class EventKind(str, Enum):
    REVISION_SENT = "revision_sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class QuoteType(str, Enum):
    STANDARD = "standard"
    WALKTHROUGH_REQUIRED = "walkthrough_required"


class RevisionType(str, Enum):
    WALKTHROUGH_PROPOSAL = "walkthrough_proposal"
    FINAL_QUOTE = "final_quote"
    OTHER = "other"
