from quotelink.domain.errors import (
    ConflictError,
    LinkingError,
    NotFoundError,
    StoreUnavailableError,
)
from quotelink.domain.models import (
    Account,
    Contact,
    Deal,
    DealEvent,
    IdempotencyKey,
    Quote,
    QuoteLineItem,
    QuoteRevision,
)
from quotelink.domain.rules import ValidationError

__all__ = [
    "Account",
    "ConflictError",
    "Contact",
    "Deal",
    "DealEvent",
    "IdempotencyKey",
    "LinkingError",
    "NotFoundError",
    "Quote",
    "QuoteLineItem",
    "QuoteRevision",
    "StoreUnavailableError",
    "ValidationError",
]
