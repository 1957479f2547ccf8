from __future__ import annotations


class LinkingError(RuntimeError):
    pass


class NotFoundError(LinkingError):
    pass


class ConflictError(LinkingError):
    pass


class StoreUnavailableError(LinkingError):
    pass
