from __future__ import annotations

from typing import List, Optional


class SongServiceError(RuntimeError):
    pass


class ProviderError(SongServiceError):
    """Transient provider/network failure. Consumes one job attempt."""


class ProviderTimeoutError(ProviderError):
    pass


class ContentRejectedError(SongServiceError):
    """Provider refused the request on content-policy grounds."""

    def __init__(self, detail: Optional[str] = None, tokens: Optional[List[str]] = None):
        super().__init__(f"content_rejected: {detail or 'no detail'}")
        self.detail = detail or ""
        self.tokens = list(tokens or [])


class TerminalJobError(SongServiceError):
    """No further automatic retry is possible."""


class IntegrationError(SongServiceError):
    """Missing credentials or an unreachable collaborator."""


class OrderNotFoundError(SongServiceError):
    pass


class InvalidTransitionError(SongServiceError):
    pass


class RevisionLimitError(SongServiceError):
    pass
