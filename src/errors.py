"""
Error taxonomy shared by the router, the job orchestrator and the API layer.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional


class ProviderErrorKind(str, Enum):
    rate_limited = "rate_limited"
    server_error = "server_error"
    auth_error = "auth_error"
    other = "other"

    @property
    def retryable(self) -> bool:
        return self in (ProviderErrorKind.rate_limited, ProviderErrorKind.server_error)


class ProviderError(Exception):
    """Classified failure of a single upstream provider call."""

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.other,
        provider: str = "",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class RoutingFailure(Exception):
    """No eligible provider, or every attempt failed."""

    def __init__(self, message: str, attempts: Optional[List[str]] = None, errors: Optional[List[ProviderError]] = None):
        super().__init__(message)
        self.attempts = list(attempts or [])
        self.errors = list(errors or [])


class JobSubmissionError(Exception):
    """Research submission rejected before (or while) enqueueing."""


class JobProcessingError(Exception):
    """Unrecoverable failure inside the research worker."""


class JobNotFoundError(LookupError):
    pass
