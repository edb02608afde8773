from __future__ import annotations

"""Centralized, structured exception hierarchy for Turnstile.

Every error carries a machine-readable `code` for programmatic handling and a
human-readable `message` for logging. The admission engine handles
`ExtractionError` and `StoreUnavailableError` itself; `InvalidConfigurationError`
is raised at construction time so a malformed limiter never starts.
`RateLimitExceededError` is only raised at the HTTP edge and maps to
`429 Too Many Requests`.
"""

from typing import TYPE_CHECKING, Final, Optional

if TYPE_CHECKING:
    from turnstile.domain.rate_limiting.entities import AdmissionDecision

__all__: Final = [
    "TurnstileError",
    "InvalidConfigurationError",
    "ExtractionError",
    "StoreUnavailableError",
    "RateLimitError",
    "RateLimitExceededError",
]


class TurnstileError(Exception):
    """Base exception class for all custom errors in Turnstile.

    Attributes:
        message (str): A human-readable error message, suitable for logging.
        code (str): A unique, machine-readable error code.
    """

    message: str
    code: str = "generic_error"

    def __init__(self, message: str, code: str = "generic_error"):
        self.message = message
        self.code = code
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Startup errors
# ---------------------------------------------------------------------------


class InvalidConfigurationError(TurnstileError):
    """Raised when a quota, policy or gateway is configured with invalid values.

    Raised while building policies and gateways, never while admitting a
    request.
    """

    def __init__(self, message: str, code: str = "invalid_configuration"):
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Request-time errors handled inside the admission engine
# ---------------------------------------------------------------------------


class ExtractionError(TurnstileError):
    """Raised when a key extractor cannot find its attribute on a request.

    The typical case is a per-identity policy facing an unauthenticated
    request. The gateway decides whether to skip the policy or reject.
    """

    def __init__(
        self,
        attribute: str,
        message: Optional[str] = None,
        code: str = "extraction_error",
    ):
        self.attribute = attribute
        if message is None:
            message = f"Request attribute '{attribute}' is missing"
        super().__init__(message, code)


class StoreUnavailableError(TurnstileError):
    """Raised when a counter store cannot be reached or does not answer in time."""

    def __init__(self, message: str = "Counter store unavailable", code: str = "store_unavailable"):
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Operational errors (map to 429 Too Many Requests)
# ---------------------------------------------------------------------------


class RateLimitError(TurnstileError):
    """Base class for rate limiting errors surfaced to the HTTP layer."""

    def __init__(self, message: str | None = None, code: str = "rate_limit_exceeded"):
        if message is None:
            message = "Rate limit exceeded. Please try again later."
        super().__init__(message, code)


class RateLimitExceededError(RateLimitError):
    """Raised when a request was rejected by the admission gateway.

    Carries the decision so handlers can emit `Retry-After`.
    """

    def __init__(
        self,
        decision: "AdmissionDecision",
        message: str | None = None,
        code: str = "rate_limit_exceeded",
    ):
        self.decision = decision
        super().__init__(message, code)
