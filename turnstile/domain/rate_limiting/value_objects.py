"""
Rate Limiting Value Objects

Immutable value objects representing core concepts in the admission domain.
These objects encapsulate business rules and invariants while providing
type safety and rich behavior.

Value Objects:
- RateLimitAlgorithm: Enumeration of supported window algorithms
- FailurePolicy: What to do when the counter store is unavailable
- ExtractionFailurePolicy: What to do when a key cannot be extracted
- KeyExtractorKind: Closed set of key extraction strategies
- RateLimitKey: Collision-free identification of an accounting principal
- RateLimitQuota: Maximum events per window
- WindowSnapshot: Post-increment view of a key's window state

Also `normalize_address`, the canonical form of client addresses used for
keys and bypass lists.
"""

from __future__ import annotations

import hashlib
import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from turnstile.core.exceptions import InvalidConfigurationError


class RateLimitAlgorithm(Enum):
    """
    Enumeration of supported window algorithms.

    - FIXED_WINDOW: Cheapest; allows up to twice the quota across a window boundary
    - SLIDING_WINDOW: Weights the previous window by its remaining overlap,
      smoothing the boundary burst without storing per-event timestamps
    """
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"


class FailurePolicy(Enum):
    """Behavior when the counter store is unreachable or times out."""
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class ExtractionFailurePolicy(Enum):
    """Behavior when a policy's key cannot be derived from the request."""
    SKIP = "skip"
    REJECT = "reject"


class KeyExtractorKind(Enum):
    """Closed set of key extraction strategies."""
    ADDRESS = "address"
    IDENTITY = "identity"
    HEADER = "header"
    COMPOSITE = "composite"


@dataclass(frozen=True, slots=True)
class RateLimitKey:
    """
    Immutable value object identifying the principal a quota is charged to.

    The encoded form is length-prefixed, so no two distinct part tuples can
    produce the same string regardless of which characters the parts contain.

    Business Rules:
    - Keys must be deterministic for the same inputs
    - At least one part must be present
    - Keys may be namespaced so several policies can share a store
    """
    kind: str
    parts: Tuple[str, ...]
    namespace: Optional[str] = None

    def __post_init__(self):
        """Validate key components at construction time"""
        if not self.kind:
            raise ValueError("Key kind must be provided")
        if not self.parts:
            raise ValueError("At least one key component must be provided")

    @property
    def encoded(self) -> str:
        """
        Length-prefixed encoding of the key.

        Format: [namespace/]kind|len:part|len:part
        """
        body = "|".join(f"{len(part)}:{part}" for part in self.parts)
        prefix = f"{len(self.namespace)}:{self.namespace}/" if self.namespace else ""
        return f"{prefix}{self.kind}|{body}"

    @property
    def hashed(self) -> str:
        """
        SHA-256 digest of the encoded key.

        Keeps raw addresses and identities out of the store and out of logs
        while staying deterministic. The namespace stays readable so stored
        keys can be attributed to their policy.
        """
        digest = hashlib.sha256(self.encoded.encode("utf-8")).hexdigest()
        if self.namespace:
            return f"{self.namespace}:{self.kind}:{digest}"
        return f"{self.kind}:{digest}"

    def scoped(self, namespace: str) -> RateLimitKey:
        """Create a new key namespaced to a policy"""
        return RateLimitKey(kind=self.kind, parts=self.parts, namespace=namespace)


_PERIODS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
}


@dataclass(frozen=True, slots=True)
class RateLimitQuota:
    """
    Immutable value object representing a quota of events per window.

    Business Rules:
    - Maximum requests must be a positive integer
    - Window duration must be positive
    """
    max_requests: int
    window_seconds: float

    def __post_init__(self):
        """Validate quota configuration at construction time"""
        if isinstance(self.max_requests, bool) or not isinstance(self.max_requests, int):
            raise InvalidConfigurationError("max_requests must be an integer")
        if self.max_requests <= 0:
            raise InvalidConfigurationError("max_requests must be positive")
        if isinstance(self.window_seconds, bool) or not isinstance(self.window_seconds, (int, float)):
            raise InvalidConfigurationError("window_seconds must be a number")
        if self.window_seconds <= 0:
            raise InvalidConfigurationError("window_seconds must be positive")

    @classmethod
    def from_rate_string(cls, rate_string: str) -> RateLimitQuota:
        """
        Create quota from rate string format (e.g., "100/minute").

        Supported time units: second, minute, hour, day
        """
        try:
            count_str, period = rate_string.split("/")
            count = int(count_str.strip())
        except (ValueError, AttributeError) as e:
            raise InvalidConfigurationError(f"Invalid rate string format: {rate_string}") from e

        period = period.strip().lower()
        if period not in _PERIODS:
            raise InvalidConfigurationError(f"Unsupported period: {period}")

        return cls(max_requests=count, window_seconds=_PERIODS[period])

    def __str__(self) -> str:
        return f"{self.max_requests}/{self.window_seconds:g}s"


@dataclass(frozen=True, slots=True)
class WindowSnapshot:
    """
    Value object describing a key's window right after an increment or peek.

    `previous_count` and `previous_start` describe the window that preceded
    the current one, when it still overlaps the look-back interval; the
    sliding window algorithm weights it by that overlap.
    """
    count: int
    window_start: float
    previous_count: int = 0
    previous_start: Optional[float] = None

    def __post_init__(self):
        if self.count < 0 or self.previous_count < 0:
            raise ValueError("Window counts cannot be negative")

    def elapsed(self, now: float) -> float:
        """Seconds since the current window started"""
        return max(0.0, now - self.window_start)

    def is_expired(self, now: float, window_seconds: float) -> bool:
        """Check whether the current window has run its full duration"""
        return now - self.window_start >= window_seconds


def normalize_address(address: str) -> str:
    """
    Canonical text form of a network address.

    IPv6 spellings are compressed and lower-cased, and IPv4-mapped IPv6
    addresses collapse to their IPv4 form. Values that are not IP
    addresses (unix sockets, test hosts) are only stripped.
    """
    candidate = address.strip()
    try:
        parsed = ipaddress.ip_address(candidate)
    except ValueError:
        return candidate
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        return str(parsed.ipv4_mapped)
    return str(parsed)
