"""
Rate Limiting Domain Entities

Objects that flow through the admission engine for a single request.

Entities:
- RequestDescriptor: The attributes key extractors read from a request
- AdmissionDecision: The admit/reject outcome returned to the caller
- BypassRules: Principals and paths that are never charged
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional

from .value_objects import RateLimitAlgorithm, normalize_address


@dataclass(frozen=True)
class RequestDescriptor:
    """Entity representing the request attributes relevant to admission.

    `identity` is only set for authenticated requests. Header names are
    matched case-insensitively.
    """

    address: Optional[str] = None
    identity: Optional[str] = None
    path: str = "/"
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        normalized = {str(name).lower(): str(value) for name, value in self.headers.items()}
        object.__setattr__(self, "headers", MappingProxyType(normalized))
        object.__setattr__(self, "method", self.method.upper())

    def header(self, name: str) -> Optional[str]:
        """Get a header value regardless of the name's case"""
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class AdmissionDecision:
    """Entity representing the outcome of an admission check.

    Produced per request and never stored. `remaining` is None when no
    policy produced a count (every policy skipped, bypassed or failed
    open). `retry_after` is in seconds and only set on rejections.
    """

    admitted: bool
    remaining: Optional[int] = None
    retry_after: Optional[float] = None
    policy: Optional[str] = None
    algorithm: Optional[RateLimitAlgorithm] = None
    reason: Optional[str] = None

    @property
    def is_rejected(self) -> bool:
        return not self.admitted

    @property
    def retry_after_seconds(self) -> Optional[int]:
        """Whole seconds to wait, rounded up and never below one"""
        if self.retry_after is None:
            return None
        return max(1, math.ceil(self.retry_after))

    def to_http_headers(self) -> Dict[str, str]:
        """Convert the decision to HTTP headers.

        - Retry-After: Seconds to wait (only when rejected)
        - X-RateLimit-Remaining: Events left in the tightest window
        - X-RateLimit-Policy: Window algorithm that produced the decision

        Policy names are not emitted.
        """
        headers: Dict[str, str] = {}

        if self.remaining is not None:
            headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))

        if self.is_rejected and self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)

        if self.algorithm is not None:
            headers["X-RateLimit-Policy"] = self.algorithm.value

        return headers

    @classmethod
    def allowed(
        cls,
        remaining: Optional[int] = None,
        policy: Optional[str] = None,
        algorithm: Optional[RateLimitAlgorithm] = None,
        reason: Optional[str] = None,
    ) -> AdmissionDecision:
        """Factory method for creating admitted decisions"""
        return cls(
            admitted=True,
            remaining=remaining,
            policy=policy,
            algorithm=algorithm,
            reason=reason,
        )

    @classmethod
    def rejected(
        cls,
        retry_after: float,
        policy: Optional[str] = None,
        algorithm: Optional[RateLimitAlgorithm] = None,
        reason: Optional[str] = None,
    ) -> AdmissionDecision:
        """Factory method for creating rejected decisions"""
        if retry_after <= 0:
            raise ValueError("A rejection must carry a positive retry_after")
        return cls(
            admitted=False,
            remaining=0,
            retry_after=retry_after,
            policy=policy,
            algorithm=algorithm,
            reason=reason,
        )


@dataclass(frozen=True)
class BypassRules:
    """Principals and paths that are admitted without being charged.

    Addresses are compared in their normalized form, so IPv4-mapped and
    differently spelled IPv6 addresses match their canonical entry.
    """

    addresses: FrozenSet[str] = frozenset()
    identities: FrozenSet[str] = frozenset()
    paths: FrozenSet[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(
            self, "addresses", frozenset(normalize_address(a) for a in self.addresses)
        )
        object.__setattr__(self, "identities", frozenset(self.identities))
        object.__setattr__(self, "paths", frozenset(self.paths))

    def reason_for(self, descriptor: RequestDescriptor) -> Optional[str]:
        """Get the reason a request bypasses admission, or None"""
        if descriptor.address and normalize_address(descriptor.address) in self.addresses:
            return "address"
        if descriptor.identity and descriptor.identity in self.identities:
            return "identity"
        if descriptor.path in self.paths:
            return "path"
        return None

    @property
    def is_empty(self) -> bool:
        return not (self.addresses or self.identities or self.paths)
