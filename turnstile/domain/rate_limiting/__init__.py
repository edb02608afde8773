"""Rate Limiting Domain Module

Domain model of the admission engine, following Domain-Driven Design:

- Value Objects: Keys, quotas, window snapshots and the policy enums
- Entities: Request descriptors, admission decisions and bypass rules
- Domain Services: Limiter policies and the admission gateway
- Repositories: The counter store contract

Window algorithms, key extractors and clocks are small strategy objects the
services compose.
"""

from .algorithms import FixedWindowAlgorithm, SlidingWindowAlgorithm, WindowAlgorithm, create_algorithm
from .clock import Clock, FakeClock, MonotonicClock, WallClock
from .entities import AdmissionDecision, BypassRules, RequestDescriptor
from .key_extractors import (
    AddressKeyExtractor,
    CompositeKeyExtractor,
    HeaderKeyExtractor,
    IdentityKeyExtractor,
    KeyExtractor,
    create_key_extractor,
)
from .repositories import CounterStore
from .services import AdmissionGateway, LimiterPolicy
from .value_objects import (
    ExtractionFailurePolicy,
    FailurePolicy,
    KeyExtractorKind,
    RateLimitAlgorithm,
    RateLimitKey,
    RateLimitQuota,
    WindowSnapshot,
)

__all__ = [
    "Clock",
    "MonotonicClock",
    "WallClock",
    "FakeClock",
    "RateLimitKey",
    "RateLimitQuota",
    "RateLimitAlgorithm",
    "FailurePolicy",
    "ExtractionFailurePolicy",
    "KeyExtractorKind",
    "WindowSnapshot",
    "RequestDescriptor",
    "AdmissionDecision",
    "BypassRules",
    "CounterStore",
    "WindowAlgorithm",
    "FixedWindowAlgorithm",
    "SlidingWindowAlgorithm",
    "create_algorithm",
    "KeyExtractor",
    "AddressKeyExtractor",
    "IdentityKeyExtractor",
    "HeaderKeyExtractor",
    "CompositeKeyExtractor",
    "create_key_extractor",
    "LimiterPolicy",
    "AdmissionGateway",
]
