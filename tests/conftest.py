"""Shared fixtures for the Turnstile test-suite."""

import pytest

from turnstile.domain.rate_limiting.clock import FakeClock
from turnstile.domain.rate_limiting.entities import RequestDescriptor
from turnstile.domain.rate_limiting.key_extractors import (
    AddressKeyExtractor,
    IdentityKeyExtractor,
)
from turnstile.domain.rate_limiting.services import AdmissionGateway, LimiterPolicy
from turnstile.domain.rate_limiting.value_objects import RateLimitQuota
from turnstile.infrastructure.repositories.memory import InMemoryCounterStore


@pytest.fixture
def clock():
    """Deterministic clock starting at t=0."""
    return FakeClock(start=0.0)


@pytest.fixture
def memory_store():
    return InMemoryCounterStore(stripes=8)


@pytest.fixture
def descriptor():
    """Factory for request descriptors with sensible defaults."""

    def _make(address="203.0.113.7", identity=None, path="/api/items", **kwargs):
        return RequestDescriptor(address=address, identity=identity, path=path, **kwargs)

    return _make


@pytest.fixture
def address_policy(memory_store):
    """Per-address policy allowing 10 requests per minute."""
    return LimiterPolicy(
        name="per_address",
        key_extractor=AddressKeyExtractor(),
        quota=RateLimitQuota(max_requests=10, window_seconds=60),
        store=memory_store,
    )


@pytest.fixture
def layered_gateway(memory_store, clock):
    """Per-address 100/min followed by per-identity 10/min, sharing one store."""
    policies = [
        LimiterPolicy(
            name="per_address",
            key_extractor=AddressKeyExtractor(),
            quota=RateLimitQuota(max_requests=100, window_seconds=60),
            store=memory_store,
        ),
        LimiterPolicy(
            name="per_identity",
            key_extractor=IdentityKeyExtractor(),
            quota=RateLimitQuota(max_requests=10, window_seconds=60),
            store=memory_store,
        ),
    ]
    return AdmissionGateway(policies=policies, clock=clock)
