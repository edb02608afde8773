"""Unit tests for limiter policies and the admission gateway.

The gateway is exercised against the in-memory store and a fake clock, so
every window boundary in these tests is exact.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from turnstile.core.exceptions import InvalidConfigurationError, StoreUnavailableError
from turnstile.domain.rate_limiting.entities import BypassRules
from turnstile.domain.rate_limiting.key_extractors import (
    AddressKeyExtractor,
    IdentityKeyExtractor,
)
from turnstile.domain.rate_limiting.repositories import CounterStore
from turnstile.domain.rate_limiting.services import AdmissionGateway, LimiterPolicy
from turnstile.domain.rate_limiting.value_objects import (
    ExtractionFailurePolicy,
    FailurePolicy,
    RateLimitAlgorithm,
    RateLimitQuota,
)
from turnstile.infrastructure.repositories.memory import InMemoryCounterStore


def make_policy(name, store, max_requests, window_seconds=60, extractor=None, **kwargs):
    return LimiterPolicy(
        name=name,
        key_extractor=extractor or AddressKeyExtractor(),
        quota=RateLimitQuota(max_requests=max_requests, window_seconds=window_seconds),
        store=store,
        **kwargs,
    )


def failing_store(error=None):
    store = AsyncMock(spec=CounterStore)
    store.increment.side_effect = error or StoreUnavailableError("connection refused by 10.1.2.3:6379")
    return store


class SlowStore(InMemoryCounterStore):
    async def increment(self, key, now, window_seconds):
        await asyncio.sleep(1)
        return await super().increment(key, now, window_seconds)


class TestLimiterPolicy:
    def test_rejects_invalid_configuration(self, memory_store):
        with pytest.raises(InvalidConfigurationError):
            make_policy("", memory_store, 10)
        with pytest.raises(InvalidConfigurationError):
            LimiterPolicy(
                name="broken",
                key_extractor=AddressKeyExtractor(),
                quota=(10, 60),
                store=memory_store,
            )

    def test_accepts_enum_values_as_strings(self, memory_store):
        policy = make_policy(
            "p", memory_store, 10, algorithm="sliding_window", failure_policy="fail_open"
        )

        assert policy.algorithm is RateLimitAlgorithm.SLIDING_WINDOW
        assert policy.failure_policy is FailurePolicy.FAIL_OPEN

    def test_store_keys_are_hashed_by_default(self, memory_store, descriptor):
        policy = make_policy("per_address", memory_store, 10)

        key = policy.store_key(descriptor(address="203.0.113.7"))

        assert key.startswith("per_address:address:")
        assert "203.0.113.7" not in key

    def test_store_keys_can_stay_readable(self, memory_store, descriptor):
        policy = make_policy("per_address", memory_store, 10, hash_keys=False)

        assert "203.0.113.7" in policy.store_key(descriptor(address="203.0.113.7"))

    @pytest.mark.asyncio
    async def test_decision_reports_policy_and_algorithm(self, memory_store, descriptor):
        policy = make_policy("per_address", memory_store, 10, algorithm=RateLimitAlgorithm.SLIDING_WINDOW)

        decision = await policy.check(descriptor(), now=0.0)

        assert decision.admitted
        assert decision.remaining == 9
        assert decision.policy == "per_address"
        assert decision.algorithm is RateLimitAlgorithm.SLIDING_WINDOW

    @pytest.mark.asyncio
    async def test_timeout_becomes_store_unavailable(self, descriptor):
        policy = make_policy("slow", SlowStore(), 10)

        with pytest.raises(StoreUnavailableError):
            await policy.check(descriptor(), now=0.0, timeout=0.01)


class TestAdmissionGatewayScenarios:
    @pytest.mark.asyncio
    async def test_quota_counts_down_then_rejects(self, address_policy, clock, descriptor):
        gateway = AdmissionGateway(policies=[address_policy], clock=clock)

        remaining = []
        for t in range(10):
            clock.set(t)
            decision = await gateway.admit(descriptor())
            assert decision.admitted
            remaining.append(decision.remaining)

        assert remaining == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]

        clock.set(10)
        rejected = await gateway.admit(descriptor())

        assert not rejected.admitted
        assert rejected.retry_after == pytest.approx(50.0)
        assert rejected.reason == "quota_exceeded"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", list(RateLimitAlgorithm))
    async def test_waiting_retry_after_is_enough(self, memory_store, clock, descriptor, algorithm):
        policy = make_policy("per_address", memory_store, 10, algorithm=algorithm)
        gateway = AdmissionGateway(policies=[policy], clock=clock)
        for _ in range(11):
            rejected = await gateway.admit(descriptor())

        assert not rejected.admitted

        # A client that keeps bursting but always honours the wait is never
        # rejected right after waiting.
        for _ in range(5):
            decision = await gateway.admit(descriptor())
            while decision.admitted:
                decision = await gateway.admit(descriptor())
            clock.advance(decision.retry_after)
            assert (await gateway.admit(descriptor())).admitted

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", list(RateLimitAlgorithm))
    async def test_waiting_whole_second_retry_after_is_enough(
        self, memory_store, clock, descriptor, algorithm
    ):
        policy = make_policy("per_address", memory_store, 10, algorithm=algorithm)
        gateway = AdmissionGateway(policies=[policy], clock=clock)
        for _ in range(11):
            rejected = await gateway.admit(descriptor())

        clock.advance(rejected.retry_after_seconds)

        assert (await gateway.admit(descriptor())).admitted

    @pytest.mark.asyncio
    async def test_new_window_restores_quota(self, address_policy, clock, descriptor):
        gateway = AdmissionGateway(policies=[address_policy], clock=clock)
        for t in range(11):
            clock.set(t)
            await gateway.admit(descriptor())

        clock.set(61)
        decision = await gateway.admit(descriptor())

        assert decision.admitted
        assert decision.remaining == 9

    @pytest.mark.asyncio
    async def test_principals_are_counted_independently(self, address_policy, clock, descriptor):
        gateway = AdmissionGateway(policies=[address_policy], clock=clock)
        for _ in range(11):
            await gateway.admit(descriptor(address="198.51.100.1"))

        decision = await gateway.admit(descriptor(address="198.51.100.2"))

        assert decision.admitted
        assert decision.remaining == 9

    @pytest.mark.asyncio
    async def test_concurrent_callers_never_exceed_quota(self, memory_store, clock, descriptor):
        gateway = AdmissionGateway(policies=[make_policy("p", memory_store, 5)], clock=clock)

        decisions = await asyncio.gather(*(gateway.admit(descriptor()) for _ in range(10)))

        assert sum(d.admitted for d in decisions) == 5
        assert all(d.retry_after > 0 for d in decisions if not d.admitted)

    @pytest.mark.asyncio
    async def test_concurrency_at_ten_times_quota(self, memory_store, clock, descriptor):
        gateway = AdmissionGateway(policies=[make_policy("p", memory_store, 20)], clock=clock)

        decisions = await asyncio.gather(*(gateway.admit(descriptor()) for _ in range(200)))

        assert sum(d.admitted for d in decisions) == 20


class TestLayeredPolicies:
    @pytest.mark.asyncio
    async def test_identity_capped_behind_shared_address(self, layered_gateway, descriptor):
        admitted = 0
        for _ in range(15):
            decision = await layered_gateway.admit(descriptor(address="192.0.2.1", identity="alice"))
            admitted += decision.admitted

        assert admitted == 10

        # Another identity behind the same address still has its own budget.
        decision = await layered_gateway.admit(descriptor(address="192.0.2.1", identity="bob"))
        assert decision.admitted

    @pytest.mark.asyncio
    async def test_remaining_is_the_tightest_policy(self, layered_gateway, descriptor):
        decision = await layered_gateway.admit(descriptor(identity="alice"))

        assert decision.remaining == 9
        assert decision.policy == "per_identity"

    @pytest.mark.asyncio
    async def test_short_circuit_does_not_charge_later_policies(self, memory_store, clock, descriptor):
        gateway = AdmissionGateway(
            policies=[
                make_policy("per_address", memory_store, 1),
                make_policy("per_identity", memory_store, 10, extractor=IdentityKeyExtractor()),
            ],
            clock=clock,
        )
        request = descriptor(identity="alice")

        await gateway.admit(request)
        rejected = await gateway.admit(request)
        usage = await gateway.usage(request)

        assert rejected.policy == "per_address"
        assert usage["per_identity"].count == 1
        assert usage["per_address"].count == 2

    @pytest.mark.asyncio
    async def test_without_short_circuit_longest_retry_wins(self, memory_store, clock, descriptor):
        policies = [
            make_policy("burst", memory_store, 1, window_seconds=10),
            make_policy("sustained", memory_store, 1, window_seconds=60),
        ]
        gateway = AdmissionGateway(policies=policies, clock=clock, short_circuit=False)

        await gateway.admit(descriptor())
        decision = await gateway.admit(descriptor())

        assert not decision.admitted
        assert decision.policy == "sustained"
        assert decision.retry_after == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_short_circuit_returns_first_rejection(self, memory_store, clock, descriptor):
        policies = [
            make_policy("burst", memory_store, 1, window_seconds=10),
            make_policy("sustained", memory_store, 1, window_seconds=60),
        ]
        gateway = AdmissionGateway(policies=policies, clock=clock)

        await gateway.admit(descriptor())
        decision = await gateway.admit(descriptor())

        assert decision.policy == "burst"
        assert decision.retry_after == pytest.approx(10.0)


class TestExtractionFailures:
    @pytest.mark.asyncio
    async def test_skip_ignores_policy_without_key(self, layered_gateway, descriptor):
        decision = await layered_gateway.admit(descriptor(identity=None))

        assert decision.admitted
        assert decision.policy == "per_address"
        assert decision.remaining == 99

    @pytest.mark.asyncio
    async def test_all_policies_skipped_admits_without_remaining(self, memory_store, clock, descriptor):
        gateway = AdmissionGateway(
            policies=[make_policy("per_identity", memory_store, 10, extractor=IdentityKeyExtractor())],
            clock=clock,
        )

        decision = await gateway.admit(descriptor(identity=None))

        assert decision.admitted
        assert decision.remaining is None
        assert decision.reason == "no_applicable_policy"

    @pytest.mark.asyncio
    async def test_reject_policy(self, memory_store, clock, descriptor):
        gateway = AdmissionGateway(
            policies=[make_policy("per_identity", memory_store, 10, extractor=IdentityKeyExtractor())],
            clock=clock,
            extraction_failure_policy=ExtractionFailurePolicy.REJECT,
            fail_closed_retry_after=5.0,
        )

        decision = await gateway.admit(descriptor(identity=None))

        assert not decision.admitted
        assert decision.retry_after == 5.0
        assert decision.reason == "key_unavailable"


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_fail_closed_rejects_with_configured_backoff(self, clock, descriptor):
        gateway = AdmissionGateway(
            policies=[make_policy("p", failing_store(), 10)],
            clock=clock,
            fail_closed_retry_after=2.5,
        )

        with capture_logs() as logs:
            decision = await gateway.admit(descriptor())

        assert not decision.admitted
        assert decision.retry_after == 2.5
        assert decision.reason == "store_unavailable"
        assert "10.1.2.3" not in str(decision.to_http_headers())
        assert any(
            entry["event"] == "store_unavailable" and entry["log_level"] == "warning" for entry in logs
        )

    @pytest.mark.asyncio
    async def test_fail_open_admits(self, clock, descriptor):
        gateway = AdmissionGateway(
            policies=[make_policy("p", failing_store(), 10, failure_policy=FailurePolicy.FAIL_OPEN)],
            clock=clock,
        )

        decision = await gateway.admit(descriptor())

        assert decision.admitted
        assert decision.remaining is None

    @pytest.mark.asyncio
    async def test_store_timeout_fails_closed(self, clock, descriptor):
        gateway = AdmissionGateway(
            policies=[make_policy("p", SlowStore(), 10)],
            clock=clock,
            store_timeout=0.01,
        )

        decision = await gateway.admit(descriptor())

        assert not decision.admitted
        assert decision.reason == "store_unavailable"

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, clock, descriptor):
        gateway = AdmissionGateway(
            policies=[make_policy("p", failing_store(RuntimeError("bug")), 10)],
            clock=clock,
        )

        with pytest.raises(RuntimeError):
            await gateway.admit(descriptor())


class TestGatewayOperations:
    @pytest.mark.asyncio
    async def test_bypass_admits_without_charging(self, memory_store, clock, descriptor):
        gateway = AdmissionGateway(
            policies=[make_policy("p", memory_store, 1)],
            clock=clock,
            bypass=BypassRules(paths=frozenset({"/health"})),
        )

        for _ in range(5):
            decision = await gateway.admit(descriptor(path="/health"))
            assert decision.admitted
            assert decision.reason == "bypass:path"

        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_disabled_gateway_admits_everything(self, clock, descriptor):
        gateway = AdmissionGateway(policies=[], clock=clock, enabled=False)

        decision = await gateway.admit(descriptor())

        assert decision.admitted
        assert decision.reason == "disabled"

    @pytest.mark.asyncio
    async def test_sweep_reclaims_stale_windows(self, address_policy, clock, descriptor):
        gateway = AdmissionGateway(policies=[address_policy], clock=clock)
        await gateway.admit(descriptor())

        assert await gateway.sweep(now=60.0) == 0
        assert await gateway.sweep(now=120.0) == 1

    @pytest.mark.asyncio
    async def test_reset_clears_windows(self, address_policy, clock, descriptor):
        gateway = AdmissionGateway(policies=[address_policy], clock=clock)
        for _ in range(11):
            await gateway.admit(descriptor())

        await gateway.reset(descriptor())
        decision = await gateway.admit(descriptor())

        assert decision.admitted
        assert decision.remaining == 9

    @pytest.mark.asyncio
    async def test_shared_store_is_closed_once(self, clock):
        store = AsyncMock(spec=CounterStore)
        gateway = AdmissionGateway(
            policies=[make_policy("a", store, 1), make_policy("b", store, 1)],
            clock=clock,
        )

        await gateway.close()

        store.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_health_check_aggregates_stores(self, memory_store, clock):
        gateway = AdmissionGateway(policies=[make_policy("p", memory_store, 1)], clock=clock)

        report = await gateway.health_check()

        assert report["status"] == "healthy"
        assert report["stores"][0]["backend"] == "memory"


class TestGatewayValidation:
    def test_enabled_gateway_needs_policies(self, clock):
        with pytest.raises(InvalidConfigurationError):
            AdmissionGateway(policies=[], clock=clock)

    def test_policy_names_must_be_unique(self, memory_store, clock):
        with pytest.raises(InvalidConfigurationError):
            AdmissionGateway(
                policies=[make_policy("p", memory_store, 1), make_policy("p", memory_store, 2)],
                clock=clock,
            )

    @pytest.mark.parametrize(
        "kwargs",
        [{"store_timeout": 0}, {"fail_closed_retry_after": 0}, {"extraction_failure_policy": "ignore"}],
    )
    def test_rejects_invalid_settings(self, memory_store, clock, kwargs):
        with pytest.raises(InvalidConfigurationError):
            AdmissionGateway(policies=[make_policy("p", memory_store, 1)], clock=clock, **kwargs)
