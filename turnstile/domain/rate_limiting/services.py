"""
Rate Limiting Domain Services

Services that compose extractors, stores and algorithms into admission
decisions.

Services:
- LimiterPolicy: One reusable admission rule (extractor + quota + store + algorithm)
- AdmissionGateway: Runs an ordered list of policies for each request

Policies are evaluated as an explicit ordered list rather than nested
middleware, so short-circuiting and charge avoidance are visible here.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from structlog import get_logger

from turnstile.core.exceptions import (
    ExtractionError,
    InvalidConfigurationError,
    StoreUnavailableError,
)

from .algorithms import WindowAlgorithm, create_algorithm
from .clock import Clock, MonotonicClock
from .entities import AdmissionDecision, BypassRules, RequestDescriptor
from .key_extractors import KeyExtractor
from .repositories import CounterStore
from .value_objects import (
    ExtractionFailurePolicy,
    FailurePolicy,
    RateLimitAlgorithm,
    RateLimitQuota,
    WindowSnapshot,
)

logger = get_logger(__name__)

DEFAULT_STORE_TIMEOUT_SECONDS = 0.5
DEFAULT_FAIL_CLOSED_RETRY_AFTER = 1.0


@dataclass(frozen=True)
class LimiterPolicy:
    """
    Immutable admission rule: one key extractor, one quota, one store.

    The policy name namespaces its keys, so several policies can share a
    store. With `hash_keys` (default) the store only ever sees digests of
    addresses and identities.
    """

    name: str
    key_extractor: KeyExtractor
    quota: RateLimitQuota
    store: CounterStore
    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.FIXED_WINDOW
    failure_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED
    hash_keys: bool = True
    _window: WindowAlgorithm = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise InvalidConfigurationError("Policy name must not be empty")
        if not isinstance(self.quota, RateLimitQuota):
            raise InvalidConfigurationError(f"Policy {self.name}: quota must be a RateLimitQuota")
        if not isinstance(self.key_extractor, KeyExtractor):
            raise InvalidConfigurationError(f"Policy {self.name}: key_extractor must be a KeyExtractor")
        if not isinstance(self.store, CounterStore):
            raise InvalidConfigurationError(f"Policy {self.name}: store must be a CounterStore")
        try:
            window = create_algorithm(RateLimitAlgorithm(self.algorithm))
            failure_policy = FailurePolicy(self.failure_policy)
        except ValueError as e:
            raise InvalidConfigurationError(f"Policy {self.name}: {e}") from e
        object.__setattr__(self, "algorithm", window.kind)
        object.__setattr__(self, "failure_policy", failure_policy)
        object.__setattr__(self, "_window", window)

    def store_key(self, descriptor: RequestDescriptor) -> str:
        """Derive the namespaced store key; raises ExtractionError."""
        key = self.key_extractor.extract(descriptor).scoped(self.name)
        return key.hashed if self.hash_keys else key.encoded

    async def check(
        self,
        descriptor: RequestDescriptor,
        now: float,
        timeout: Optional[float] = None,
    ) -> AdmissionDecision:
        """
        Charge one event for the request's key and decide admission.

        Raises:
            ExtractionError: The key's attribute is missing from the request
            StoreUnavailableError: The store failed or exceeded `timeout`
        """
        key = self.store_key(descriptor)
        increment = self.store.increment(key, now, self.quota.window_seconds)
        snapshot = await _bounded(increment, timeout)

        verdict = self._window.evaluate(snapshot, self.quota, now)
        if verdict.admitted:
            return AdmissionDecision.allowed(
                remaining=verdict.remaining, policy=self.name, algorithm=self.algorithm
            )
        return AdmissionDecision.rejected(
            retry_after=verdict.retry_after,
            policy=self.name,
            algorithm=self.algorithm,
            reason="quota_exceeded",
        )

    async def peek(
        self,
        descriptor: RequestDescriptor,
        now: float,
        timeout: Optional[float] = None,
    ) -> Optional[WindowSnapshot]:
        """Read the request's live window without charging it."""
        key = self.store_key(descriptor)
        return await _bounded(self.store.peek(key, now, self.quota.window_seconds), timeout)

    async def reset(self, descriptor: RequestDescriptor) -> None:
        """Clear the request's window for this policy."""
        await self.store.reset(self.store_key(descriptor))


async def _bounded(awaitable, timeout: Optional[float]):
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise StoreUnavailableError(f"Counter store did not answer within {timeout}s") from e


class AdmissionGateway:
    """
    Request-facing entry point of the admission engine.

    Runs the configured policies in order for every request. With
    `short_circuit` (default) evaluation stops at the first rejection and
    later policies are not charged. Without it every policy is charged and
    the longest `retry_after` among the rejections is returned.

    Store failures are never propagated: each policy's `FailurePolicy`
    decides between admitting and rejecting with `fail_closed_retry_after`.
    Policies whose key cannot be extracted are skipped or rejected
    according to `extraction_failure_policy`.
    """

    def __init__(
        self,
        policies: Sequence[LimiterPolicy],
        clock: Optional[Clock] = None,
        extraction_failure_policy: ExtractionFailurePolicy = ExtractionFailurePolicy.SKIP,
        short_circuit: bool = True,
        fail_closed_retry_after: float = DEFAULT_FAIL_CLOSED_RETRY_AFTER,
        store_timeout: float = DEFAULT_STORE_TIMEOUT_SECONDS,
        bypass: Optional[BypassRules] = None,
        enabled: bool = True,
    ):
        self.policies: tuple[LimiterPolicy, ...] = tuple(policies)
        self.clock = clock or MonotonicClock()
        self.short_circuit = short_circuit
        self.bypass = bypass or BypassRules()
        self.enabled = enabled

        try:
            self.extraction_failure_policy = ExtractionFailurePolicy(extraction_failure_policy)
        except ValueError as e:
            raise InvalidConfigurationError(str(e)) from e

        if enabled and not self.policies:
            raise InvalidConfigurationError("An enabled gateway needs at least one policy")
        names = [policy.name for policy in self.policies]
        if len(names) != len(set(names)):
            raise InvalidConfigurationError(f"Policy names must be unique: {names}")
        if store_timeout is None or store_timeout <= 0:
            raise InvalidConfigurationError("store_timeout must be positive")
        if fail_closed_retry_after <= 0:
            raise InvalidConfigurationError("fail_closed_retry_after must be positive")

        self.store_timeout = store_timeout
        self.fail_closed_retry_after = fail_closed_retry_after

        logger.info(
            "admission_gateway_configured",
            policies=[
                {"name": p.name, "quota": str(p.quota), "algorithm": p.algorithm.value}
                for p in self.policies
            ],
            short_circuit=short_circuit,
            extraction_failure_policy=self.extraction_failure_policy.value,
            enabled=enabled,
        )

    async def admit(self, descriptor: RequestDescriptor) -> AdmissionDecision:
        """
        Decide whether a request may proceed.

        Returns:
            The first rejection (or the longest one when not
            short-circuiting), otherwise an admission carrying the minimum
            `remaining` across the policies that counted the request.
        """
        if not self.enabled:
            return AdmissionDecision.allowed(reason="disabled")

        bypass_reason = None if self.bypass.is_empty else self.bypass.reason_for(descriptor)
        if bypass_reason:
            logger.info("rate_limit_bypassed", reason=bypass_reason, path=descriptor.path)
            return AdmissionDecision.allowed(reason=f"bypass:{bypass_reason}")

        now = self.clock.now()
        rejections: List[AdmissionDecision] = []
        tightest: Optional[AdmissionDecision] = None

        for policy in self.policies:
            decision = await self._evaluate(policy, descriptor, now)
            if decision is None:
                continue
            if decision.admitted:
                if tightest is None or (
                    decision.remaining is not None
                    and (tightest.remaining is None or decision.remaining < tightest.remaining)
                ):
                    tightest = decision
                continue
            rejections.append(decision)
            if self.short_circuit:
                break

        if rejections:
            decision = max(rejections, key=lambda d: d.retry_after or 0.0)
            logger.info(
                "admission_rejected",
                policy=decision.policy,
                reason=decision.reason,
                retry_after=decision.retry_after,
                path=descriptor.path,
            )
            return decision

        if tightest is None:
            return AdmissionDecision.allowed(reason="no_applicable_policy")
        return tightest

    async def _evaluate(
        self,
        policy: LimiterPolicy,
        descriptor: RequestDescriptor,
        now: float,
    ) -> Optional[AdmissionDecision]:
        try:
            return await policy.check(descriptor, now, timeout=self.store_timeout)
        except ExtractionError as e:
            if self.extraction_failure_policy is ExtractionFailurePolicy.REJECT:
                logger.info("key_extraction_failed", policy=policy.name, attribute=e.attribute, action="reject")
                return AdmissionDecision.rejected(
                    retry_after=self.fail_closed_retry_after,
                    policy=policy.name,
                    algorithm=policy.algorithm,
                    reason="key_unavailable",
                )
            logger.debug("key_extraction_failed", policy=policy.name, attribute=e.attribute, action="skip")
            return None
        except StoreUnavailableError as e:
            if policy.failure_policy is FailurePolicy.FAIL_OPEN:
                logger.warning("store_unavailable", policy=policy.name, error=str(e), action="fail_open")
                return AdmissionDecision.allowed(
                    policy=policy.name, algorithm=policy.algorithm, reason="store_unavailable"
                )
            logger.warning("store_unavailable", policy=policy.name, error=str(e), action="fail_closed")
            return AdmissionDecision.rejected(
                retry_after=self.fail_closed_retry_after,
                policy=policy.name,
                algorithm=policy.algorithm,
                reason="store_unavailable",
            )

    async def usage(self, descriptor: RequestDescriptor) -> Dict[str, Optional[WindowSnapshot]]:
        """
        Current window of every policy for a request, without charging it.

        Policies whose key cannot be extracted are omitted.
        """
        now = self.clock.now()
        result: Dict[str, Optional[WindowSnapshot]] = {}
        for policy in self.policies:
            try:
                result[policy.name] = await policy.peek(descriptor, now, timeout=self.store_timeout)
            except ExtractionError:
                continue
        return result

    async def reset(self, descriptor: RequestDescriptor) -> None:
        """Clear every policy's window for a request (administrative)."""
        for policy in self.policies:
            try:
                await policy.reset(descriptor)
            except ExtractionError:
                continue
        logger.info("rate_limit_reset", path=descriptor.path)

    def _stores(self) -> List[CounterStore]:
        stores: Dict[int, CounterStore] = {}
        for policy in self.policies:
            stores.setdefault(id(policy.store), policy.store)
        return list(stores.values())

    async def health_check(self) -> Dict[str, Any]:
        """Aggregate health of the stores; `healthy` only if every store is."""
        reports = [await store.health_check() for store in self._stores()]
        healthy = all(report.get("status") == "healthy" for report in reports)
        return {"status": "healthy" if healthy else "unhealthy", "stores": reports}

    async def sweep(self, now: Optional[float] = None) -> int:
        """Reclaim stale windows from every store the policies use."""
        now = self.clock.now() if now is None else now
        removed = 0
        for store in self._stores():
            removed += await store.cleanup_expired(now)
        logger.debug("counter_store_swept", removed=removed)
        return removed

    async def close(self) -> None:
        for store in self._stores():
            await store.close()
