"""Rate Limiting Configuration

Centralized configuration for admission policies, so limits can change
without code changes. Values come from `RATE_LIMITING_*` environment
variables (or the `.env` file); `policies` is a JSON list.

Example:
    RATE_LIMITING_BACKEND=redis
    RATE_LIMITING_POLICIES='[{"name": "per_address", "rate": "100/minute"},
                             {"name": "per_identity", "rate": "10/minute",
                              "key_extractor": "identity"}]'
    RATE_LIMITING_BYPASS_ADDRESSES=10.0.0.1,10.0.0.2
"""

from typing import Annotated, FrozenSet, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from structlog import get_logger

from turnstile.core.config.settings import Settings, settings as app_settings
from turnstile.core.exceptions import InvalidConfigurationError
from turnstile.domain.rate_limiting.clock import Clock, MonotonicClock, WallClock
from turnstile.domain.rate_limiting.entities import BypassRules
from turnstile.domain.rate_limiting.key_extractors import create_key_extractor
from turnstile.domain.rate_limiting.repositories import CounterStore
from turnstile.domain.rate_limiting.services import AdmissionGateway, LimiterPolicy
from turnstile.domain.rate_limiting.value_objects import (
    ExtractionFailurePolicy,
    FailurePolicy,
    KeyExtractorKind,
    RateLimitAlgorithm,
    RateLimitQuota,
)
from turnstile.infrastructure.redis import create_redis_client
from turnstile.infrastructure.repositories.memory import DEFAULT_STRIPES, InMemoryCounterStore
from turnstile.infrastructure.repositories.redis_store import RedisCounterStore

logger = get_logger(__name__)

CommaSeparatedSet = Annotated[FrozenSet[str], NoDecode]


class PolicySettings(BaseModel):
    """One admission policy as written in configuration.

    The quota is given either as `rate` ("10/minute") or as
    `max_requests` + `window_seconds`, never both.
    """

    name: str = Field(min_length=1)
    rate: Optional[str] = None
    max_requests: Optional[int] = None
    window_seconds: Optional[float] = None
    key_extractor: KeyExtractorKind = KeyExtractorKind.ADDRESS
    header_name: Optional[str] = None
    components: List[KeyExtractorKind] = Field(default_factory=list)
    casefold: bool = False
    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.FIXED_WINDOW
    failure_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED
    hash_keys: bool = True

    @model_validator(mode="after")
    def check_quota(self) -> "PolicySettings":
        has_rate = self.rate is not None
        has_pair = self.max_requests is not None or self.window_seconds is not None
        if has_rate == has_pair:
            raise ValueError(
                f"Policy {self.name}: give either 'rate' or 'max_requests' with 'window_seconds'"
            )
        # Raises InvalidConfigurationError for non-positive values.
        self.to_quota()
        return self

    def to_quota(self) -> RateLimitQuota:
        if self.rate is not None:
            return RateLimitQuota.from_rate_string(self.rate)
        if self.max_requests is None or self.window_seconds is None:
            raise InvalidConfigurationError(
                f"Policy {self.name}: max_requests and window_seconds are both required"
            )
        return RateLimitQuota(max_requests=self.max_requests, window_seconds=self.window_seconds)

    def build(self, store: CounterStore) -> LimiterPolicy:
        """Create the limiter policy this entry describes."""
        extractor = create_key_extractor(
            self.key_extractor,
            header_name=self.header_name,
            components=self.components,
            casefold=self.casefold,
        )
        return LimiterPolicy(
            name=self.name,
            key_extractor=extractor,
            quota=self.to_quota(),
            store=store,
            algorithm=self.algorithm,
            failure_policy=self.failure_policy,
            hash_keys=self.hash_keys,
        )


def _default_policies() -> List[PolicySettings]:
    return [
        PolicySettings(name="per_address", rate="100/minute", key_extractor=KeyExtractorKind.ADDRESS),
        PolicySettings(name="per_identity", rate="10/minute", key_extractor=KeyExtractorKind.IDENTITY),
    ]


class RateLimitingConfig(BaseSettings):
    """Configuration for the admission gateway."""

    enabled: bool = True
    backend: str = "memory"
    store_timeout_seconds: float = Field(0.5, gt=0)
    fail_closed_retry_after: float = Field(1.0, gt=0)
    extraction_failure_policy: ExtractionFailurePolicy = ExtractionFailurePolicy.SKIP
    short_circuit: bool = True
    stripes: int = Field(DEFAULT_STRIPES, ge=1)
    sweep_interval_seconds: float = Field(60.0, gt=0)
    trust_forwarded: bool = False

    bypass_addresses: CommaSeparatedSet = frozenset()
    bypass_identities: CommaSeparatedSet = frozenset()
    bypass_paths: CommaSeparatedSet = frozenset()

    policies: List[PolicySettings] = Field(default_factory=_default_policies)

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="RATE_LIMITING_", extra="ignore"
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        backend = v.strip().lower()
        if backend not in ("memory", "redis"):
            raise ValueError(f"Unsupported backend: {v}")
        return backend

    @field_validator("bypass_addresses", "bypass_identities", "bypass_paths", mode="before")
    @classmethod
    def parse_comma_separated_sets(cls, v):
        """Parse comma-separated strings into sets."""
        if isinstance(v, str):
            return frozenset(item.strip() for item in v.split(",") if item.strip())
        if isinstance(v, (list, set, frozenset, tuple)):
            return frozenset(v)
        return frozenset()

    @model_validator(mode="after")
    def check_policies(self) -> "RateLimitingConfig":
        if self.enabled and not self.policies:
            raise ValueError("At least one policy is required while rate limiting is enabled")
        names = [policy.name for policy in self.policies]
        if len(names) != len(set(names)):
            raise ValueError(f"Policy names must be unique: {names}")
        return self

    def bypass_rules(self) -> BypassRules:
        return BypassRules(
            addresses=self.bypass_addresses,
            identities=self.bypass_identities,
            paths=self.bypass_paths,
        )

    def create_store(self, settings: Optional[Settings] = None) -> CounterStore:
        """Build the counter store selected by `backend`."""
        if self.backend == "redis":
            return RedisCounterStore(create_redis_client(settings or app_settings), owns_client=True)
        return InMemoryCounterStore(stripes=self.stripes)

    def create_clock(self) -> Clock:
        # Monotonic readings are not comparable across processes.
        return WallClock() if self.backend == "redis" else MonotonicClock()


def load_rate_limiting_config(**overrides) -> RateLimitingConfig:
    """
    Load the configuration from the environment.

    Raises:
        InvalidConfigurationError: When any value fails validation
    """
    try:
        return RateLimitingConfig(**overrides)
    except ValidationError as e:
        raise InvalidConfigurationError(f"Invalid rate limiting configuration: {e}") from e


def create_gateway(
    config: Optional[RateLimitingConfig] = None,
    store: Optional[CounterStore] = None,
    clock: Optional[Clock] = None,
) -> AdmissionGateway:
    """
    Build the admission gateway described by the configuration.

    Args:
        config: Loaded configuration; read from the environment by default
        store: Counter store shared by every policy; built from `backend` by default
        clock: Time source; chosen to match the backend by default

    Raises:
        InvalidConfigurationError: On invalid configuration
    """
    if config is None:
        config = load_rate_limiting_config()
    if store is None:
        store = config.create_store()
    if clock is None:
        clock = config.create_clock()

    policies = [entry.build(store) for entry in config.policies]
    gateway = AdmissionGateway(
        policies=policies,
        clock=clock,
        extraction_failure_policy=config.extraction_failure_policy,
        short_circuit=config.short_circuit,
        fail_closed_retry_after=config.fail_closed_retry_after,
        store_timeout=config.store_timeout_seconds,
        bypass=config.bypass_rules(),
        enabled=config.enabled,
    )
    logger.info(
        "rate_limiting_configured",
        backend=config.backend,
        enabled=config.enabled,
        policies=[entry.name for entry in config.policies],
    )
    return gateway
