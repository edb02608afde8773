"""Rate limiting configuration and gateway assembly."""

from .config import PolicySettings, RateLimitingConfig, create_gateway, load_rate_limiting_config

__all__ = [
    "PolicySettings",
    "RateLimitingConfig",
    "create_gateway",
    "load_rate_limiting_config",
]
