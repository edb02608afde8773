"""Application lifecycle management.

Startup and shutdown handling for FastAPI applications that use the
admission gateway: the store is probed (with retries) before traffic is
accepted, stale windows are swept periodically, and store connections are
released on shutdown.
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from turnstile.core.config.settings import settings
from turnstile.core.exceptions import StoreUnavailableError
from turnstile.core.logging import logger
from turnstile.core.rate_limiting.config import (
    RateLimitingConfig,
    create_gateway,
    load_rate_limiting_config,
)
from turnstile.domain.rate_limiting.services import AdmissionGateway


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type(StoreUnavailableError),
    reraise=True,
)
async def wait_for_store(gateway: AdmissionGateway) -> None:
    """
    Probe every counter store the gateway uses.

    Raises:
        StoreUnavailableError: When a store is still unhealthy after retries
    """
    report = await gateway.health_check()
    if report["status"] != "healthy":
        logger.warning("counter_store_unhealthy", stores=report["stores"])
        raise StoreUnavailableError("Counter store unhealthy on startup")
    logger.info("counter_store_ready", stores=report["stores"])


async def sweep_periodically(gateway: AdmissionGateway, interval_seconds: float) -> None:
    """Run `gateway.sweep()` every `interval_seconds` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await gateway.sweep()
        except StoreUnavailableError as e:
            logger.warning("counter_store_sweep_failed", error=str(e))


def create_lifespan_manager(
    config: Optional[RateLimitingConfig] = None,
    gateway: Optional[AdmissionGateway] = None,
):
    """Create the application lifespan manager.

    Args:
        config: Rate limiting configuration; loaded from the environment by default
        gateway: Prebuilt gateway; built from `config` by default

    Returns:
        AsyncContextManager: The lifespan manager for the FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Attach the gateway and the forwarded-address trust flag to `app.state`.

        Raises:
            RuntimeError: If the counter store is unavailable during startup
        """
        nonlocal config
        if config is None:
            config = load_rate_limiting_config()
        active = gateway if gateway is not None else create_gateway(config)

        try:
            await wait_for_store(active)
        except StoreUnavailableError as e:
            logger.error("counter_store_unavailable_on_startup", error=str(e))
            await active.close()
            raise RuntimeError("Counter store unavailable") from e

        app.state.gateway = active
        app.state.trust_forwarded = config.trust_forwarded
        sweeper = asyncio.create_task(sweep_periodically(active, config.sweep_interval_seconds))
        logger.info("application_startup", env=settings.APP_ENV, version=settings.VERSION)

        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await active.close()
            logger.info("application_shutdown", env=settings.APP_ENV)

    return lifespan
