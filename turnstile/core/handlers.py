from __future__ import annotations

"""
Global exception handlers for FastAPI applications using the admission gateway.

Translates Turnstile exceptions into HTTP responses. Response bodies carry
only the outcome and retry guidance; policy names, store errors and keys
stay in the logs.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette import status
from structlog import get_logger

from turnstile.core.exceptions import (
    RateLimitExceededError,
    StoreUnavailableError,
)

__all__ = [
    "rate_limit_exceeded_handler",
    "store_unavailable_handler",
    "rate_limit_response",
    "register_exception_handlers",
]

logger = get_logger(__name__)

RATE_LIMITED_DETAIL = "Rate limit exceeded. Please try again later."


def rate_limit_response(retry_after: int | None, headers: dict[str, str] | None = None) -> JSONResponse:
    """Build the `429 Too Many Requests` response shared by handler and middleware."""
    content = {"detail": RATE_LIMITED_DETAIL}
    if retry_after is not None:
        content["retry_after"] = retry_after
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=content,
        headers=headers or {},
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Handles `RateLimitExceededError`, returning a `429`.

    Args:
        request: The incoming `Request` object.
        exc: The `RateLimitExceededError` instance.

    Returns:
        A `JSONResponse` with a 429 status code and a `Retry-After` header.
    """
    decision = exc.decision
    logger.warning(
        "rate_limit_exceeded",
        path=request.url.path,
        policy=decision.policy,
        reason=decision.reason,
        retry_after=decision.retry_after,
    )
    return rate_limit_response(decision.retry_after_seconds, decision.to_http_headers())


async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Handles a `StoreUnavailableError` that escaped to the app, returning a `503`.

    The gateway resolves store failures itself; this only catches direct
    store use (health and admin routes).
    """
    logger.error("store_unavailable", path=request.url.path, error=exc.code)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Registers the Turnstile exception handlers with the FastAPI application.

    Args:
        app: The `FastAPI` application instance.
    """
    app.add_exception_handler(RateLimitExceededError, rate_limit_exceeded_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
    logger.debug("exception_handlers_registered")

