"""HTTP adapter for the admission gateway.

Maps Starlette/FastAPI requests onto `RequestDescriptor`s and admission
decisions onto responses. Two entry points are offered:

- `AdmissionMiddleware` guards every route of an application.
- `require_admission` guards individual routes as a FastAPI dependency and
  raises `RateLimitExceededError`, rendered by the handler registered in
  `turnstile.core.handlers`.

The gateway and the `X-Forwarded-For` trust flag are taken from the
constructor or, when omitted, from `app.state.gateway` and
`app.state.trust_forwarded` (set by `turnstile.core.lifecycle`).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from turnstile.core.exceptions import RateLimitExceededError
from turnstile.core.handlers import rate_limit_response
from turnstile.domain.rate_limiting.entities import AdmissionDecision, RequestDescriptor
from turnstile.domain.rate_limiting.services import AdmissionGateway


def _identity_of(user: Any) -> Optional[str]:
    """Principal id of an authenticated user object placed on `request.state`."""
    if user is None:
        return None
    if isinstance(user, str):
        return user
    if isinstance(user, Mapping):
        value = user.get("id") or user.get("email")
    else:
        value = getattr(user, "id", None) or getattr(user, "email", None)
    return str(value) if value is not None else None


def _client_address(request: Request, trust_forwarded: bool) -> Optional[str]:
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else None


def descriptor_from_request(request: Request, trust_forwarded: bool = False) -> RequestDescriptor:
    """
    Build the descriptor the gateway evaluates.

    Identity is read only from `request.state.user`, which authentication
    sets after verifying credentials; client-supplied headers never become
    identities.

    Args:
        request: Incoming request
        trust_forwarded: Use the first `X-Forwarded-For` hop as the address.
            Only enable behind a proxy that overwrites the header.
    """
    return RequestDescriptor(
        address=_client_address(request, trust_forwarded),
        identity=_identity_of(getattr(request.state, "user", None)),
        path=request.url.path,
        method=request.method,
        headers=dict(request.headers),
    )


def _trusts_forwarded(request: Request, trust_forwarded: Optional[bool]) -> bool:
    if trust_forwarded is not None:
        return trust_forwarded
    return bool(getattr(request.app.state, "trust_forwarded", False))


def _gateway_for(request: Request, gateway: Optional[AdmissionGateway]) -> AdmissionGateway:
    if gateway is not None:
        return gateway
    state_gateway = getattr(request.app.state, "gateway", None)
    if state_gateway is None:
        raise RuntimeError("No admission gateway configured on app.state.gateway")
    return state_gateway


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Middleware that admits or rejects every request before routing.

    Rejections become `429 Too Many Requests` with `Retry-After`; admitted
    responses carry `X-RateLimit-Remaining` when a policy counted them.
    """

    def __init__(
        self,
        app,
        gateway: Optional[AdmissionGateway] = None,
        trust_forwarded: Optional[bool] = None,
    ):
        super().__init__(app)
        self.gateway = gateway
        self.trust_forwarded = trust_forwarded

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        gateway = _gateway_for(request, self.gateway)
        trust = _trusts_forwarded(request, self.trust_forwarded)
        decision = await gateway.admit(descriptor_from_request(request, trust))

        if not decision.admitted:
            return rate_limit_response(decision.retry_after_seconds, decision.to_http_headers())

        response = await call_next(request)
        for name, value in decision.to_http_headers().items():
            response.headers[name] = value
        return response


def require_admission(
    gateway: Optional[AdmissionGateway] = None,
    trust_forwarded: Optional[bool] = None,
) -> Callable[[Request], Awaitable[AdmissionDecision]]:
    """Return a FastAPI *dependency* that admits the request or raises.

    Example:
        `@router.post("/login", dependencies=[Depends(require_admission(gateway))])`

    Raises:
        RateLimitExceededError: When the gateway rejects the request
    """

    async def _dependency(request: Request) -> AdmissionDecision:
        decision = await _gateway_for(request, gateway).admit(
            descriptor_from_request(request, _trusts_forwarded(request, trust_forwarded))
        )
        if not decision.admitted:
            raise RateLimitExceededError(decision)
        return decision

    return _dependency
