"""
FastAPI dependencies for the admission gateway.

Flow (enforce_admission):
  1. Read the secret from the configured header (default `api-key`)
  2. Run GatewayPipeline.admit — resolve → scope → rate → quota
  3. Record the key id (never the secret) on request.state for the
     post-response request-log hook, including when admission rejects
     a request whose key was already identified
  4. Set X-RateLimit-* headers and return an AuthContext

Rejections propagate as GatewayError subclasses and are rendered by the
handlers in app.core.errors.

Order in request pipeline: ADMISSION → ROUTER LOGIC → REQUEST LOG.
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, Response, status

from app.core.errors import GatewayError
from app.schemas.api_key import UsageSnapshot
from app.services.api_keys import ApiKeyService
from app.services.gateway import GatewayPipeline
from app.services.usage_reset import UsageResetScheduler


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Authenticated request context injected into every protected route.

    Attributes:
        api_key_id: The API key UUID used for this request.
        user_id:    Owner of the key.
        usage:      Counters right after this request was counted.
    """

    api_key_id: uuid.UUID
    user_id: str
    status: str
    usage: UsageSnapshot


def get_gateway(request: Request) -> GatewayPipeline:
    return request.app.state.gateway


def get_key_service(request: Request) -> ApiKeyService:
    return request.app.state.key_service


def get_reset_scheduler(request: Request) -> UsageResetScheduler:
    return request.app.state.reset_scheduler


def client_address(request: Request) -> str:
    """Caller address; honours X-Forwarded-For only when configured to."""
    if request.app.state.settings.TRUST_FORWARDED_FOR:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",", 1)[0].strip()
    return request.client.host if request.client else "unknown"


async def enforce_admission(
    request: Request,
    response: Response,
    gateway: GatewayPipeline = Depends(get_gateway),
) -> AuthContext:
    """
    FastAPI dependency — admits the request or raises a GatewayError.

    Usage in routers:
        Auth = Annotated[AuthContext, Depends(enforce_admission)]
    """
    header = request.app.state.settings.API_KEY_HEADER
    address = client_address(request)
    request.state.client_address = address

    try:
        admission = await gateway.admit(
            request.headers.get(header),
            request.url.path,
            request.method,
            address,
        )
    except GatewayError as exc:
        # Rejections after the key resolved (403, 429, 503) are still logged
        # against it.
        if exc.key_id is not None:
            request.state.api_key_id = exc.key_id
        raise
    request.state.api_key_id = admission.api_key_id

    rate = admission.rate
    if not rate.is_unlimited:
        response.headers["X-RateLimit-Limit"] = str(rate.limit)
        response.headers["X-RateLimit-Remaining"] = str(rate.remaining)
        response.headers["X-RateLimit-Reset"] = str(rate.reset_after)

    return AuthContext(
        api_key_id=admission.api_key_id,
        user_id=admission.record.user_id,
        status=admission.record.status,
        usage=admission.usage,
    )


async def require_admin(
    request: Request,
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> None:
    """Guard for /admin routes. An empty ADMIN_TOKEN disables them."""
    expected = request.app.state.settings.ADMIN_TOKEN
    if not expected:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token.",
        )
