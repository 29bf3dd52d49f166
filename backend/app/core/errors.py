"""
Gateway error taxonomy and the FastAPI handlers that render it.

  Unauthenticated   401  {error}
  Forbidden         403  {error}
  RateLimited       429  {error, message, retryAfter} + Retry-After
  QuotaExceeded     429  {error, message, retryAfter} + Retry-After
  StoreUnavailable  503  {error, message}
  InternalError     500  {error, message}

The first four are expected, terminal outcomes: they short-circuit the
pipeline and are never retried by the gateway. Message detail on 5xx
responses is suppressed in production.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for every admission outcome that ends the request."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "Internal server error"

    def __init__(self, message: str | None = None, *, key_id: uuid.UUID | None = None) -> None:
        super().__init__(message or self.error)
        self.message = message or self.error
        self.key_id = key_id

    def to_body(self, production: bool) -> dict[str, Any]:
        return {"error": self.error}

    def headers(self) -> dict[str, str] | None:
        return None


class Unauthenticated(GatewayError):
    """Missing, malformed, unknown, or non-active key. Always the same message."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Invalid or missing API key"


class Forbidden(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Access to this endpoint is not allowed for this API key"


class _TooManyRequests(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str | None = None, *, retry_after: int, key_id: uuid.UUID | None = None) -> None:
        super().__init__(message, key_id=key_id)
        self.retry_after = max(int(retry_after), 1)

    def to_body(self, production: bool) -> dict[str, Any]:
        return {"error": self.error, "message": self.message, "retryAfter": self.retry_after}

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class RateLimited(_TooManyRequests):
    error = "Rate limit exceeded"

    def __init__(
        self,
        *,
        retry_after: int,
        limit: int,
        subject: str,
        key_id: uuid.UUID | None = None,
    ) -> None:
        super().__init__(
            "Too many requests, please try again later.",
            retry_after=retry_after,
            key_id=key_id,
        )
        self.limit = limit
        self.subject = subject

    @property
    def limit_type(self) -> str:
        return f"rate:{self.subject.split(':', 1)[0]}"


class QuotaExceeded(_TooManyRequests):
    """
    Daily and/or monthly ceiling reached.

    `dimensions` lists every exhausted window; `dimension` is the one whose
    reset comes first (and therefore sets retry_after).
    """

    def __init__(
        self,
        dimensions: tuple[str, ...],
        *,
        retry_after: int,
        key_id: uuid.UUID | None = None,
    ) -> None:
        self.dimensions = dimensions
        self.dimension = dimensions[0]
        self.error = f"{self.dimension.capitalize()} request limit exceeded"
        super().__init__(
            f"The {self.dimension} request quota for this API key is used up.",
            retry_after=retry_after,
            key_id=key_id,
        )

    @property
    def limit_type(self) -> str:
        return f"quota:{self.dimension}"


class StoreUnavailable(GatewayError):
    """A backing store could not be reached within the retry budget."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "Service unavailable"

    def __init__(self, operation: str, *, key_id: uuid.UUID | None = None) -> None:
        super().__init__(f"Backing store unavailable during {operation}", key_id=key_id)
        self.operation = operation

    def to_body(self, production: bool) -> dict[str, Any]:
        message = "Please try again later." if production else self.message
        return {"error": self.error, "message": message}


class InternalError(GatewayError):
    def to_body(self, production: bool) -> dict[str, Any]:
        message = "An unexpected error occurred." if production else self.message
        return {"error": self.error, "message": message}


# ── Handlers ────────────────────────────────────────────────
def register_exception_handlers(app: FastAPI) -> None:
    """Render GatewayError subclasses and catch-all 500s."""

    production = app.state.settings.is_production

    @app.exception_handler(GatewayError)
    async def _gateway_error(_request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_body(production),
            headers=exc.headers(),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error on %s %s",
            request.method,
            request.url.path,
            exc_info=exc,
        )
        wrapped = InternalError(str(exc) or exc.__class__.__name__)
        return JSONResponse(
            status_code=wrapped.status_code,
            content=wrapped.to_body(production),
        )
