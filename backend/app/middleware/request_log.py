"""
Post-response hook: request id + audit log entry.

  • Assigns X-Request-ID (or propagates the caller's) on every response.
  • When admission resolved a key (request.state.api_key_id), enqueues one
    RequestLogEntry with status, latency, address and user agent. This
    covers rejections after resolution too (403, 429, 503, non-active 401).

Requests that never resolved a key (unknown-key 401s, /health) are not
written to the audit table; the access log still has them.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, Response

from app.core.timeutils import utcnow
from app.services.request_log import RequestLogEntry

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def request_log_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()
    timestamp = utcnow()

    response = await call_next(request)

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    response.headers[REQUEST_ID_HEADER] = request_id

    api_key_id = getattr(request.state, "api_key_id", None)
    writer = getattr(request.app.state, "request_log_writer", None)
    if api_key_id is not None and writer is not None:
        writer.enqueue(
            RequestLogEntry(
                api_key_id=api_key_id,
                endpoint=request.url.path,
                method=request.method,
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
                ip_address=getattr(request.state, "client_address", None)
                or (request.client.host if request.client else "unknown"),
                user_agent=request.headers.get("user-agent"),
                timestamp=timestamp,
            )
        )

    logger.info(
        "%s %s -> %d in %dms (key=%s, request_id=%s)",
        request.method, request.url.path, response.status_code,
        elapsed_ms, api_key_id, request_id,
    )
    return response
