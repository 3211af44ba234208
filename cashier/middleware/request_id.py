"""Request ID tracing for API calls and gateway webhook deliveries."""
from __future__ import annotations

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Read by JSONFormatter; empty outside a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(header: str | None) -> str:
    """Reuse a caller's X-Request-ID when it is short and log-safe, else mint one."""
    if header and _ACCEPTED_ID.match(header):
        return header
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, expose it to loggers and echo it back.

    Webhook retries from the gateway arrive without X-Request-ID, so each
    delivery attempt gets its own id; the event id is logged alongside it.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        rid = resolve_request_id(request.headers.get("x-request-id"))
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response
