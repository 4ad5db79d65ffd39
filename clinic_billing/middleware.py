"""Middleware that assigns and propagates a request identifier.

Every incoming HTTP request receives a request identifier. The value is
read from the incoming ``X-Request-ID`` header when the client sends one,
or generated server-side otherwise. The id is stored on
``request.state`` and in a context variable so code running downstream
(log filters, HTTP clients) can read it without passing it explicitly.

Behavior contract:
- If the incoming request contains ``X-Request-ID``, that value is reused.
- Otherwise a new UUIDv4 is generated.
- The response carries the same id in the ``X-Request-ID`` header.
"""

import uuid
import contextvars

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .config import settings

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Set a per-request identifier and echo it on the response.

    Attributes:
        HEADER (str): Incoming header that may carry a client-provided id.
        RESPONSE_HEADER (str): Header added to outgoing responses.
    """

    HEADER = "X-Request-ID"
    RESPONSE_HEADER = "X-Request-ID"

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.HEADER) or str(uuid.uuid4())
        request.state.request_id = rid
        token = REQUEST_ID_CTX.set(rid)
        try:
            response = await call_next(request)
        finally:
            REQUEST_ID_CTX.reset(token)
        response.headers[self.RESPONSE_HEADER] = rid
        return response


class ApiSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject ``/api/`` requests whose declared body exceeds ``API_MAX_BYTES``."""

    async def dispatch(self, request, call_next):
        if request.url.path.startswith("/api/"):
            clen = request.headers.get("content-length")
            limit = getattr(settings, "API_MAX_BYTES", 1024 * 1024)
            if clen and clen.isdigit() and int(clen) > limit:
                return JSONResponse({"detail": "PAYLOAD_TOO_LARGE"}, status_code=413)
        return await call_next(request)
