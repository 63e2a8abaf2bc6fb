"""Request middleware and CORS helpers.

Every request gets a correlation id (taken from X-Request-ID when the caller
supplies a sane one) that is attached to log records and echoed back.
"""

import logging
import re
import uuid

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware

from logging_config import correlation_id

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type, X-Request-ID",
    "Access-Control-Max-Age": "86400",
}


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id to the request for logging."""

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = incoming if _REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
        token = correlation_id.set(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            correlation_id.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def preflight_response() -> Response:
    """Stateless CORS preflight answer."""
    return Response(status_code=204, headers=CORS_HEADERS)


def with_cors(response: Response) -> Response:
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response
