"""Request ID middleware for log correlation."""

import uuid
from collections.abc import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from pier.core.logging import set_request_id


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Take X-Request-ID from the request or generate one, and echo it back.

    The ID is stored in the logging context for the duration of the request
    and on ``request.state`` for the exception handlers.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        set_request_id(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            set_request_id(None)
