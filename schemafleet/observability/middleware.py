"""
Pure ASGI middleware binding one request id per HTTP request.
"""

import logging

from schemafleet.observability.context import RequestContext, generate_request_id

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = b"x-request-id"


def _incoming_request_id(scope) -> str | None:
    for name, value in scope.get("headers", []):
        if name.lower() != REQUEST_ID_HEADER:
            continue
        try:
            return value.decode("utf-8") or None
        except UnicodeDecodeError as e:
            logger.warning(f"Ignoring undecodable X-Request-ID header: {e}")
            return None
    return None


class CorrelationIdMiddleware:
    """
    Reuse the caller's X-Request-ID (or mint one), bind it for the request
    and echo it on the response.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _incoming_request_id(scope) or generate_request_id()
        encoded = request_id.encode("utf-8")

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                message["headers"] = [*message.get("headers", []), (REQUEST_ID_HEADER, encoded)]
            await send(message)

        with RequestContext(request_id=request_id):
            await self.app(scope, receive, send_with_request_id)
