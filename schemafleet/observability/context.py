"""
Request ids.

The id lives in a ContextVar. The HTTP middleware and every CLI command open
a RequestContext; log records and lock owner ids read it back through
get_request_id(). Executor workers see the id of the call that started
them because work is submitted through contextvars.copy_context().
"""

import contextvars
import uuid

_current_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "schemafleet_request_id", default=None
)


def get_request_id() -> str | None:
    return _current_request_id.get()


def set_request_id(request_id: str) -> contextvars.Token:
    """Bind *request_id*; pass the returned token to ContextVar.reset to undo."""
    return _current_request_id.set(request_id)


def generate_request_id() -> str:
    """Random id of the form req-<16 hex digits>."""
    return f"req-{uuid.uuid4().hex[:16]}"


class RequestContext:
    """
    Bind a request id for the body of a with block.

    A fresh id is generated when none is passed. On exit the previous
    binding comes back, so contexts nest:

        with RequestContext(request_id=incoming_header):
            summary = executor.execute_one(schema_id)
    """

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id or generate_request_id()
        self._token: contextvars.Token | None = None

    def __enter__(self) -> "RequestContext":
        self._token = set_request_id(self.request_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _current_request_id.reset(self._token)
            self._token = None
