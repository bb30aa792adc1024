"""
Observability: request-scoped context, structured logging, ASGI middleware.
"""

from .context import RequestContext, generate_request_id, get_request_id, set_request_id
from .logging import HumanFormatter, JSONFormatter, configure_logging
from .middleware import CorrelationIdMiddleware

__all__ = [
    "CorrelationIdMiddleware",
    "HumanFormatter",
    "JSONFormatter",
    "RequestContext",
    "configure_logging",
    "generate_request_id",
    "get_request_id",
    "set_request_id",
]
