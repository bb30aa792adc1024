"""HTTP surface: FastAPI app factory and routers."""

from schemafleet.api.server import create_app

__all__ = ["create_app"]
