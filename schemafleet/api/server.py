"""
schema-fleet HTTP server.

create_app(services) builds a FastAPI app around one Services bundle. On
startup the catalog tables are converged and every lock left behind by a
previous run of this instance is removed.
"""

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

from schemafleet import __version__
from schemafleet.api.detection_router import router as detection_router
from schemafleet.api.response_models import HealthResponse
from schemafleet.api.retention_router import router as retention_router
from schemafleet.api.schema_router import router as schema_router
from schemafleet.catalog_store import converge
from schemafleet.observability.middleware import CorrelationIdMiddleware
from schemafleet.services import Services

logger = logging.getLogger(__name__)


def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        results = converge(services.catalog_db)
        if any(results.values()):
            logger.info(f"Catalog converged: {results}")
        removed = services.startup()
        logger.info(f"schema-fleet {__version__} started (stale locks removed: {removed})")
        yield
        services.registry.close_all()
        logger.info("schema-fleet stopped")

    app = FastAPI(
        title="schema-fleet",
        description="Multi-tenant schema migration orchestrator",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(schema_router)
    app.include_router(detection_router)
    app.include_router(retention_router)

    @app.get("/health", response_model=HealthResponse)
    def health():
        catalog_ok = services.catalog_db.ping()
        return {
            "status": "healthy" if catalog_ok else "degraded",
            "version": __version__,
            "timestamp": datetime.now(UTC).isoformat(),
            "catalog": catalog_ok,
        }

    return app
