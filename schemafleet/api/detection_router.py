"""
Detection API Router — reconcile baseline databases into the catalog.

Endpoints:
- POST /schema-detection/all — dry run, returns proposals
- POST /schema-detection/detect-and-save — detect and persist proposals
- POST /schema-detection/table — one table, optionally saved
- GET /schema-detection/tables — tables of one role's baseline
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from schemafleet.api.errors import http_error
from schemafleet.api.response_models import (
    BaselineTableListResponse,
    DetectAndSaveResponse,
    DetectionResponse,
    DetectTableRequest,
    DetectTableResponse,
)
from schemafleet.api.schema_router import get_services
from schemafleet.errors import SchemaFleetError
from schemafleet.models import DatabaseRole
from schemafleet.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/schema-detection", tags=["detection"])


@router.post("/all", response_model=DetectionResponse)
def detect_all(services: Services = Depends(get_services)):
    return services.detector.detect_all().to_dict()


@router.post("/detect-and-save", response_model=DetectAndSaveResponse)
def detect_and_save(services: Services = Depends(get_services)):
    result = services.detector.detect_and_save()
    logger.info(f"API: detect-and-save stored {len(result.saved)} definition(s)")
    return result.to_dict()


@router.post("/table", response_model=DetectTableResponse)
def detect_table(body: DetectTableRequest, services: Services = Depends(get_services)):
    try:
        proposal = services.detector.detect_table(body.table_name, body.database_type)
        saved = services.detector.save_proposal(proposal) if proposal and body.save else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except SchemaFleetError as e:
        raise http_error(e) from e
    if saved is not None:
        logger.info(f"API: saved detected {saved.table_name} {saved.schema_version}")
    return {
        "table_name": body.table_name,
        "database_type": str(body.database_type),
        "changed": proposal is not None,
        "proposal": proposal.to_dict() if proposal else None,
        "saved": saved.to_dict() if saved else None,
    }


@router.get("/tables", response_model=BaselineTableListResponse)
def baseline_tables(
    database_type: DatabaseRole = Query(default=DatabaseRole.MAIN),
    services: Services = Depends(get_services),
):
    try:
        items = services.detector.baseline_tables(database_type)
    except SchemaFleetError as e:
        raise http_error(e) from e
    return {"database_type": str(database_type), "items": items, "total": len(items)}
