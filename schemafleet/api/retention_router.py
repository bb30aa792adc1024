"""
Log Retention API Router.

Endpoints:
- POST /log-cleanup/manual — run one retention pass now
- GET /log-cleanup/rules — current retention windows
- PUT /log-cleanup/rules — change some of them
- GET /log-cleanup/status — running flag, rules, schedule and last run
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from schemafleet.api.errors import http_error
from schemafleet.api.response_models import (
    RetentionRulesResponse,
    RetentionRunResponse,
    RetentionStatusResponse,
    UpdateRetentionRulesRequest,
)
from schemafleet.api.schema_router import get_services
from schemafleet.errors import SchemaFleetError
from schemafleet.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/log-cleanup", tags=["log-cleanup"])


@router.post("/manual", response_model=RetentionRunResponse)
def run_cleanup(services: Services = Depends(get_services)):
    try:
        report = services.retention.run()
    except SchemaFleetError as e:
        raise http_error(e) from e
    return report.to_dict()


@router.get("/rules", response_model=RetentionRulesResponse)
def get_rules(services: Services = Depends(get_services)):
    return services.retention.rules.to_dict()


@router.put("/rules", response_model=RetentionRulesResponse)
def update_rules(body: UpdateRetentionRulesRequest, services: Services = Depends(get_services)):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="at least one of day, month, year is required")
    rules = services.retention.update_rules(**changes)
    logger.info(f"API: retention rules now {rules.to_dict()}")
    return rules.to_dict()


@router.get("/status", response_model=RetentionStatusResponse)
def status(services: Services = Depends(get_services)):
    return services.retention.status()
