"""
Schema API Router — catalog, execution, history and lock endpoints.

Endpoints:
- POST /schemas — create initial schema definition
- GET /schemas — all active definitions
- GET /schemas/history — every version of one table, active first
- GET /schemas/{schema_id} — one definition
- POST /schemas/{schema_id}/upgrade — append a new version
- POST /execute — fan out one definition
- POST /execute-all — fan out every active definition
- GET /history — recent migration history, or one batch
- GET /locks — unexpired migration locks
- DELETE /locks — force-release one lock
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from schemafleet.api.errors import http_error
from schemafleet.api.response_models import (
    CreateSchemaRequest,
    ExecuteRequest,
    ExecutionSummaryResponse,
    HistoryListResponse,
    LockListResponse,
    MutationResponse,
    SchemaDefinitionResponse,
    SchemaListResponse,
    UpgradeSchemaRequest,
)
from schemafleet.declaration import parse_declaration
from schemafleet.errors import InvalidDeclaration, SchemaFleetError
from schemafleet.executor import SchemaSelector
from schemafleet.models import DatabaseRole
from schemafleet.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["schemas"])


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.post("/schemas", response_model=SchemaDefinitionResponse, status_code=201)
def create_schema(body: CreateSchemaRequest, services: Services = Depends(get_services)):
    try:
        declaration = parse_declaration(body.schema_definition)
        if declaration.table_name != body.table_name:
            raise InvalidDeclaration(
                [f"tableName {declaration.table_name!r} does not match table_name {body.table_name!r}"]
            )
        definition = services.catalog.create_initial_version(
            declaration,
            body.schema_version,
            body.database_type,
            body.partition_type,
            upgrade_notes=body.upgrade_notes,
        )
    except SchemaFleetError as e:
        raise http_error(e) from e
    return definition.to_dict()


@router.get("/schemas", response_model=SchemaListResponse)
def list_schemas(
    database_type: DatabaseRole | None = Query(default=None),
    services: Services = Depends(get_services),
):
    items = [d.to_dict() for d in services.catalog.list_all_active(database_type)]
    return {"items": items, "total": len(items)}


@router.get("/schemas/history", response_model=SchemaListResponse)
def schema_history(
    table_name: str = Query(...),
    database_type: DatabaseRole = Query(default=DatabaseRole.MAIN),
    services: Services = Depends(get_services),
):
    items = [d.to_dict() for d in services.catalog.history(table_name, database_type)]
    return {"items": items, "total": len(items)}


@router.get("/schemas/{schema_id}", response_model=SchemaDefinitionResponse)
def get_schema(schema_id: int, services: Services = Depends(get_services)):
    try:
        return services.catalog.get(schema_id).to_dict()
    except SchemaFleetError as e:
        raise http_error(e) from e


@router.post("/schemas/{schema_id}/upgrade", response_model=SchemaDefinitionResponse, status_code=201)
def upgrade_schema(schema_id: int, body: UpgradeSchemaRequest, services: Services = Depends(get_services)):
    try:
        definition = services.catalog.upgrade(
            schema_id,
            parse_declaration(body.schema_definition),
            body.schema_version,
            upgrade_notes=body.upgrade_notes,
        )
    except SchemaFleetError as e:
        raise http_error(e) from e
    return definition.to_dict()


@router.post("/execute", response_model=ExecutionSummaryResponse)
def execute(body: ExecuteRequest, services: Services = Depends(get_services)):
    if body.schema_id is not None:
        schema = body.schema_id
    elif body.table_name:
        schema = SchemaSelector(
            table_name=body.table_name,
            database_role=body.database_type,
            partition_type=body.partition_type,
            schema_version=body.schema_version,
        )
    else:
        raise HTTPException(status_code=400, detail="schema_id or table_name is required")

    try:
        summary = services.executor.execute_one(schema, allow_inactive=body.allow_inactive)
    except SchemaFleetError as e:
        raise http_error(e) from e
    return summary.to_dict()


@router.post("/execute-all", response_model=ExecutionSummaryResponse)
def execute_all(services: Services = Depends(get_services)):
    return services.executor.execute_all().to_dict()


@router.get("/history", response_model=HistoryListResponse)
def history(
    batch_id: str | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    physical_table_name: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    if batch_id:
        entries = services.history.for_batch(batch_id)
    elif tenant_id and physical_table_name:
        entries = services.history.for_target(tenant_id, physical_table_name)
    else:
        entries = services.history.recent(limit)
    items = [e.to_dict() for e in entries]
    return {"items": items, "total": len(items)}


@router.get("/locks", response_model=LockListResponse)
def list_locks(services: Services = Depends(get_services)):
    items = [lock.to_dict() for lock in services.locks.active_locks()]
    return {"items": items, "total": len(items)}


@router.delete("/locks", response_model=MutationResponse)
def force_release_lock(
    tenant_id: str = Query(...),
    physical_table_name: str = Query(..., description="Lock key as listed by GET /locks"),
    services: Services = Depends(get_services),
):
    if not services.locks.force_release(tenant_id, physical_table_name):
        raise HTTPException(status_code=404, detail="Lock not found")
    logger.warning(f"API: force-released lock {tenant_id}/{physical_table_name}")
    return {"success": True, "tenant_id": tenant_id, "physical_table_name": physical_table_name}
