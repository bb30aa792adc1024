"""
Shared Pydantic request/response models for API endpoints.

These models give FastAPI the type information it needs to generate
accurate OpenAPI schemas instead of empty `schema: {}`.
"""

from typing import Any

from pydantic import BaseModel, Field

from schemafleet.models import DatabaseRole, PartitionType

# ==== Requests ====


class CreateSchemaRequest(BaseModel):
    """Body of POST /schemas."""

    table_name: str = Field(..., description="Logical table name; must match tableName in the definition")
    database_type: DatabaseRole = Field(default=DatabaseRole.MAIN, description="main|log|order|static")
    partition_type: PartitionType = Field(default=PartitionType.NONE, description="none|time|store")
    schema_version: str = Field(..., description="MAJOR.MINOR.PATCH")
    schema_definition: str | dict[str, Any] = Field(..., description="Schema-definition JSON")
    upgrade_notes: str | None = None


class UpgradeSchemaRequest(BaseModel):
    """Body of POST /schemas/{id}/upgrade."""

    schema_version: str = Field(..., description="Must exceed every prior version")
    schema_definition: str | dict[str, Any]
    upgrade_notes: str | None = None


class ExecuteRequest(BaseModel):
    """Body of POST /execute: a schema_id, or a (table, role, partition, version) selector."""

    schema_id: int | None = None
    table_name: str | None = None
    database_type: DatabaseRole = DatabaseRole.MAIN
    partition_type: PartitionType | None = None
    schema_version: str | None = None
    allow_inactive: bool = Field(default=False, description="Execute a superseded version")


# ==== Schema definitions ====


class SchemaDefinitionResponse(BaseModel):
    id: int
    table_name: str
    database_type: str
    partition_type: str
    schema_version: str
    schema_definition: str
    upgrade_notes: str | None = None
    is_active: bool
    created_at: str | None = None
    changes_detected: list[str] = Field(default_factory=list)


class SchemaListResponse(BaseModel):
    """Standard list endpoint response."""

    items: list[SchemaDefinitionResponse] = Field(default_factory=list)
    total: int = Field(description="Total count")


# ==== Execution ====


class TargetResultResponse(BaseModel):
    tenant_id: str
    database_type: str
    physical_table_name: str
    schema_id: int
    schema_version: str
    outcome: str = Field(description="success|skipped|failed")
    statements_executed: int = 0
    error: str | None = None


class ExecutionSummaryResponse(BaseModel):
    """Per-run summary; returned with HTTP 200 even when targets failed."""

    batch_id: str
    schema_ids: list[int]
    total: int
    succeeded: int
    failed: int
    skipped: int
    cancelled: bool = False
    results: list[TargetResultResponse] = Field(default_factory=list)


# ==== Detection ====


class ProposalResponse(BaseModel):
    table_name: str
    database_type: str
    partition_type: str
    kind: str = Field(description="create|upgrade|drop")
    current_version: str | None = None
    new_version: str
    prev_id: int | None = None
    changes: list[str] = Field(default_factory=list)
    upgrade_notes: str
    schema_definition: str


class DetectionResponse(BaseModel):
    proposals: list[ProposalResponse] = Field(default_factory=list)
    new_tables: list[str] = Field(default_factory=list)
    deleted_tables: list[str] = Field(default_factory=list)
    summary: dict[str, dict[str, int]] = Field(default_factory=dict)
    errors: list[dict[str, str]] = Field(default_factory=list)


class DetectAndSaveResponse(BaseModel):
    detection: DetectionResponse
    saved: list[SchemaDefinitionResponse] = Field(default_factory=list)
    failed: list[dict[str, str]] = Field(default_factory=list)


class DetectTableRequest(BaseModel):
    table_name: str = Field(..., description="Logical table name")
    database_type: DatabaseRole = DatabaseRole.MAIN
    save: bool = Field(default=False, description="Persist the proposal as a new catalog version")


class DetectTableResponse(BaseModel):
    table_name: str
    database_type: str
    changed: bool
    proposal: ProposalResponse | None = None
    saved: SchemaDefinitionResponse | None = None


class BaselineTableResponse(BaseModel):
    table_name: str = Field(description="Physical table in the baseline database")
    logical_table: str = Field(description="Catalog table it belongs to (itself unless a partition child)")


class BaselineTableListResponse(BaseModel):
    database_type: str
    items: list[BaselineTableResponse] = Field(default_factory=list)
    total: int


# ==== Log retention ====


class RetentionRulesResponse(BaseModel):
    day: int = Field(description="Days a daily partition is kept")
    month: int = Field(description="Months a monthly partition is kept")
    year: int = Field(description="Years a yearly partition is kept")


class UpdateRetentionRulesRequest(BaseModel):
    day: int | None = Field(default=None, gt=0)
    month: int | None = Field(default=None, gt=0)
    year: int | None = Field(default=None, gt=0)


class RetentionRunResponse(BaseModel):
    batch_id: str
    started_at: str
    finished_at: str | None = None
    definitions: int
    tenants: int
    dropped: list[dict[str, str]] = Field(default_factory=list)
    skipped: list[dict[str, str]] = Field(default_factory=list)
    errors: list[dict[str, str]] = Field(default_factory=list)
    forward_batches: list[str] = Field(default_factory=list)


class RetentionStatusResponse(BaseModel):
    running: bool
    rules: RetentionRulesResponse
    description: dict[str, str] = Field(default_factory=dict)
    schedule: str = Field(description="Cron expression for the external job runner")
    last_run: RetentionRunResponse | None = None


# ==== History / locks ====


class HistoryEntryResponse(BaseModel):
    id: int | None = None
    batch_id: str | None = None
    tenant_id: str
    database_type: str
    physical_table_name: str
    schema_id: int | None = None
    schema_version: str
    statement_kind: str | None = None
    sql_text: str = ""
    outcome: str
    error_message: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: float | None = None


class HistoryListResponse(BaseModel):
    items: list[HistoryEntryResponse] = Field(default_factory=list)
    total: int


class LockResponse(BaseModel):
    tenant_id: str
    physical_table_name: str
    owner_id: str
    acquired_at: float
    expires_at: float


class LockListResponse(BaseModel):
    items: list[LockResponse] = Field(default_factory=list)
    total: int


class MutationResponse(BaseModel):
    """Standard mutation result."""

    success: bool = Field(description="Whether the operation succeeded")

    model_config = {"extra": "allow"}


# ==== Health Check ====


class HealthResponse(BaseModel):
    status: str = Field(description="healthy or degraded")
    version: str
    timestamp: str = Field(description="ISO timestamp")
    catalog: bool = Field(description="Catalog database reachable")
