"""Mapping from schema-fleet errors to HTTP errors."""

from fastapi import HTTPException

from schemafleet.errors import (
    CleanupInProgress,
    ConnectionFailed,
    DetectorIntrospectionFailed,
    InactiveSchema,
    InvalidDeclaration,
    InvalidVersion,
    NoSuchBaseline,
    NoSuchSchema,
    SchemaFleetError,
    VersionNotMonotonic,
)

_STATUS_BY_ERROR: tuple[tuple[type[SchemaFleetError], int], ...] = (
    (InvalidDeclaration, 400),
    (InvalidVersion, 400),
    (NoSuchSchema, 404),
    (NoSuchBaseline, 404),
    (VersionNotMonotonic, 409),
    (InactiveSchema, 409),
    (CleanupInProgress, 409),
    (DetectorIntrospectionFailed, 502),
    (ConnectionFailed, 503),
)


def http_error(error: SchemaFleetError) -> HTTPException:
    """HTTPException carrying the error kind and message (500 for unmapped kinds)."""
    status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(error, kind)), 500)
    detail: dict = {"error": type(error).__name__, "message": str(error)}
    if isinstance(error, InvalidDeclaration):
        detail["problems"] = error.problems
    return HTTPException(status_code=status, detail=detail)
