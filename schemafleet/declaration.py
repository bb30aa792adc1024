"""
Declarative table definitions: the single shape every component speaks.

A schema definition arrives as JSON (see parse_declaration), is validated
once by the pydantic wire models at the bottom of this module, and is then
carried as frozen dataclasses. Downstream code (planner, expander,
executor, detector) never re-parses JSON.

JSON shape:
    {"tableName": "...",
     "action": "DROP" | absent,
     "timeInterval": "day" | "month" | "year" | absent,
     "columns": [{name, type, length?, precision?, scale?, allowNull?,
                  defaultValue?, comment?, primaryKey?, autoIncrement?,
                  unsigned?}, ...],
     "indexes": [{name, fields: [...], unique?}, ...]}

The live side of a table is described with the same ColumnSpec/IndexSpec
vocabulary (ObservedSchema), so planner and detector compare like with like.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from schemafleet.errors import InvalidDeclaration

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

CANONICAL_TYPES = (
    "TINYINT",
    "SMALLINT",
    "INT",
    "BIGINT",
    "DECIMAL",
    "VARCHAR",
    "CHAR",
    "TEXT",
    "LONGTEXT",
    "DATE",
    "DATETIME",
    "TIMESTAMP",
    "JSON",
    "BLOB",
)
INTEGER_TYPES = frozenset({"TINYINT", "SMALLINT", "INT", "BIGINT"})
NUMERIC_TYPES = INTEGER_TYPES | {"DECIMAL"}
STRING_TYPES = frozenset({"VARCHAR", "CHAR"})
TEMPORAL_TYPES = frozenset({"DATE", "DATETIME", "TIMESTAMP"})

# Symbolic defaults rendered without quotes
CURRENT_TIMESTAMP = "CURRENT_TIMESTAMP"
CURRENT_TIMESTAMP_ON_UPDATE = "CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP"
NULL_TOKEN = "NULL"
DEFAULT_TOKENS = frozenset({CURRENT_TIMESTAMP, CURRENT_TIMESTAMP_ON_UPDATE, NULL_TOKEN})


class Action(StrEnum):
    CREATE_OR_UPGRADE = "CREATE_OR_UPGRADE"
    DROP = "DROP"


class TimeInterval(StrEnum):
    DAY = "day"
    MONTH = "month"
    YEAR = "year"


def is_identifier(name: object) -> bool:
    return isinstance(name, str) and bool(_IDENTIFIER_RE.match(name))


def validate_identifier(name: str) -> str:
    """Return *name* unchanged if it is a safe SQL identifier; raise ValueError otherwise."""
    if not is_identifier(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def normalize_default(value: Any) -> str | None:
    """Canonical string form of a default value (None means no default)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    collapsed = " ".join(text.split()).upper()
    if collapsed in DEFAULT_TOKENS:
        return collapsed
    return text


# ============================================================
# Value objects
# ============================================================


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: str
    length: int | None = None
    precision: int | None = None
    scale: int | None = None
    allow_null: bool = True
    default_value: str | None = None
    comment: str | None = None
    auto_increment: bool = False
    primary_key: bool = False
    unsigned: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "type": self.type}
        if self.length is not None:
            data["length"] = self.length
        if self.precision is not None:
            data["precision"] = self.precision
        if self.scale is not None:
            data["scale"] = self.scale
        if not self.allow_null:
            data["allowNull"] = False
        if self.default_value is not None:
            data["defaultValue"] = self.default_value
        if self.comment:
            data["comment"] = self.comment
        if self.primary_key:
            data["primaryKey"] = True
        if self.auto_increment:
            data["autoIncrement"] = True
        if self.unsigned:
            data["unsigned"] = True
        return data


@dataclass(frozen=True)
class IndexSpec:
    name: str
    fields: tuple[str, ...]
    unique: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "fields": list(self.fields)}
        if self.unique:
            data["unique"] = True
        return data


@dataclass(frozen=True)
class Declaration:
    table_name: str
    action: Action = Action.CREATE_OR_UPGRADE
    columns: tuple[ColumnSpec, ...] = ()
    indexes: tuple[IndexSpec, ...] = ()
    time_interval: TimeInterval = TimeInterval.MONTH

    @classmethod
    def drop(cls, table_name: str, time_interval: TimeInterval = TimeInterval.MONTH) -> "Declaration":
        return cls(table_name=table_name, action=Action.DROP, time_interval=time_interval)

    @property
    def is_drop(self) -> bool:
        return self.action is Action.DROP

    @property
    def primary_key(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns if c.primary_key)

    def column(self, name: str) -> ColumnSpec | None:
        wanted = name.lower()
        for col in self.columns:
            if col.name.lower() == wanted:
                return col
        return None

    def index(self, name: str) -> IndexSpec | None:
        wanted = name.lower()
        for idx in self.indexes:
            if idx.name.lower() == wanted:
                return idx
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"tableName": self.table_name}
        if self.is_drop:
            data["action"] = Action.DROP.value
        if self.time_interval is not TimeInterval.MONTH:
            data["timeInterval"] = self.time_interval.value
        if not self.is_drop:
            data["columns"] = [c.to_dict() for c in self.columns]
            data["indexes"] = [i.to_dict() for i in self.indexes]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass(frozen=True)
class ObservedSchema:
    """Live snapshot of one physical table."""

    table_name: str
    exists: bool
    columns: tuple[ColumnSpec, ...] = ()
    indexes: tuple[IndexSpec, ...] = field(default_factory=tuple)

    @classmethod
    def missing(cls, table_name: str) -> "ObservedSchema":
        return cls(table_name=table_name, exists=False)

    def column(self, name: str) -> ColumnSpec | None:
        wanted = name.lower()
        for col in self.columns:
            if col.name.lower() == wanted:
                return col
        return None

    def index(self, name: str) -> IndexSpec | None:
        wanted = name.lower()
        for idx in self.indexes:
            if idx.name.lower() == wanted:
                return idx
        return None

    def to_declaration(
        self,
        table_name: str | None = None,
        time_interval: TimeInterval = TimeInterval.MONTH,
    ) -> Declaration:
        """Declaration that would reproduce this table (used by the detector)."""
        return Declaration(
            table_name=table_name or self.table_name,
            columns=self.columns,
            indexes=self.indexes,
            time_interval=time_interval,
        )


# ============================================================
# Ingestion
# ============================================================
#
# The wire shape is validated with pydantic models; each column and index
# is validated on its own so one bad entry does not hide the others.


class DeclarationModel(BaseModel):
    """Top-level fields of a schema definition. Columns and indexes are validated per item."""

    model_config = ConfigDict(populate_by_name=True)

    table_name: StrictStr = Field(alias="tableName")
    action: Action = Action.CREATE_OR_UPGRADE
    time_interval: TimeInterval = Field(default=TimeInterval.MONTH, alias="timeInterval")
    columns: list[Any] | None = Field(default=None, validate_default=True)
    indexes: list[Any] | None = None

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v):
        if not is_identifier(v):
            raise ValueError(f"{v!r} is not a valid identifier")
        return v

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v):
        if v is None:
            return Action.CREATE_OR_UPGRADE
        try:
            return Action(str(v).upper())
        except ValueError:
            raise ValueError(f"unknown action {v!r}") from None

    @field_validator("time_interval", mode="before")
    @classmethod
    def normalize_time_interval(cls, v):
        if v is None:
            return TimeInterval.MONTH
        try:
            return TimeInterval(str(v).lower())
        except ValueError:
            raise ValueError(f"unknown timeInterval {v!r}") from None

    @field_validator("columns")
    @classmethod
    def validate_columns_present(cls, v, info: ValidationInfo):
        if info.data.get("action") is not Action.DROP and not v:
            raise ValueError("columns must be a non-empty list")
        return v


class ColumnModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: StrictStr
    type: StrictStr
    length: StrictInt | None = Field(default=None, ge=0)
    precision: StrictInt | None = Field(default=None, ge=0)
    scale: StrictInt | None = Field(default=None, ge=0)
    allow_null: StrictBool = Field(default=True, alias="allowNull")
    default_value: StrictStr | StrictInt | StrictFloat | StrictBool | None = Field(default=None, alias="defaultValue")
    comment: StrictStr | None = None
    auto_increment: StrictBool = Field(default=False, alias="autoIncrement")
    primary_key: StrictBool = Field(default=False, alias="primaryKey")
    unsigned: StrictBool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not is_identifier(v):
            raise ValueError(f"{v!r} is not a valid identifier")
        return v

    @field_validator("type")
    @classmethod
    def canonical_type(cls, v):
        upper = v.upper()
        if upper not in CANONICAL_TYPES:
            raise ValueError(f"unknown type {v!r}")
        return upper

    @model_validator(mode="after")
    def validate_type_attributes(self):
        if self.type == "VARCHAR" and self.length is None:
            raise ValueError("VARCHAR requires a length")
        if (
            self.type == "DECIMAL"
            and self.precision is not None
            and self.scale is not None
            and self.scale > self.precision
        ):
            raise ValueError(f"scale {self.scale} exceeds precision {self.precision}")
        if self.unsigned and self.type not in NUMERIC_TYPES:
            raise ValueError("UNSIGNED only applies to numeric types")
        return self

    def to_spec(self) -> ColumnSpec:
        decimal = self.type == "DECIMAL"
        return ColumnSpec(
            name=self.name,
            type=self.type,
            length=self.length if self.type in STRING_TYPES else None,
            precision=self.precision if decimal else None,
            scale=self.scale if decimal else None,
            # The engine forces primary key columns to NOT NULL
            allow_null=self.allow_null and not self.primary_key,
            default_value=normalize_default(self.default_value),
            comment=self.comment or None,
            auto_increment=self.auto_increment,
            primary_key=self.primary_key,
            unsigned=self.unsigned,
        )


class IndexModel(BaseModel):
    name: StrictStr
    index_fields: list[StrictStr] = Field(alias="fields")
    unique: StrictBool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not is_identifier(v):
            raise ValueError(f"{v!r} is not a valid identifier")
        return v

    @field_validator("index_fields")
    @classmethod
    def validate_fields(cls, v):
        if not v:
            raise ValueError("must list at least one field")
        return v

    def to_spec(self) -> IndexSpec:
        return IndexSpec(name=self.name, fields=tuple(self.index_fields), unique=self.unique)


def parse_declaration(source: str | Mapping[str, Any]) -> Declaration:
    """
    Validate a schema-definition JSON document into a Declaration.

    All problems are collected and raised together as InvalidDeclaration.
    """
    if isinstance(source, str):
        try:
            data = json.loads(source)
        except json.JSONDecodeError as e:
            raise InvalidDeclaration([f"schema definition is not valid JSON: {e}"]) from e
    else:
        data = source

    if not isinstance(data, Mapping):
        raise InvalidDeclaration(["schema definition must be a JSON object"])
    data = dict(data)

    problems: list[str] = []
    try:
        header = DeclarationModel.model_validate(data)
    except ValidationError as e:
        problems.extend(_problems(e))
        header = None

    if header is not None and header.action is Action.DROP:
        return Declaration.drop(header.table_name, header.time_interval)

    columns, declared = _parse_columns(data.get("columns"), problems)
    indexes = _parse_indexes(data.get("indexes"), declared, problems)

    if problems or header is None:
        raise InvalidDeclaration(problems)

    return Declaration(
        table_name=header.table_name,
        action=header.action,
        columns=tuple(columns),
        indexes=tuple(indexes),
        time_interval=header.time_interval,
    )


def _parse_columns(raw: Any, problems: list[str]) -> tuple[list[ColumnSpec], set[str]]:
    columns: list[ColumnSpec] = []
    declared: set[str] = set()
    if not isinstance(raw, list):
        return columns, declared

    for position, item in enumerate(raw):
        name = item.get("name") if isinstance(item, Mapping) else None
        label = f"column {name!r}: " if isinstance(name, str) else f"column #{position}: "
        if is_identifier(name):
            if name.lower() in declared:
                problems.append(f"duplicate column {name!r}")
                continue
            declared.add(name.lower())
        try:
            columns.append(ColumnModel.model_validate(item).to_spec())
        except ValidationError as e:
            problems.extend(_problems(e, label))
    return columns, declared


def _parse_indexes(raw: Any, declared: set[str], problems: list[str]) -> list[IndexSpec]:
    if not isinstance(raw, list):
        return []

    indexes: list[IndexSpec] = []
    seen: set[str] = set()
    for position, item in enumerate(raw):
        name = item.get("name") if isinstance(item, Mapping) else None
        label = f"index {name!r}: " if isinstance(name, str) else f"index #{position}: "
        try:
            model = IndexModel.model_validate(item)
        except ValidationError as e:
            problems.extend(_problems(e, label))
            continue
        if model.name.lower() in seen:
            problems.append(f"duplicate index {model.name!r}")
            continue
        seen.add(model.name.lower())

        undeclared = [f for f in model.index_fields if f.lower() not in declared]
        if undeclared:
            problems.append(f"index {model.name!r} references undeclared columns {undeclared}")
            continue
        indexes.append(model.to_spec())
    return indexes


def _problems(exc: ValidationError, prefix: str = "") -> list[str]:
    """Flatten pydantic errors into "<prefix><field>: <message>" lines."""
    problems = []
    for err in exc.errors():
        message = err["msg"].removeprefix("Value error, ")
        location = ".".join(str(part) for part in err["loc"])
        problems.append(f"{prefix}{location}: {message}" if location else f"{prefix}{message}")
    return problems
