"""Column metadata to value schema mapping.

Every table gets an immutable :class:`ValueSchema` derived from its column
metadata.  Decimal columns carry the scale declared on the column, never one
inferred from data, so all values of a column report the same scale.
Refreshing a table produces a new schema object; records decoded earlier keep
referencing the schema they were decoded with.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Protocol, Sequence, Tuple

from .table import TableId

logger = logging.getLogger(__name__)

DECIMAL_LOGICAL_NAME = "decimal"
SCALE_PARAMETER = "scale"
PRECISION_PARAMETER = "precision"


class SchemaType(str, Enum):
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    DECIMAL = "decimal"
    STRING = "string"
    BYTES = "bytes"
    TIMESTAMP = "timestamp"
    TIMESTAMP_TZ = "timestamp_tz"

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_TYPES


_INTEGER_TYPES = frozenset(
    {SchemaType.INT8, SchemaType.INT16, SchemaType.INT32, SchemaType.INT64}
)


@dataclass(frozen=True)
class ColumnDefinition:
    """Column metadata as reported by the data dictionary."""

    name: str
    data_type: str
    precision: Optional[int] = None
    scale: Optional[int] = None
    nullable: bool = True
    char_length: Optional[int] = None


@dataclass(frozen=True)
class FieldSchema:
    name: str
    type: SchemaType
    optional: bool = True
    precision: Optional[int] = None
    scale: Optional[int] = None
    source_type: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type is SchemaType.DECIMAL and self.scale is None:
            raise ValueError(f"decimal field {self.name} requires a scale")

    @property
    def parameters(self) -> Dict[str, str]:
        if self.type is not SchemaType.DECIMAL:
            return {}
        params = {SCALE_PARAMETER: str(self.scale)}
        if self.precision is not None:
            params[PRECISION_PARAMETER] = str(self.precision)
        return params

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "field": self.name,
            "type": self.type.value,
            "optional": self.optional,
        }
        if self.type is SchemaType.DECIMAL:
            payload["logical"] = DECIMAL_LOGICAL_NAME
            payload["parameters"] = self.parameters
        return payload


@dataclass(frozen=True)
class ValueSchema:
    """Immutable per-table schema shared read-only with the decoder."""

    table: TableId
    fields: Tuple[FieldSchema, ...]
    version: int = 1

    def __post_init__(self) -> None:
        names = [item.name for item in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate column names in schema for {self.table}")

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(item.name for item in self.fields)

    def field(self, name: str) -> Optional[FieldSchema]:
        for item in self.fields:
            if item.name == name:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": f"{self.table.name}.Value",
            "version": self.version,
            "fields": [item.to_dict() for item in self.fields],
        }


class ColumnMetadataProvider(Protocol):
    """Source of column metadata for a table, in column order."""

    def column_metadata(self, table: TableId) -> Sequence[ColumnDefinition]: ...


class SchemaChangeDetector(Protocol):
    """Decides which tables need their schema re-derived before a window."""

    def changed_tables(self, tables: Iterable[TableId]) -> Iterable[TableId]: ...


_TIMESTAMP_PATTERN = re.compile(r"^TIMESTAMP(\(\d+\))?$")
_TIMESTAMP_TZ_PATTERN = re.compile(r"^TIMESTAMP(\(\d+\))? WITH (LOCAL )?TIME ZONE$")
_STRING_TYPES = frozenset(
    {"CHAR", "NCHAR", "VARCHAR", "VARCHAR2", "NVARCHAR2", "CLOB", "NCLOB", "LONG", "ROWID"}
)
_BYTES_TYPES = frozenset({"RAW", "BLOB", "LONG RAW"})


class SchemaMapper:
    """Maps Oracle column definitions to :class:`FieldSchema` entries."""

    def __init__(self, *, default_number_scale: int = 10) -> None:
        if default_number_scale < 0:
            raise ValueError("default_number_scale must not be negative")
        self.default_number_scale = default_number_scale

    def map_column(self, column: ColumnDefinition) -> FieldSchema:
        data_type = column.data_type.strip().upper()
        schema_type, precision, scale = self._map_type(column, data_type)
        return FieldSchema(
            name=column.name,
            type=schema_type,
            optional=column.nullable,
            precision=precision,
            scale=scale,
            source_type=data_type,
        )

    def build(
        self,
        table: TableId,
        columns: Sequence[ColumnDefinition],
        *,
        version: int = 1,
    ) -> ValueSchema:
        if not columns:
            raise ValueError(f"no columns found for {table}")
        return ValueSchema(
            table=table,
            fields=tuple(self.map_column(column) for column in columns),
            version=version,
        )

    def _map_type(
        self, column: ColumnDefinition, data_type: str
    ) -> Tuple[SchemaType, Optional[int], Optional[int]]:
        if data_type == "NUMBER":
            return self._map_number(column.precision, column.scale)
        if data_type in {"FLOAT", "BINARY_DOUBLE"}:
            return SchemaType.FLOAT64, None, None
        if data_type == "BINARY_FLOAT":
            return SchemaType.FLOAT32, None, None
        if data_type == "DATE" or _TIMESTAMP_PATTERN.match(data_type):
            return SchemaType.TIMESTAMP, None, None
        if _TIMESTAMP_TZ_PATTERN.match(data_type):
            return SchemaType.TIMESTAMP_TZ, None, None
        if data_type in _STRING_TYPES:
            return SchemaType.STRING, None, None
        if data_type in _BYTES_TYPES:
            return SchemaType.BYTES, None, None
        logger.warning(
            "column %s has unsupported type %s; mapping to string",
            column.name,
            data_type,
        )
        return SchemaType.STRING, None, None

    def _map_number(
        self, precision: Optional[int], scale: Optional[int]
    ) -> Tuple[SchemaType, Optional[int], Optional[int]]:
        if precision is None and scale is None:
            return SchemaType.DECIMAL, None, self.default_number_scale
        if scale is None or scale == 0:
            if precision is None:
                # NUMBER(*, 0)
                return SchemaType.DECIMAL, None, 0
            if precision <= 2:
                return SchemaType.INT8, precision, 0
            if precision <= 4:
                return SchemaType.INT16, precision, 0
            if precision <= 9:
                return SchemaType.INT32, precision, 0
            if precision <= 18:
                return SchemaType.INT64, precision, 0
            return SchemaType.DECIMAL, precision, 0
        return SchemaType.DECIMAL, precision, scale


class SchemaRegistry:
    """Holds the current schema per table and re-derives it on request."""

    def __init__(
        self,
        provider: ColumnMetadataProvider,
        mapper: Optional[SchemaMapper] = None,
    ) -> None:
        self._provider = provider
        self._mapper = mapper or SchemaMapper()
        self._schemas: Dict[TableId, ValueSchema] = {}

    def get(self, table: TableId) -> ValueSchema:
        schema = self._schemas.get(table)
        if schema is None:
            schema = self._derive(table, version=1)
            self._schemas[table] = schema
        return schema

    def refresh(self, table: TableId) -> ValueSchema:
        current = self._schemas.get(table)
        version = current.version + 1 if current is not None else 1
        schema = self._derive(table, version=version)
        # whole-object swap; readers holding the previous schema are unaffected
        self._schemas[table] = schema
        logger.info("schema for %s re-derived (version %d)", table, version)
        return schema

    def _derive(self, table: TableId, *, version: int) -> ValueSchema:
        columns = list(self._provider.column_metadata(table))
        return self._mapper.build(table, columns, version=version)


__all__ = [
    "ColumnDefinition",
    "ColumnMetadataProvider",
    "DECIMAL_LOGICAL_NAME",
    "FieldSchema",
    "SCALE_PARAMETER",
    "SchemaChangeDetector",
    "SchemaMapper",
    "SchemaRegistry",
    "SchemaType",
    "ValueSchema",
]
