"""Decoding of mined LogMiner rows into typed change records."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from decimal import Context, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import DecodeError
from .records import CdcRecord, Operation
from .schema import FieldSchema, SchemaType, ValueSchema
from .sql_redo import ParsedStatement, RedoParseError, RedoValue, parse_statement
from .table import TableId

logger = logging.getLogger(__name__)

OPERATION_CODES: Dict[int, Operation] = {
    1: Operation.INSERT,
    2: Operation.DELETE,
    3: Operation.UPDATE,
}

_STATEMENT_KINDS = {
    Operation.INSERT: "insert",
    Operation.DELETE: "delete",
    Operation.UPDATE: "update",
}

_DECIMAL_CONTEXT = Context(prec=200)

_INTEGER_BOUNDS = {
    SchemaType.INT8: (-(2**7), 2**7 - 1),
    SchemaType.INT16: (-(2**15), 2**15 - 1),
    SchemaType.INT32: (-(2**31), 2**31 - 1),
    SchemaType.INT64: (-(2**63), 2**63 - 1),
}

_TIMESTAMP_PATTERN = re.compile(
    r"^\s*(?P<date>\d{4}-\d{2}-\d{2})"
    r"(?:[ T](?P<time>\d{2}:\d{2}:\d{2})(?:\.(?P<fraction>\d{1,9}))?)?"
    r"(?:\s+(?P<zone>[+-]\d{1,2}:\d{2}|[A-Za-z_/]+))?\s*$"
)


@dataclass(frozen=True)
class RawLogRow:
    """A row of ``V$LOGMNR_CONTENTS`` reduced to the fields the decoder uses."""

    scn: int
    commit_scn: int
    operation_code: int
    owner: str
    table_name: str
    sql_redo: str
    sql_undo: Optional[str] = None
    transaction_id: Optional[str] = None
    row_id: Optional[str] = None
    rs_id: str = ""
    ssn: int = 0
    csf: int = 0
    timestamp: Optional[datetime] = None

    @property
    def table(self) -> TableId:
        return TableId(self.owner, self.table_name)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "RawLogRow":
        """Build from a dict keyed by ``V$LOGMNR_CONTENTS`` column names."""
        try:
            return cls(
                scn=int(row["SCN"]),
                commit_scn=int(row.get("COMMIT_SCN") or row["SCN"]),
                operation_code=int(row["OPERATION_CODE"]),
                owner=str(row.get("SEG_OWNER") or ""),
                table_name=str(row.get("TABLE_NAME") or ""),
                sql_redo=str(row.get("SQL_REDO") or ""),
                sql_undo=row.get("SQL_UNDO"),
                transaction_id=row.get("XID"),
                row_id=row.get("ROW_ID"),
                rs_id=str(row.get("RS_ID") or "").strip(),
                ssn=int(row.get("SSN") or 0),
                csf=int(row.get("CSF") or 0),
                timestamp=row.get("TIMESTAMP"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"malformed LogMiner row: {exc}") from exc

    def merge_continuation(self, fragment: "RawLogRow") -> "RawLogRow":
        """Append a ``CSF`` continuation fragment to this row's statements."""
        undo = self.sql_undo
        if fragment.sql_undo:
            undo = (undo or "") + fragment.sql_undo
        return RawLogRow(
            scn=self.scn,
            commit_scn=self.commit_scn,
            operation_code=self.operation_code,
            owner=self.owner,
            table_name=self.table_name,
            sql_redo=self.sql_redo + fragment.sql_redo,
            sql_undo=undo,
            transaction_id=self.transaction_id,
            row_id=self.row_id,
            rs_id=self.rs_id,
            ssn=self.ssn,
            csf=fragment.csf,
            timestamp=self.timestamp,
        )


def _zone(text: str) -> tzinfo:
    if text[0] in "+-":
        hours, _, minutes = text[1:].partition(":")
        delta = timedelta(hours=int(hours), minutes=int(minutes))
        return timezone(-delta if text[0] == "-" else delta)
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown time zone {text!r}") from exc


def parse_timestamp(text: str, *, aware: bool = False) -> datetime:
    """Parse timestamps rendered with the session NLS formats.

    Fractions beyond microseconds are truncated.  ``aware`` attaches the zone
    carried in the text, defaulting to UTC (the session time zone).
    """
    match = _TIMESTAMP_PATTERN.match(text)
    if match is None:
        raise ValueError(f"unrecognised timestamp {text!r}")
    clock = match.group("time") or "00:00:00"
    value = datetime.fromisoformat(f"{match.group('date')}T{clock}")
    fraction = match.group("fraction")
    if fraction:
        value = value.replace(microsecond=int(fraction[:6].ljust(6, "0")))
    zone = match.group("zone")
    if aware:
        return value.replace(tzinfo=_zone(zone) if zone else timezone.utc)
    if zone:
        raise ValueError(f"unexpected time zone in {text!r}")
    return value


def to_decimal(value: Any, scale: int) -> Decimal:
    """Return ``value`` as a Decimal with exactly ``scale`` fractional digits.

    Raises ``ValueError`` when the value cannot be represented at that scale
    without rounding.
    """
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"{value!r} is not a number") from exc
    if not number.is_finite():
        raise ValueError(f"{value!r} is not a finite number")
    quantized = number.quantize(Decimal(1).scaleb(-scale), context=_DECIMAL_CONTEXT)
    if quantized != number:
        raise ValueError(f"{value!r} does not fit scale {scale} without rounding")
    return quantized


def _to_integer(value: Any, field: FieldSchema) -> int:
    number = to_decimal(value, 0)
    result = int(number)
    low, high = _INTEGER_BOUNDS[field.type]
    if not low <= result <= high:
        raise ValueError(f"{result} out of range for {field.type.value}")
    return result


def _from_text(field: FieldSchema, text: str) -> Any:
    if field.type.is_integer:
        return _to_integer(text, field)
    if field.type is SchemaType.DECIMAL:
        return to_decimal(text, field.scale or 0)
    if field.type in (SchemaType.FLOAT32, SchemaType.FLOAT64):
        return float(text)
    if field.type is SchemaType.TIMESTAMP:
        return parse_timestamp(text)
    if field.type is SchemaType.TIMESTAMP_TZ:
        return parse_timestamp(text, aware=True)
    if field.type is SchemaType.BYTES:
        return bytes.fromhex(text)
    return text


def convert_redo_value(field: FieldSchema, value: RedoValue) -> Any:
    """Convert a redo literal into the Python value for ``field``."""
    if value.is_null:
        return None
    if value.kind == "empty_lob":
        if field.type is SchemaType.BYTES:
            return b""
        return ""
    text = value.text or ""
    if value.kind == "string" and text == "":
        # Oracle stores empty strings as NULL
        return None
    if value.kind == "hex" and field.type is not SchemaType.BYTES:
        raise ValueError(f"binary literal for {field.type.value} column")
    if value.kind in {"date", "timestamp", "timestamp_tz"} and field.type not in (
        SchemaType.TIMESTAMP,
        SchemaType.TIMESTAMP_TZ,
        SchemaType.STRING,
    ):
        raise ValueError(f"temporal literal for {field.type.value} column")
    return _from_text(field, text)


def convert_native_value(field: FieldSchema, value: Any) -> Any:
    """Coerce a value fetched by the driver (snapshot reads) to ``field``."""
    if value is None:
        return None
    if field.type.is_integer:
        return _to_integer(value, field)
    if field.type is SchemaType.DECIMAL:
        return to_decimal(value, field.scale or 0)
    if field.type in (SchemaType.FLOAT32, SchemaType.FLOAT64):
        return float(value)
    if field.type is SchemaType.TIMESTAMP:
        if isinstance(value, datetime):
            return value.replace(tzinfo=None)
        return parse_timestamp(str(value))
    if field.type is SchemaType.TIMESTAMP_TZ:
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return parse_timestamp(str(value), aware=True)
    if field.type is SchemaType.BYTES:
        return bytes(value)
    return str(value)


def build_image(
    schema: ValueSchema,
    values: Mapping[str, Any],
    converter: Callable[[FieldSchema, Any], Any],
) -> Dict[str, Any]:
    """Build a column map holding exactly the schema's columns."""
    unknown = [name for name in values if schema.field(name) is None]
    if unknown:
        raise ValueError(
            f"columns {sorted(unknown)} not in schema version {schema.version}"
        )
    image: Dict[str, Any] = {}
    for item in schema.fields:
        raw = values.get(item.name)
        try:
            image[item.name] = None if raw is None else converter(item, raw)
        except (ValueError, ArithmeticError) as exc:
            raise ValueError(f"column {item.name}: {exc}") from exc
    return image


class RedoDecoder:
    """Turns :class:`RawLogRow` entries into :class:`CdcRecord` instances."""

    def __init__(self, schema_lookup: Callable[[TableId], ValueSchema]) -> None:
        self._schema_lookup = schema_lookup

    def decode(self, row: RawLogRow) -> Optional[CdcRecord]:
        """Decode ``row``; returns ``None`` for operations that are not row DML."""
        operation = OPERATION_CODES.get(row.operation_code)
        if operation is None:
            logger.debug(
                "skipping operation code %s at scn %s", row.operation_code, row.scn
            )
            return None
        table = row.table
        try:
            schema = self._schema_lookup(table)
            redo = parse_statement(row.sql_redo)
            undo = parse_statement(row.sql_undo) if row.sql_undo else None
            if redo.kind != _STATEMENT_KINDS[operation]:
                raise ValueError(
                    f"operation code {row.operation_code} carries a {redo.kind} statement"
                )
            if redo.owner and (redo.owner, redo.table) != (table.owner, table.table):
                raise ValueError(f"statement targets {redo.owner}.{redo.table}")
            before, after = self._images(operation, schema, redo, undo)
        except (RedoParseError, ValueError, KeyError) as exc:
            raise DecodeError(str(exc), scn=row.scn, table=table.name) from exc
        return CdcRecord(
            operation=operation,
            table=table,
            data_schema=schema,
            before=before,
            after=after,
            scn=row.scn,
            commit_scn=row.commit_scn,
            transaction_id=row.transaction_id,
            row_id=row.row_id or redo.row_id,
            timestamp=row.timestamp,
        )

    @staticmethod
    def _images(
        operation: Operation,
        schema: ValueSchema,
        redo: ParsedStatement,
        undo: Optional[ParsedStatement],
    ) -> tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        if operation is Operation.INSERT:
            return None, build_image(schema, redo.values, convert_redo_value)
        if operation is Operation.DELETE:
            raw_before = dict(redo.where)
            if undo is not None and undo.kind == "insert":
                raw_before.update(undo.values)
            return build_image(schema, raw_before, convert_redo_value), None
        # update: the where clause holds the logged old row, the undo statement
        # restores changed columns, the set clause holds their new values
        raw_before = dict(redo.where)
        if undo is not None and undo.kind == "update":
            raw_before.update(undo.values)
        raw_after = dict(raw_before)
        raw_after.update(redo.values)
        return (
            build_image(schema, raw_before, convert_redo_value),
            build_image(schema, raw_after, convert_redo_value),
        )


__all__ = [
    "OPERATION_CODES",
    "RawLogRow",
    "RedoDecoder",
    "build_image",
    "convert_native_value",
    "convert_redo_value",
    "parse_timestamp",
    "to_decimal",
]
