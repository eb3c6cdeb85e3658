"""Value objects describing captured row changes."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .offset import Offset
from .schema import ValueSchema
from .table import TableId


class Operation(str, Enum):
    """Kind of row change carried by a record."""

    READ = "r"
    INSERT = "c"
    UPDATE = "u"
    DELETE = "d"

    @property
    def has_before(self) -> bool:
        return self in (Operation.UPDATE, Operation.DELETE)

    @property
    def has_after(self) -> bool:
        return self in (Operation.READ, Operation.INSERT, Operation.UPDATE)


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def _json_row(row: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {key: _json_value(value) for key, value in row.items()}


@dataclass(frozen=True)
class CdcRecord:
    """A single decoded row change with its before/after images."""

    operation: Operation
    table: TableId
    data_schema: ValueSchema
    before: Optional[Mapping[str, Any]] = None
    after: Optional[Mapping[str, Any]] = None
    scn: int = 0
    commit_scn: int = 0
    transaction_id: Optional[str] = None
    row_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.operation.has_before != (self.before is not None):
            raise ValueError(
                f"{self.operation.name} record must "
                f"{'carry' if self.operation.has_before else 'omit'} a before image"
            )
        if self.operation.has_after != (self.after is not None):
            raise ValueError(
                f"{self.operation.name} record must "
                f"{'carry' if self.operation.has_after else 'omit'} an after image"
            )
        expected = set(self.data_schema.field_names)
        for label, image in (("before", self.before), ("after", self.after)):
            if image is not None and set(image) != expected:
                missing = sorted(expected - set(image))
                extra = sorted(set(image) - expected)
                raise ValueError(
                    f"{label} image for {self.table} does not match schema "
                    f"(missing={missing}, extra={extra})"
                )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op": self.operation.value,
            "table": {"owner": self.table.owner, "name": self.table.table},
            "before": _json_row(self.before),
            "after": _json_row(self.after),
            "scn": self.scn,
            "commit_scn": self.commit_scn,
            "xid": self.transaction_id,
            "row_id": self.row_id,
            "ts": _json_value(self.timestamp),
            "schema": self.data_schema.to_dict(),
        }


@dataclass(frozen=True)
class PollResult:
    """Unit of delivery: one record plus the offset needed to resume after it."""

    cdc_record: CdcRecord
    offset: Offset

    def to_dict(self) -> Dict[str, Any]:
        payload = self.cdc_record.to_dict()
        payload["offset"] = self.offset.to_dict()
        return payload


__all__ = ["CdcRecord", "Operation", "PollResult"]
