"""Initial consistent snapshot of the captured tables."""

from __future__ import annotations

import logging
from typing import Callable, Iterator, Optional, Sequence

from .decoder import build_image, convert_native_value
from .errors import DecodeError, SessionStartError, error_code, is_fatal
from .logminer import LogMinerGateway
from .metrics import CDCMetrics
from .offset import Offset
from .records import CdcRecord, Operation, PollResult
from .schema import SchemaRegistry
from .table import TableId

logger = logging.getLogger(__name__)

ROW_ID_COLUMN = "ROW_ID$"


class SnapshotReader:
    """Reads every table as of one SCN and emits READ records.

    Rows are numbered across tables in table order; the number becomes the
    offset sequence so an interrupted snapshot can resume by re-running the
    flashback query and skipping rows before ``skip_before``.
    ``mining_scn`` is stamped on every offset so streaming later resumes
    LogMiner low enough for transactions open at the snapshot SCN.
    """

    def __init__(
        self,
        gateway: LogMinerGateway,
        tables: Sequence[TableId],
        registry: SchemaRegistry,
        scn: int,
        *,
        skip_before: int = 0,
        mining_scn: Optional[int] = None,
        on_decode_error: Optional[Callable[[DecodeError], None]] = None,
        metrics: Optional[CDCMetrics] = None,
    ) -> None:
        self._gateway = gateway
        self._tables = tuple(tables)
        self._registry = registry
        self._scn = scn
        self._skip_before = skip_before
        self._mining_scn = mining_scn
        self._on_decode_error = on_decode_error
        self._metrics = metrics or CDCMetrics()

    @property
    def scn(self) -> int:
        return self._scn

    def __iter__(self) -> Iterator[PollResult]:
        try:
            yield from self._read()
        except (SessionStartError, DecodeError):
            raise
        except Exception as exc:
            if is_fatal(exc):
                raise SessionStartError(
                    f"snapshot at scn {self._scn} is no longer readable: {exc}",
                    scn=self._scn,
                    code=error_code(exc),
                ) from exc
            raise

    def _read(self) -> Iterator[PollResult]:
        sequence = 0
        for table in self._tables:
            schema = self._registry.get(table)
            logger.info("snapshot of %s at scn %d started", table, self._scn)
            count = 0
            for row in self._gateway.snapshot_rows(
                table, schema.field_names, self._scn
            ):
                position = sequence
                sequence += 1
                if position < self._skip_before:
                    continue
                values = dict(row)
                row_id = values.pop(ROW_ID_COLUMN, None)
                try:
                    after = build_image(schema, values, convert_native_value)
                except ValueError as exc:
                    error = DecodeError(str(exc), scn=self._scn, table=table.name)
                    if self._on_decode_error is None:
                        raise error from exc
                    self._on_decode_error(error)
                    continue
                record = CdcRecord(
                    operation=Operation.READ,
                    table=table,
                    data_schema=schema,
                    after=after,
                    scn=self._scn,
                    commit_scn=self._scn,
                    row_id=row_id,
                )
                count += 1
                self._metrics.inc_snapshot_rows()
                offset = Offset(
                    self._scn, position, snapshot=True, mining_scn=self._mining_scn
                )
                yield PollResult(record, offset)
            logger.info("snapshot of %s emitted %d rows", table, count)


__all__ = ["ROW_ID_COLUMN", "SnapshotReader"]
