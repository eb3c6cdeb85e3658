"""Poll-driven change source orchestrating session, windows and decoding.

A host scheduler calls :meth:`LogMinerSource.maybe_start_query` and then
:meth:`LogMinerSource.poll` on its own cadence.  Each poll returns a bounded,
ordered batch of :class:`PollResult` objects whose offsets can be persisted
and handed back on restart.
"""

from __future__ import annotations

import copy
import logging
import time
from collections import deque
from dataclasses import dataclass
from functools import partial
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Deque,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from ..db import Error as OracleError
from .backoff import ExponentialBackoff, retry_call
from .decoder import RawLogRow, RedoDecoder
from .errors import (
    DecodeError,
    SessionStartError,
    WindowAdvanceError,
    is_fatal,
)
from .logminer import LogMinerGateway, OracleLogMinerGateway
from .metrics import CDCMetrics
from .offset import Offset
from .records import PollResult
from .schema import SchemaChangeDetector, SchemaMapper, SchemaRegistry, ValueSchema
from .session import LogMinerSessionController, RestartPoint, SessionHandle
from .snapshot import SnapshotReader
from .table import TableId
from .window import ScnWindow, ScnWindowAdvancer

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from ..config import Settings

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[Any], LogMinerGateway]


@dataclass(frozen=True)
class DecodeErrorSpike:
    """Warning raised when one window produced too many undecodable rows."""

    start_scn: int
    end_scn: int
    errors: int
    threshold: int

    def __str__(self) -> str:
        return (
            f"{self.errors} decode errors in scn window "
            f"{self.start_scn}..{self.end_scn} (threshold {self.threshold})"
        )


class PollBuffer:
    """FIFO of poll results whose offsets never decrease."""

    def __init__(self) -> None:
        self._items: Deque[PollResult] = deque()
        self._last_offset: Optional[Offset] = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def last_offset(self) -> Optional[Offset]:
        return self._last_offset

    def extend(self, results: Iterable[PollResult]) -> None:
        for result in results:
            if self._last_offset is not None and result.offset < self._last_offset:
                raise ValueError(
                    f"offset {result.offset} precedes buffered offset {self._last_offset}"
                )
            self._items.append(result)
            self._last_offset = result.offset

    def drain(self, limit: Optional[int] = None) -> List[PollResult]:
        count = len(self._items) if limit is None else min(limit, len(self._items))
        return [self._items.popleft() for _ in range(count)]

    def clear(self) -> None:
        self._items.clear()
        self._last_offset = None


def _retryable(exc: BaseException) -> bool:
    if isinstance(exc, (SessionStartError, DecodeError)):
        return False
    return isinstance(exc, (OracleError, OSError)) and not is_fatal(exc)


class LogMinerSource:
    """Captures row changes for ``tables`` from the Oracle redo log."""

    def __init__(
        self,
        tables: Sequence[TableId | str],
        *,
        offset: Optional[Offset] = None,
        start_scn: Optional[int] = None,
        initial_snapshot: bool = False,
        gateway_factory: Optional[GatewayFactory] = None,
        fetch_size: int = 1000,
        schema_mapper: Optional[SchemaMapper] = None,
        schema_change_detector: Optional[SchemaChangeDetector] = None,
        metrics: Optional[CDCMetrics] = None,
        max_batch_size: int = 1000,
        max_windows_per_poll: int = 10,
        fetch_attempts: int = 3,
        session_start_attempts: int = 5,
        backoff: Optional[ExponentialBackoff] = None,
        decode_error_threshold: int = 50,
        warning_handler: Optional[Callable[[DecodeErrorSpike], None]] = None,
        lookback_scns: int = 10_000,
        session_renew_windows: int = 500,
        default_window_size: int = 10_000,
        min_window_size: int = 100,
        max_window_size: int = 1_000_000,
        high_water_rows: int = 5_000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not tables:
            raise ValueError("at least one table is required")
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive")
        if max_windows_per_poll <= 0:
            raise ValueError("max_windows_per_poll must be positive")
        if fetch_attempts < 1:
            raise ValueError("fetch_attempts must be at least 1")
        if session_renew_windows < 0:
            raise ValueError("session_renew_windows must not be negative")
        self._tables: Tuple[TableId, ...] = tuple(
            table if isinstance(table, TableId) else TableId.parse(table)
            for table in tables
        )
        self._start_scn = start_scn
        self._initial_snapshot = initial_snapshot
        self._gateway_factory = gateway_factory or partial(
            OracleLogMinerGateway, fetch_size=fetch_size
        )
        self._schema_mapper = schema_mapper or SchemaMapper()
        self._schema_change_detector = schema_change_detector
        self._metrics = metrics or CDCMetrics()
        self._max_batch_size = max_batch_size
        self._max_windows_per_poll = max_windows_per_poll
        self._fetch_attempts = fetch_attempts
        self._session_start_attempts = session_start_attempts
        self._backoff = backoff or ExponentialBackoff(jitter=False)
        self._decode_error_threshold = decode_error_threshold
        self._warning_handler = warning_handler
        self._lookback_scns = lookback_scns
        self._session_renew_windows = session_renew_windows
        self._window_options: Dict[str, int] = {
            "default_window_size": default_window_size,
            "min_window_size": min_window_size,
            "max_window_size": max_window_size,
            "high_water_rows": high_water_rows,
        }
        self._sleep = sleep

        self._buffer = PollBuffer()
        self._current_offset: Optional[Offset] = offset
        self._decode_errors = 0
        self._started = False
        self._gateway: Optional[LogMinerGateway] = None
        self._registry: Optional[SchemaRegistry] = None
        self._decoder: Optional[RedoDecoder] = None
        self._session: Optional[LogMinerSessionController] = None
        self._handle: Optional[SessionHandle] = None
        self._advancer: Optional[ScnWindowAdvancer] = None
        self._skip_until: Optional[Offset] = None
        self._snapshot_scn: Optional[int] = None
        self._snapshot_iter: Optional[Iterator[PollResult]] = None
        self._snapshot_next = 0
        self._snapshot_mining_scn: Optional[int] = None
        self._restart_point: Optional[RestartPoint] = None

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        offset: Optional[Offset] = None,
        metrics: Optional[CDCMetrics] = None,
        **overrides: Any,
    ) -> "LogMinerSource":
        """Build a source from service settings; keyword overrides win."""
        options: Dict[str, Any] = {
            "offset": offset,
            "start_scn": settings.cdc_start_scn,
            "initial_snapshot": settings.cdc_initial_snapshot,
            "fetch_size": settings.cdc_fetch_size,
            "schema_mapper": SchemaMapper(
                default_number_scale=settings.cdc_default_number_scale
            ),
            "metrics": metrics,
            "max_batch_size": settings.cdc_max_batch_size,
            "max_windows_per_poll": settings.cdc_max_windows_per_poll,
            "fetch_attempts": settings.cdc_fetch_attempts,
            "session_start_attempts": settings.cdc_session_start_attempts,
            "backoff": ExponentialBackoff(
                base_interval=settings.cdc_retry_base_delay_seconds,
                max_interval=settings.cdc_retry_max_delay_seconds,
            ),
            "decode_error_threshold": settings.cdc_decode_error_threshold,
            "lookback_scns": settings.cdc_transaction_lookback_scns,
            "session_renew_windows": settings.cdc_session_renew_windows,
            "default_window_size": settings.cdc_window_size,
            "min_window_size": settings.cdc_min_window_size,
            "max_window_size": settings.cdc_max_window_size,
            "high_water_rows": settings.cdc_high_water_rows,
        }
        options.update(overrides)
        return cls(settings.cdc_tables, **options)

    @property
    def tables(self) -> Tuple[TableId, ...]:
        return self._tables

    @property
    def metrics(self) -> CDCMetrics:
        return self._metrics

    @property
    def current_offset(self) -> Optional[Offset]:
        """Offset of the last record returned by :meth:`poll`."""
        return self._current_offset

    @property
    def started(self) -> bool:
        return self._started

    def maybe_start_query(self, connection: Any) -> None:
        """Ensure a mining session or pending snapshot exists; idempotent."""
        if self._started:
            return
        gateway = self._gateway_factory(connection)
        registry = SchemaRegistry(gateway, self._schema_mapper)
        session = LogMinerSessionController(
            gateway,
            self._tables,
            start_scn=self._start_scn,
            lookback_scns=self._lookback_scns,
            start_attempts=self._session_start_attempts,
            backoff=copy.copy(self._backoff),
            sleep=self._sleep,
            metrics=self._metrics,
        )
        self._gateway = gateway
        self._registry = registry
        self._decoder = RedoDecoder(registry.get)
        self._session = session

        resume = self._current_offset
        if resume is not None and resume.snapshot:
            self._begin_snapshot(
                resume.scn, skip_before=resume.sequence, mining_scn=resume.mining_scn
            )
        elif resume is None and self._initial_snapshot:
            if self._start_scn is not None:
                self._begin_snapshot(self._start_scn)
            else:
                point = session.restart_point()
                self._begin_snapshot(point.scn, mining_scn=point.mining_scn)
        else:
            self._begin_mining(resume)
        self._started = True

    def poll(self) -> List[PollResult]:
        """Return the next ordered batch of results, possibly empty."""
        if not self._started:
            raise RuntimeError("maybe_start_query must be called before poll")
        if not self._buffer:
            if self._snapshot_scn is not None:
                self._fill_from_snapshot()
            else:
                self._fill_from_log()
        batch = self._buffer.drain(self._max_batch_size)
        if batch:
            self._current_offset = batch[-1].offset
        self._metrics.set_buffer_depth(len(self._buffer))
        return batch

    def refresh_schema(self, table: TableId | str) -> ValueSchema:
        """Re-derive the schema of ``table`` after a DDL change."""
        if self._registry is None:
            raise RuntimeError("source is not started")
        if not isinstance(table, TableId):
            table = TableId.parse(table)
        return self._registry.refresh(table)

    def close(self) -> None:
        """Stop the LogMiner session and drop undelivered buffered rows.

        A later :meth:`maybe_start_query` resumes from :attr:`current_offset`.
        """
        session, handle = self._session, self._handle
        self._handle = None
        self._started = False
        self._snapshot_iter = None
        self._snapshot_scn = None
        self._advancer = None
        self._restart_point = None
        self._buffer.clear()
        if session is not None and handle is not None:
            session.stop(handle)

    def rewind(self, offset: Optional[Offset]) -> None:
        """Resume from ``offset`` on the next :meth:`maybe_start_query`.

        Used when records returned by :meth:`poll` were not durably handled.
        """
        if self._started:
            raise RuntimeError("close the source before rewinding it")
        self._current_offset = offset

    def stats(self) -> Dict[str, Any]:
        advancer = self._advancer
        return {
            "started": self._started,
            "snapshot_in_progress": self._snapshot_scn is not None,
            "low_water_mark": advancer.low_water_mark if advancer else None,
            "window_size": advancer.window_size if advancer else None,
            "buffered": len(self._buffer),
            "decode_errors": self._decode_errors,
            "windows_mined": self._handle.windows_mined if self._handle else 0,
            "mining_start_scn": (
                self._handle.mining_start_scn if self._handle else None
            ),
            "current_offset": (
                self._current_offset.to_dict() if self._current_offset else None
            ),
        }

    # snapshot

    def _begin_snapshot(
        self, scn: int, *, skip_before: int = 0, mining_scn: Optional[int] = None
    ) -> None:
        logger.info(
            "initial snapshot of %d tables at scn %d (resuming at row %d)",
            len(self._tables),
            scn,
            skip_before,
        )
        self._snapshot_scn = scn
        self._snapshot_next = skip_before
        self._snapshot_mining_scn = mining_scn
        self._snapshot_iter = None

    def _fill_from_snapshot(self) -> None:
        assert self._snapshot_scn is not None
        chunk: List[PollResult] = []

        def read_chunk() -> bool:
            if self._snapshot_iter is None:
                self._snapshot_iter = iter(self._snapshot_reader())
            try:
                for result in self._snapshot_iter:
                    chunk.append(result)
                    self._snapshot_next = result.offset.sequence + 1
                    if len(chunk) >= self._max_batch_size:
                        return False
            except Exception:
                self._snapshot_iter = None
                raise
            return True

        try:
            finished = retry_call(
                read_chunk,
                self._backoff_for(self._fetch_attempts),
                should_retry=_retryable,
                sleep=self._sleep,
                on_retry=self._log_retry,
            )
        except (SessionStartError, WindowAdvanceError):
            raise
        except Exception as exc:
            scn = self._snapshot_scn
            raise WindowAdvanceError(
                f"snapshot read at scn {scn} failed: {exc}",
                start_scn=scn,
                end_scn=scn,
            ) from exc
        finally:
            self._buffer.extend(chunk)
        if finished:
            scn = self._snapshot_scn
            logger.info("initial snapshot at scn %d completed", scn)
            self._snapshot_scn = None
            self._snapshot_iter = None
            self._begin_mining(
                Offset(
                    scn,
                    self._snapshot_next,
                    snapshot=True,
                    mining_scn=self._snapshot_mining_scn,
                )
            )

    def _snapshot_reader(self) -> SnapshotReader:
        assert self._gateway is not None and self._registry is not None
        assert self._snapshot_scn is not None
        return SnapshotReader(
            self._gateway,
            self._tables,
            self._registry,
            self._snapshot_scn,
            skip_before=self._snapshot_next,
            mining_scn=self._snapshot_mining_scn,
            on_decode_error=self._record_decode_error,
            metrics=self._metrics,
        )

    # log mining

    def _begin_mining(self, resume: Optional[Offset]) -> None:
        assert self._session is not None
        self._handle = self._session.start_or_resume(resume)
        self._restart_point = None
        self._advancer = ScnWindowAdvancer(
            self._handle.start_scn, **self._window_options
        )
        self._skip_until = resume if resume is not None and not resume.snapshot else None
        self._metrics.set_low_water_mark(self._advancer.low_water_mark)
        self._metrics.set_window_size(self._advancer.window_size)

    def _fill_from_log(self) -> None:
        assert self._advancer is not None and self._gateway is not None
        for _ in range(self._max_windows_per_poll):
            self._refresh_changed_schemas()
            self._maybe_renew_session()
            window = self._advancer.next_window(self._current_scn())
            if window is None:
                return
            results, fetched = self._mine_window(window)
            self._buffer.extend(results)
            self._advancer.mark_delivered(window.end)
            self._release_mining_start(window.end)
            self._advancer.record_yield(fetched)
            if self._skip_until is not None and window.end >= self._skip_until.scn:
                self._skip_until = None
            self._metrics.inc_windows()
            self._metrics.inc_records(len(results))
            self._metrics.set_low_water_mark(self._advancer.low_water_mark)
            self._metrics.set_window_size(self._advancer.window_size)
            if results:
                return

    def _current_scn(self) -> int:
        assert self._gateway is not None and self._advancer is not None
        start = self._advancer.next_start
        try:
            return retry_call(
                self._read_current_scn,
                self._backoff_for(self._fetch_attempts),
                should_retry=_retryable,
                sleep=self._sleep,
                on_retry=self._log_retry,
            )
        except Exception as exc:
            raise WindowAdvanceError(
                f"unable to read current scn: {exc}", start_scn=start, end_scn=start
            ) from exc

    def _read_current_scn(self) -> int:
        assert self._session is not None and self._gateway is not None
        if self._restart_point is not None:
            return self._gateway.current_scn()
        self._restart_point = self._session.restart_point()
        return self._restart_point.scn

    def _release_mining_start(self, delivered_scn: int) -> None:
        # commits above the restart point scn only need redo from its floor
        point = self._restart_point
        if point is None or point.scn > delivered_scn or self._handle is None:
            return
        assert self._session is not None
        self._session.advance(self._handle, point.mining_scn)
        self._restart_point = None

    def _maybe_renew_session(self) -> None:
        assert self._session is not None and self._advancer is not None
        handle = self._handle
        if (
            handle is None
            or self._session_renew_windows <= 0
            or handle.windows_mined < self._session_renew_windows
            or self._advancer.pending is not None
        ):
            return
        self._handle = self._session.renew(handle, self._advancer.next_start)

    def _refresh_changed_schemas(self) -> None:
        if self._schema_change_detector is None or self._registry is None:
            return
        for table in self._schema_change_detector.changed_tables(self._tables):
            self._registry.refresh(table)

    def _mine_window(self, window: ScnWindow) -> Tuple[List[PollResult], int]:
        """Query, decode and sequence one window.

        Retries restart the window from scratch; partial rows from a failed
        attempt are discarded.  Nothing outside this call changes until the
        window succeeds.
        """
        assert self._session is not None and self._handle is not None

        def attempt() -> Tuple[List[PollResult], int, List[DecodeError]]:
            assert self._session is not None and self._handle is not None
            self._session.extend(self._handle, window.end)
            return self._collect(window)

        try:
            results, fetched, errors = retry_call(
                attempt,
                self._backoff_for(self._fetch_attempts),
                should_retry=_retryable,
                sleep=self._sleep,
                on_retry=self._log_retry,
            )
        except SessionStartError:
            raise
        except Exception as exc:
            raise WindowAdvanceError(
                f"mining scn window {window.start}..{window.end} failed: {exc}",
                start_scn=window.start,
                end_scn=window.end,
            ) from exc
        for error in errors:
            self._record_decode_error(error)
        if len(errors) > self._decode_error_threshold:
            spike = DecodeErrorSpike(
                window.start, window.end, len(errors), self._decode_error_threshold
            )
            logger.warning("DecodeErrorSpike: %s", spike)
            if self._warning_handler is not None:
                self._warning_handler(spike)
        logger.debug(
            "scn window %d..%d yielded %d rows, %d records",
            window.start,
            window.end,
            fetched,
            len(results),
        )
        return results, fetched

    def _collect(
        self, window: ScnWindow
    ) -> Tuple[List[PollResult], int, List[DecodeError]]:
        assert self._gateway is not None and self._decoder is not None
        assert self._handle is not None
        mining_scn = self._handle.mining_start_scn
        errors: List[DecodeError] = []
        results: List[PollResult] = []
        rows = self._gateway.fetch_contents(self._tables, window.start, window.end)
        fetched = 0
        sequence_scn: Optional[int] = None
        sequence = 0
        for raw in self._merge_fragments(rows, errors):
            fetched += 1
            if raw.commit_scn != sequence_scn:
                sequence_scn, sequence = raw.commit_scn, 0
            position = sequence
            sequence += 1
            skip = self._skip_until
            if (
                skip is not None
                and raw.commit_scn == skip.scn
                and position < skip.sequence
            ):
                continue
            try:
                record = self._decoder.decode(raw)
            except DecodeError as exc:
                errors.append(exc)
                continue
            if record is None:
                continue
            offset = Offset(raw.commit_scn, position, mining_scn=mining_scn)
            results.append(PollResult(record, offset))
        return results, fetched, errors

    @staticmethod
    def _merge_fragments(
        rows: Iterable[Mapping[str, Any]], errors: List[DecodeError]
    ) -> Iterator[RawLogRow]:
        pending: Optional[RawLogRow] = None
        for mapping in rows:
            try:
                raw = RawLogRow.from_mapping(mapping)
            except DecodeError as exc:
                errors.append(exc)
                continue
            pending = raw if pending is None else pending.merge_continuation(raw)
            if pending.csf == 0:
                yield pending
                pending = None
        if pending is not None:
            errors.append(
                DecodeError(
                    "statement continuation missing at end of window",
                    scn=pending.scn,
                    table=pending.table.name,
                )
            )

    # helpers

    def _backoff_for(self, attempts: int) -> ExponentialBackoff:
        self._backoff.max_attempts = attempts - 1
        return self._backoff

    def _log_retry(self, exc: BaseException, delay: float) -> None:
        self._metrics.inc_window_retries()
        logger.warning("transient failure (%s); retrying in %.2fs", exc, delay)

    def _record_decode_error(self, error: DecodeError) -> None:
        self._decode_errors += 1
        self._metrics.inc_decode_errors()
        logger.warning(
            "skipping undecodable row at scn %s in %s: %s",
            error.scn,
            error.table,
            error,
        )


__all__ = ["DecodeErrorSpike", "GatewayFactory", "LogMinerSource", "PollBuffer"]
