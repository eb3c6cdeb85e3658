"""LogMiner session lifecycle: start, extend, advance, renew and stop."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from ..db import Error as OracleError
from .backoff import ExponentialBackoff, retry_call
from .errors import SessionStartError, error_code, is_fatal, is_transient
from .logminer import LogFile, LogMinerGateway
from .metrics import CDCMetrics
from .offset import Offset
from .table import TableId

logger = logging.getLogger(__name__)

NOT_STARTED_CODE = "ORA-01306"


@dataclass(frozen=True)
class RestartPoint:
    """A current SCN paired with the lowest SCN any later commit has redo at."""

    scn: int
    mining_scn: int


@dataclass
class SessionHandle:
    """State of one LogMiner session.

    ``start_scn`` is the first commit SCN the caller wants.
    ``mining_start_scn`` is the STARTSCN handed to LogMiner: low enough that
    every transaction committing at or after ``start_scn`` is reassembled, and
    raised by :meth:`LogMinerSessionController.advance` as windows complete.
    """

    start_scn: int
    mining_start_scn: int
    upper_scn: Optional[int] = None
    log_files: Tuple[LogFile, ...] = ()
    windows_mined: int = 0
    active: bool = True
    logminer_start_scn: Optional[int] = None


class LogMinerSessionController:
    """Starts and maintains the LogMiner session for a set of tables."""

    def __init__(
        self,
        gateway: LogMinerGateway,
        tables: Sequence[TableId],
        *,
        start_scn: Optional[int] = None,
        lookback_scns: int = 0,
        start_attempts: int = 5,
        backoff: Optional[ExponentialBackoff] = None,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Optional[CDCMetrics] = None,
    ) -> None:
        if start_attempts < 1:
            raise ValueError("start_attempts must be at least 1")
        if lookback_scns < 0:
            raise ValueError("lookback_scns must not be negative")
        self._gateway = gateway
        self._tables = tuple(tables)
        self._start_scn = start_scn
        self._lookback_scns = lookback_scns
        self._backoff = backoff or ExponentialBackoff(jitter=False)
        self._backoff.max_attempts = start_attempts - 1
        self._sleep = sleep
        self._metrics = metrics or CDCMetrics()

    @property
    def tables(self) -> Tuple[TableId, ...]:
        return self._tables

    def resume_scn(self, last_offset: Optional[Offset] = None) -> int:
        """First commit SCN to mine for ``last_offset``.

        A regular offset is resumed inclusively so rows sharing its SCN can be
        filtered by sequence.  A snapshot offset means everything up to the
        snapshot SCN was read by the flashback query.
        """
        if last_offset is not None:
            if last_offset.snapshot:
                return last_offset.scn + 1
            return last_offset.scn
        if self._start_scn is not None:
            return self._start_scn
        return self._gateway.current_scn()

    def resume_point(self, last_offset: Optional[Offset] = None) -> Tuple[int, int]:
        """``(first commit SCN, lowest STARTSCN)`` to resume ``last_offset``.

        Offsets carrying a mining SCN resume mining there.  Older offsets and
        an explicit start SCN fall back to the configured lookback.
        """
        if last_offset is not None:
            start = self.resume_scn(last_offset)
            if last_offset.mining_scn is not None:
                return start, min(last_offset.mining_scn, start)
            return start, start - self._lookback_scns
        if self._start_scn is not None:
            return self._start_scn, self._start_scn - self._lookback_scns
        point = self.restart_point()
        return point.scn, point.mining_scn

    def restart_point(self) -> RestartPoint:
        """Read the current SCN and the redo floor of commits after it.

        The current SCN is read on both sides of the open transaction scan:
        a transaction beginning after the scan has redo above the first read,
        and one committing during the scan commits at or below the second.
        """
        before = self._gateway.current_scn()
        oldest_open = self._gateway.oldest_open_transaction_scn()
        current = self._gateway.current_scn()
        mining_scn = before if oldest_open is None else min(oldest_open, before)
        return RestartPoint(current, mining_scn)

    def start_or_resume(self, last_offset: Optional[Offset] = None) -> SessionHandle:
        """Start a session at the resume point of ``last_offset``."""
        return self._start(lambda: self.resume_point(last_offset))

    def renew(self, handle: SessionHandle, start_scn: int) -> SessionHandle:
        """Replace ``handle`` with a fresh session delivering from ``start_scn``.

        The new session keeps the old mining start, so transactions still open
        across the renewal are reassembled in full.
        """
        if start_scn < handle.start_scn:
            raise ValueError("a renewed session cannot start before the old one")
        mining_scn = min(handle.mining_start_scn, start_scn)
        self.stop(handle)
        renewed = self._start(lambda: (start_scn, mining_scn))
        logger.info(
            "renewed LogMiner session at scn %d after %d windows",
            start_scn,
            handle.windows_mined,
        )
        return renewed

    def advance(self, handle: SessionHandle, mining_scn: int) -> None:
        """Raise the STARTSCN later :meth:`extend` calls restart LogMiner at."""
        if mining_scn <= handle.mining_start_scn:
            return
        logger.debug(
            "mining start advanced from scn %d to %d",
            handle.mining_start_scn,
            mining_scn,
        )
        handle.mining_start_scn = mining_scn

    def extend(self, handle: SessionHandle, upper_scn: int) -> None:
        """Restart LogMiner so it covers commits up to ``upper_scn``.

        Fatal ORA codes raise :class:`SessionStartError`; any other error is
        left to the caller's window retry.
        """
        if not handle.active:
            raise RuntimeError("cannot extend a stopped LogMiner session")
        mining_start = handle.mining_start_scn
        try:
            files = tuple(self._gateway.log_files(mining_start))
            if not files:
                raise SessionStartError(
                    f"no redo logs cover scn {mining_start}",
                    scn=mining_start,
                    code="ORA-01292",
                )
            upper = max(upper_scn, mining_start)
            if (
                files != handle.log_files
                or upper != handle.upper_scn
                or mining_start != handle.logminer_start_scn
            ):
                self._gateway.start_logminer(mining_start, upper, files)
                handle.log_files = files
                handle.upper_scn = upper
                handle.logminer_start_scn = mining_start
        except SessionStartError:
            raise
        except Exception as exc:
            if is_fatal(exc):
                raise SessionStartError(
                    f"LogMiner cannot continue from scn {mining_start}: {exc}",
                    scn=mining_start,
                    code=error_code(exc),
                ) from exc
            raise
        handle.windows_mined += 1

    def stop(self, handle: Optional[SessionHandle]) -> None:
        """End the session; safe to call repeatedly."""
        if handle is None or not handle.active:
            return
        handle.active = False
        try:
            self._gateway.end_logminer()
        except OracleError as exc:
            if error_code(exc) != NOT_STARTED_CODE:
                raise
            logger.debug("LogMiner session was not running at stop")

    def _start(self, resolve: Callable[[], Tuple[int, int]]) -> SessionHandle:
        def on_retry(exc: BaseException, delay: float) -> None:
            self._metrics.inc_session_retries()
            logger.warning(
                "LogMiner session start failed (%s); retrying in %.2fs", exc, delay
            )

        try:
            handle = retry_call(
                lambda: self._attempt_start(*resolve()),
                self._backoff,
                should_retry=is_transient,
                sleep=self._sleep,
                on_retry=on_retry,
            )
        except SessionStartError:
            raise
        except (OracleError, ConnectionError, TimeoutError) as exc:
            code = error_code(exc)
            fatal = is_fatal(exc)
            raise SessionStartError(
                f"unable to start LogMiner session: {exc}",
                code=code,
                recoverable=not fatal,
            ) from exc
        self._metrics.inc_session_starts()
        return handle

    def _attempt_start(self, start_scn: int, mining_floor: int) -> SessionHandle:
        oldest = self._gateway.oldest_available_scn()
        if oldest is None or oldest > start_scn:
            raise SessionStartError(
                f"redo for scn {start_scn} is no longer available "
                f"(oldest available scn {oldest})",
                scn=start_scn,
                code="ORA-01291",
            )
        mining_start = max(min(mining_floor, start_scn), oldest)
        if mining_start > mining_floor:
            logger.info(
                "redo below scn %d is gone; mining from %d instead of %d",
                oldest,
                mining_start,
                mining_floor,
            )
        files = tuple(self._gateway.log_files(mining_start))
        if not files:
            raise SessionStartError(
                f"no redo logs cover scn {mining_start}",
                scn=start_scn,
                code="ORA-01292",
            )
        current = self._gateway.current_scn()
        upper: Optional[int] = None
        logminer_start: Optional[int] = None
        if current >= start_scn:
            upper = current
            logminer_start = mining_start
            self._gateway.start_logminer(mining_start, upper, files)
        logger.info(
            "LogMiner session started at scn %d (mining from %d, %d log files)",
            start_scn,
            mining_start,
            len(files),
        )
        return SessionHandle(
            start_scn=start_scn,
            mining_start_scn=mining_start,
            upper_scn=upper,
            log_files=files,
            logminer_start_scn=logminer_start,
        )


__all__ = ["LogMinerSessionController", "RestartPoint", "SessionHandle"]
