"""Polling runner that drives a :class:`LogMinerSource` like a host scheduler."""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from threading import Event
from typing import IO, Any, Callable, Dict, List, Optional

from .cdc.backoff import BackoffExhausted, ExponentialBackoff
from .cdc.checkpoint import InMemoryOffsetStore, OffsetStore, PersistentOffsetStore
from .cdc.errors import SessionStartError, WindowAdvanceError
from .cdc.metrics import CDCMetrics
from .cdc.records import PollResult
from .cdc.source import DecodeErrorSpike, LogMinerSource
from .config import Settings, load_settings
from .db import Connection, connect_from_settings

logger = logging.getLogger(__name__)


class JsonlSink:
    """Writes each record payload as one JSON line."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._handle: Optional[IO[str]] = None

    def __call__(self, payload: Dict[str, Any]) -> None:
        handle = self._open()
        handle.write(json.dumps(payload, sort_keys=True) + "\n")

    def flush(self) -> None:
        if self._handle is not None:
            self._handle.flush()

    def close(self) -> None:
        if self._handle is not None and self._path is not None:
            self._handle.close()
        self._handle = None

    def _open(self) -> IO[str]:
        if self._handle is None:
            if self._path is None:
                self._handle = sys.stdout
            else:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = self._path.open("a", encoding="utf-8")
        return self._handle


class CDCRunner:
    """Repeatedly ensures a session, polls, emits and checkpoints."""

    def __init__(
        self,
        source: LogMinerSource,
        *,
        connection_factory: Callable[[], Connection],
        sink: Callable[[Dict[str, Any]], None],
        offset_store: Optional[OffsetStore] = None,
        source_name: str = "logminer",
        poll_interval_seconds: float = 1.0,
        backoff: Optional[ExponentialBackoff] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._source = source
        self._connection_factory = connection_factory
        self._sink = sink
        self._offset_store = offset_store or InMemoryOffsetStore()
        self._source_name = source_name
        self._poll_interval = poll_interval_seconds
        self._backoff = backoff or ExponentialBackoff()
        self._sleep = sleep
        self._stop_event = Event()
        self._connection: Optional[Connection] = None

    @property
    def source(self) -> LogMinerSource:
        return self._source

    def stop(self) -> None:
        self._stop_event.set()

    def run_forever(self) -> None:
        try:
            while not self._stop_event.is_set():
                self.process_once()
        finally:
            self.close()

    def process_once(self) -> int:
        """Run one poll cycle; returns the number of records emitted.

        :class:`SessionStartError` propagates since retrying from the same
        offset cannot succeed.  Other failures reconnect after a backoff; once
        the backoff runs out of attempts the failure propagates.
        """
        try:
            if self._connection is None:
                self._connection = self._connection_factory()
            self._source.maybe_start_query(self._connection)
            batch = self._source.poll()
            emitted = self._emit(batch)
        except SessionStartError:
            raise
        except Exception as exc:  # noqa: BLE001 - reconnect and resume from the offset
            try:
                delay = self._backoff.next_delay()
            except BackoffExhausted:
                logger.error(
                    "cdc poll failed after %d reconnects; giving up",
                    self._backoff.attempts,
                )
                self._disconnect()
                raise exc from None
            logger.exception("cdc poll failed - reconnecting in %.2fs", delay)
            self._disconnect()
            self._sleep(delay)
            return 0
        self._backoff.reset()
        if emitted == 0:
            self._sleep(self._poll_interval)
        return emitted

    def close(self) -> None:
        self._disconnect()
        close_sink = getattr(self._sink, "close", None)
        if callable(close_sink):
            close_sink()

    def _emit(self, batch: List[PollResult]) -> int:
        if not batch:
            return 0
        for result in batch:
            self._sink(result.to_dict())
        flush = getattr(self._sink, "flush", None)
        if callable(flush):
            flush()
        self._offset_store.save(self._source_name, batch[-1].offset)
        return len(batch)

    def _disconnect(self) -> None:
        connection, self._connection = self._connection, None
        try:
            self._source.close()
        except Exception:  # noqa: BLE001 - the connection may already be gone
            logger.debug("ignoring error while stopping LogMiner", exc_info=True)
        self._source.rewind(self._offset_store.load(self._source_name))
        if connection is not None:
            try:
                connection.close()
            except Exception:  # noqa: BLE001
                logger.debug("ignoring error while closing connection", exc_info=True)


def build_offset_store(settings: Settings) -> OffsetStore:
    if settings.cdc_checkpoint_backend == "file":
        return PersistentOffsetStore(
            settings.cdc_offset_path, fsync=settings.cdc_offset_fsync
        )
    return InMemoryOffsetStore()


def _log_spike(spike: DecodeErrorSpike) -> None:
    logger.warning("decode error spike reported to runner: %s", spike)


def build_runner(
    settings: Settings,
    *,
    sink: Optional[Callable[[Dict[str, Any]], None]] = None,
    offset_store: Optional[OffsetStore] = None,
    connection_factory: Optional[Callable[[], Connection]] = None,
    metrics: Optional[CDCMetrics] = None,
) -> CDCRunner:
    """Construct a runner using application settings."""

    if not settings.cdc_tables:
        raise ValueError("CDC_TABLES must name at least one OWNER.TABLE")
    store = offset_store or build_offset_store(settings)
    offset = store.load(settings.cdc_source_name)
    if offset is not None:
        logger.info("resuming %s from offset %s", settings.cdc_source_name, offset)
    source = LogMinerSource.from_settings(
        settings,
        offset=offset,
        metrics=metrics,
        warning_handler=_log_spike,
    )
    return CDCRunner(
        source,
        connection_factory=connection_factory
        or (lambda: connect_from_settings(settings)),
        sink=sink or JsonlSink(settings.cdc_output_path),
        offset_store=store,
        source_name=settings.cdc_source_name,
        poll_interval_seconds=settings.cdc_poll_interval_seconds,
        backoff=ExponentialBackoff(
            base_interval=settings.cdc_retry_base_delay_seconds,
            max_interval=settings.cdc_retry_max_delay_seconds,
            max_attempts=settings.cdc_max_reconnects or None,
        ),
    )


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    settings = load_settings()
    runner = build_runner(settings)
    try:
        runner.run_forever()
    except KeyboardInterrupt:
        logger.info("interrupted; stopping")
    except SessionStartError as exc:
        logger.error("cannot resume capture (code=%s): %s", exc.code, exc)
        raise SystemExit(1) from exc
    except WindowAdvanceError as exc:
        logger.error(
            "giving up on scn window %d-%d: %s", exc.start_scn, exc.end_scn, exc
        )
        raise SystemExit(1) from exc


__all__ = ["CDCRunner", "JsonlSink", "build_offset_store", "build_runner", "main"]
