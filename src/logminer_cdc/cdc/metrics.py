"""Prometheus counters and gauges describing mining progress."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge


class CDCMetrics:
    """Wraps Prometheus counters and keeps a plain snapshot for assertions.

    Each instance registers into its own :class:`CollectorRegistry` unless one
    is supplied, so several sources can live in one process.
    """

    def __init__(
        self,
        namespace: str = "logminer_cdc",
        *,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._records = self._build_counter(
            f"{namespace}_records", "Decoded change records buffered"
        )
        self._decode_errors = self._build_counter(
            f"{namespace}_decode_errors", "Mined rows that failed to decode"
        )
        self._windows = self._build_counter(
            f"{namespace}_windows", "SCN windows mined"
        )
        self._window_retries = self._build_counter(
            f"{namespace}_window_retries", "SCN window fetch retries"
        )
        self._session_starts = self._build_counter(
            f"{namespace}_session_starts", "LogMiner session starts and renewals"
        )
        self._session_retries = self._build_counter(
            f"{namespace}_session_start_retries", "LogMiner session start retries"
        )
        self._snapshot_rows = self._build_counter(
            f"{namespace}_snapshot_rows", "Rows read by the initial snapshot"
        )
        self._low_water_mark = self._build_gauge(
            f"{namespace}_low_water_mark_scn", "Highest fully delivered SCN"
        )
        self._window_size = self._build_gauge(
            f"{namespace}_window_size_scns", "Current SCN window size"
        )
        self._buffer_depth = self._build_gauge(
            f"{namespace}_buffer_depth", "Records waiting in the poll buffer"
        )
        self._snapshot: Dict[str, float] = defaultdict(float)

    def _build_counter(self, name: str, documentation: str) -> Counter:
        return Counter(name, documentation, registry=self.registry)

    def _build_gauge(self, name: str, documentation: str) -> Gauge:
        return Gauge(name, documentation, registry=self.registry)

    def _inc(self, counter: Counter, key: str, amount: int) -> None:
        if amount <= 0:
            return
        counter.inc(amount)
        self._snapshot[key] += amount

    def inc_records(self, amount: int = 1) -> None:
        self._inc(self._records, "records_total", amount)

    def inc_decode_errors(self, amount: int = 1) -> None:
        self._inc(self._decode_errors, "decode_errors_total", amount)

    def inc_windows(self, amount: int = 1) -> None:
        self._inc(self._windows, "windows_total", amount)

    def inc_window_retries(self, amount: int = 1) -> None:
        self._inc(self._window_retries, "window_retries_total", amount)

    def inc_session_starts(self, amount: int = 1) -> None:
        self._inc(self._session_starts, "session_starts_total", amount)

    def inc_session_retries(self, amount: int = 1) -> None:
        self._inc(self._session_retries, "session_start_retries_total", amount)

    def inc_snapshot_rows(self, amount: int = 1) -> None:
        self._inc(self._snapshot_rows, "snapshot_rows_total", amount)

    def set_low_water_mark(self, scn: int) -> None:
        self._low_water_mark.set(scn)
        self._snapshot["low_water_mark"] = scn

    def set_window_size(self, size: int) -> None:
        self._window_size.set(size)
        self._snapshot["window_size"] = size

    def set_buffer_depth(self, depth: int) -> None:
        self._buffer_depth.set(depth)
        self._snapshot["buffer_depth"] = depth

    def snapshot(self) -> Dict[str, float]:
        return dict(self._snapshot)


__all__ = ["CDCMetrics"]
