"""Runtime configuration helpers for the LogMiner CDC runner."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    oracle_dsn: str
    oracle_user: str
    oracle_password: str
    cdc_tables: Tuple[str, ...]
    cdc_start_scn: Optional[int]
    cdc_initial_snapshot: bool
    cdc_window_size: int
    cdc_min_window_size: int
    cdc_max_window_size: int
    cdc_high_water_rows: int
    cdc_max_batch_size: int
    cdc_max_windows_per_poll: int
    cdc_fetch_size: int
    cdc_fetch_attempts: int
    cdc_session_start_attempts: int
    cdc_retry_base_delay_seconds: float
    cdc_retry_max_delay_seconds: float
    cdc_decode_error_threshold: int
    cdc_session_renew_windows: int
    cdc_transaction_lookback_scns: int
    cdc_default_number_scale: int
    cdc_checkpoint_backend: str
    cdc_offset_path: Path
    cdc_offset_fsync: bool
    cdc_source_name: str
    cdc_poll_interval_seconds: float
    cdc_output_path: Optional[Path] = None
    cdc_max_reconnects: int = 10


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _as_optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value.strip())


def _coerce_checkpoint_backend(value: Optional[str]) -> str:
    if value is None:
        return "file"
    normalized = value.strip().lower()
    if normalized in {"memory", "file"}:
        return normalized
    return "file"


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    oracle_dsn = os.getenv("ORACLE_DSN", "localhost:1521/ORCLPDB1")
    oracle_user = os.getenv("ORACLE_USER", "")
    oracle_password = os.getenv("ORACLE_PASSWORD", "")

    cdc_tables = _split_csv(os.getenv("CDC_TABLES"))
    cdc_start_scn = _as_optional_int(os.getenv("CDC_START_SCN"))
    cdc_initial_snapshot = _as_bool(os.getenv("CDC_INITIAL_SNAPSHOT"), False)

    cdc_window_size = int(os.getenv("CDC_WINDOW_SIZE", "10000"))
    cdc_min_window_size = int(os.getenv("CDC_MIN_WINDOW_SIZE", "100"))
    cdc_max_window_size = int(os.getenv("CDC_MAX_WINDOW_SIZE", "1000000"))
    cdc_high_water_rows = int(os.getenv("CDC_HIGH_WATER_ROWS", "5000"))
    cdc_max_batch_size = int(os.getenv("CDC_MAX_BATCH_SIZE", "1000"))
    cdc_max_windows_per_poll = int(os.getenv("CDC_MAX_WINDOWS_PER_POLL", "10"))
    cdc_fetch_size = int(os.getenv("CDC_FETCH_SIZE", "1000"))
    cdc_fetch_attempts = int(os.getenv("CDC_FETCH_ATTEMPTS", "3"))
    cdc_session_start_attempts = int(os.getenv("CDC_SESSION_START_ATTEMPTS", "5"))
    cdc_retry_base_delay_seconds = float(
        os.getenv("CDC_RETRY_BASE_DELAY_SECONDS", "0.5")
    )
    cdc_retry_max_delay_seconds = float(
        os.getenv("CDC_RETRY_MAX_DELAY_SECONDS", "30")
    )
    cdc_decode_error_threshold = int(os.getenv("CDC_DECODE_ERROR_THRESHOLD", "50"))
    cdc_session_renew_windows = int(os.getenv("CDC_SESSION_RENEW_WINDOWS", "500"))
    cdc_transaction_lookback_scns = int(
        os.getenv("CDC_TRANSACTION_LOOKBACK_SCNS", "10000")
    )
    cdc_default_number_scale = int(os.getenv("CDC_DEFAULT_NUMBER_SCALE", "10"))

    cdc_checkpoint_backend = _coerce_checkpoint_backend(
        os.getenv("CDC_CHECKPOINT_BACKEND")
    )
    cdc_offset_path = Path(os.getenv("CDC_OFFSET_PATH", "cdc_offsets.json"))
    cdc_offset_fsync = _as_bool(os.getenv("CDC_OFFSET_FSYNC"), False)
    cdc_source_name = os.getenv("CDC_SOURCE_NAME", "logminer").strip() or "logminer"
    cdc_poll_interval_seconds = float(os.getenv("CDC_POLL_INTERVAL_SECONDS", "1"))
    cdc_max_reconnects = int(os.getenv("CDC_MAX_RECONNECTS", "10"))
    output_path = os.getenv("CDC_OUTPUT_PATH", "").strip()

    return Settings(
        oracle_dsn=oracle_dsn,
        oracle_user=oracle_user,
        oracle_password=oracle_password,
        cdc_tables=cdc_tables,
        cdc_start_scn=cdc_start_scn,
        cdc_initial_snapshot=cdc_initial_snapshot,
        cdc_window_size=cdc_window_size,
        cdc_min_window_size=cdc_min_window_size,
        cdc_max_window_size=cdc_max_window_size,
        cdc_high_water_rows=cdc_high_water_rows,
        cdc_max_batch_size=cdc_max_batch_size,
        cdc_max_windows_per_poll=cdc_max_windows_per_poll,
        cdc_fetch_size=cdc_fetch_size,
        cdc_fetch_attempts=cdc_fetch_attempts,
        cdc_session_start_attempts=cdc_session_start_attempts,
        cdc_retry_base_delay_seconds=cdc_retry_base_delay_seconds,
        cdc_retry_max_delay_seconds=cdc_retry_max_delay_seconds,
        cdc_decode_error_threshold=cdc_decode_error_threshold,
        cdc_session_renew_windows=cdc_session_renew_windows,
        cdc_transaction_lookback_scns=cdc_transaction_lookback_scns,
        cdc_default_number_scale=cdc_default_number_scale,
        cdc_checkpoint_backend=cdc_checkpoint_backend,
        cdc_offset_path=cdc_offset_path,
        cdc_offset_fsync=cdc_offset_fsync,
        cdc_source_name=cdc_source_name,
        cdc_poll_interval_seconds=cdc_poll_interval_seconds,
        cdc_output_path=Path(output_path) if output_path else None,
        cdc_max_reconnects=cdc_max_reconnects,
    )
