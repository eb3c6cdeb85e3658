"""LogMiner session handling, redo decoding, and resumable polling."""

from .backoff import BackoffExhausted, ExponentialBackoff
from .checkpoint import InMemoryOffsetStore, OffsetStore, PersistentOffsetStore
from .decoder import RawLogRow, RedoDecoder
from .errors import (
    DecodeError,
    LogMinerError,
    SessionStartError,
    WindowAdvanceError,
    is_fatal,
    is_transient,
)
from .logminer import LogFile, LogMinerGateway, OracleLogMinerGateway
from .metrics import CDCMetrics
from .offset import Offset
from .records import CdcRecord, Operation, PollResult
from .schema import (
    ColumnDefinition,
    FieldSchema,
    SchemaMapper,
    SchemaRegistry,
    SchemaType,
    ValueSchema,
)
from .session import LogMinerSessionController, SessionHandle
from .snapshot import SnapshotReader
from .source import DecodeErrorSpike, LogMinerSource, PollBuffer
from .table import TableId
from .window import ScnWindow, ScnWindowAdvancer

__all__ = [
    "BackoffExhausted",
    "CDCMetrics",
    "CdcRecord",
    "ColumnDefinition",
    "DecodeError",
    "DecodeErrorSpike",
    "ExponentialBackoff",
    "FieldSchema",
    "InMemoryOffsetStore",
    "LogFile",
    "LogMinerError",
    "LogMinerGateway",
    "LogMinerSessionController",
    "LogMinerSource",
    "Offset",
    "OffsetStore",
    "Operation",
    "OracleLogMinerGateway",
    "PersistentOffsetStore",
    "PollBuffer",
    "PollResult",
    "RawLogRow",
    "RedoDecoder",
    "SchemaMapper",
    "SchemaRegistry",
    "SchemaType",
    "ScnWindow",
    "ScnWindowAdvancer",
    "SessionHandle",
    "SessionStartError",
    "SnapshotReader",
    "TableId",
    "ValueSchema",
    "WindowAdvanceError",
    "is_fatal",
    "is_transient",
]
