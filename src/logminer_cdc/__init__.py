"""Change data capture from the Oracle redo log via LogMiner."""

from .cdc import (
    CdcRecord,
    LogMinerSource,
    Offset,
    Operation,
    PollResult,
    TableId,
)


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = [
    "CdcRecord",
    "LogMinerSource",
    "Offset",
    "Operation",
    "PollResult",
    "TableId",
    "main",
]
