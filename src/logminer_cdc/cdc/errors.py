"""Error taxonomy for the LogMiner engine and ORA code classification."""

from __future__ import annotations

import re
from typing import Optional

_CODE_PATTERN = re.compile(r"\b(ORA|DPI)-(\d{4,5})\b")

# Log range or flashback data no longer available; resuming here cannot succeed.
FATAL_CODES = frozenset(
    {
        "ORA-01291",  # missing logfile
        "ORA-01292",  # no log file has been specified for the current LogMiner session
        "ORA-01555",  # snapshot too old
        "ORA-08180",  # no snapshot found based on specified time
        "ORA-08181",  # specified number is not a valid system change number
        "ORA-01336",  # specified dictionary file cannot be opened
    }
)

TRANSIENT_CODES = frozenset(
    {
        "ORA-03113",  # end-of-file on communication channel
        "ORA-03114",  # not connected to ORACLE
        "ORA-03135",  # connection lost contact
        "ORA-12170",  # connect timeout occurred
        "ORA-12541",  # no listener
        "ORA-12543",  # destination host unreachable
        "ORA-25408",  # can not safely replay call
        "DPI-1080",  # connection was closed by ORA-%d
        "DPI-4011",  # the database or network closed the connection
    }
)


class LogMinerError(RuntimeError):
    """Base class for errors raised by the mining engine."""


class SessionStartError(LogMinerError):
    """The mining session cannot be started at the requested resume point.

    ``recoverable`` is ``False`` when retrying from the same position can
    never succeed (logs purged, flashback data gone).
    """

    def __init__(
        self,
        message: str,
        *,
        scn: Optional[int] = None,
        code: Optional[str] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.scn = scn
        self.code = code
        self.recoverable = recoverable


class WindowAdvanceError(LogMinerError):
    """Extending or querying the next SCN window failed after all retries."""

    def __init__(self, message: str, *, start_scn: int, end_scn: int) -> None:
        super().__init__(message)
        self.start_scn = start_scn
        self.end_scn = end_scn


class DecodeError(LogMinerError):
    """A single mined row could not be decoded against its table schema."""

    def __init__(
        self, message: str, *, scn: Optional[int] = None, table: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.scn = scn
        self.table = table


def error_code(exc: BaseException) -> Optional[str]:
    """Return the ``ORA-nnnnn``/``DPI-nnnn`` code carried by ``exc``, if any."""
    if exc.args:
        full_code = getattr(exc.args[0], "full_code", None)
        if isinstance(full_code, str) and full_code:
            return full_code
    match = _CODE_PATTERN.search(str(exc))
    if match is None:
        return None
    return f"{match.group(1)}-{match.group(2)}"


def is_fatal(exc: BaseException) -> bool:
    return error_code(exc) in FATAL_CODES


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return error_code(exc) in TRANSIENT_CODES


__all__ = [
    "DecodeError",
    "FATAL_CODES",
    "LogMinerError",
    "SessionStartError",
    "TRANSIENT_CODES",
    "WindowAdvanceError",
    "error_code",
    "is_fatal",
    "is_transient",
]
