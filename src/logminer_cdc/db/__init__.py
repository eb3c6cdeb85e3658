"""Database utilities and python-oracledb helpers for the LogMiner engine."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional, Sequence

import oracledb
from oracledb import DatabaseError, Error, InterfaceError, OperationalError

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from logminer_cdc.config import Settings

Connection = oracledb.Connection

# Literal formats LogMiner uses when rendering SQL_REDO; the decoder parses these.
SESSION_SETTINGS: Dict[str, str] = {
    "NLS_DATE_FORMAT": "YYYY-MM-DD HH24:MI:SS",
    "NLS_TIMESTAMP_FORMAT": "YYYY-MM-DD HH24:MI:SS.FF",
    "NLS_TIMESTAMP_TZ_FORMAT": "YYYY-MM-DD HH24:MI:SS.FF TZH:TZM",
    "NLS_NUMERIC_CHARACTERS": ".,",
    "TIME_ZONE": "+00:00",
}


def prepare_session(connection: Connection) -> None:
    """Apply the NLS settings the redo decoder relies on."""

    with connection.cursor() as cursor:
        for name, value in SESSION_SETTINGS.items():
            cursor.execute(f"ALTER SESSION SET {name} = '{value}'")


def output_type_handler(cursor: Any, metadata: Any) -> Any:
    """Fetch NUMBER as Decimal and LOBs inline, so values keep full precision."""

    if metadata.type_code is oracledb.DB_TYPE_NUMBER:
        return cursor.var(Decimal, arraysize=cursor.arraysize)
    if metadata.type_code in (oracledb.DB_TYPE_CLOB, oracledb.DB_TYPE_NCLOB):
        return cursor.var(oracledb.DB_TYPE_LONG, arraysize=cursor.arraysize)
    if metadata.type_code is oracledb.DB_TYPE_BLOB:
        return cursor.var(oracledb.DB_TYPE_LONG_RAW, arraysize=cursor.arraysize)
    return None


def iter_dict_rows(
    connection: Connection,
    statement: str,
    params: Optional[Dict[str, Any]] = None,
    *,
    arraysize: int = 500,
    typed: bool = False,
) -> Iterator[Dict[str, Any]]:
    """Execute ``statement`` and yield rows as dicts keyed by column name."""

    cursor = connection.cursor()
    try:
        cursor.arraysize = arraysize
        cursor.prefetchrows = arraysize + 1
        if typed:
            cursor.outputtypehandler = output_type_handler
        cursor.execute(statement, params or {})
        names: Sequence[str] = [column[0] for column in cursor.description or ()]
        while True:
            rows = cursor.fetchmany()
            if not rows:
                break
            for row in rows:
                yield dict(zip(names, row))
    finally:
        cursor.close()


def connect(*, user: str, password: str, dsn: str, **kwargs: Any) -> Connection:
    """Open a python-oracledb connection (thin mode)."""

    return oracledb.connect(user=user, password=password, dsn=dsn, **kwargs)


def connect_from_settings(settings: "Settings") -> Connection:
    """Create a connection using the provided service settings."""

    return connect(
        user=settings.oracle_user,
        password=settings.oracle_password,
        dsn=settings.oracle_dsn,
    )


__all__ = [
    "Connection",
    "DatabaseError",
    "Error",
    "InterfaceError",
    "OperationalError",
    "SESSION_SETTINGS",
    "connect",
    "connect_from_settings",
    "iter_dict_rows",
    "output_type_handler",
    "prepare_session",
]
