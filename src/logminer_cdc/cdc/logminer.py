"""SQL issued against Oracle for LogMiner control, log discovery, and reads.

:class:`OracleLogMinerGateway` is the only place that talks to the database.
The session controller, snapshot reader and poll loop depend on the
:class:`LogMinerGateway` protocol so they can be tested without Oracle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from ..db import Connection, iter_dict_rows, prepare_session
from .schema import ColumnDefinition
from .table import TableId

logger = logging.getLogger(__name__)

DML_OPERATION_CODES = (1, 2, 3)

CONTENT_COLUMNS = (
    "SCN",
    "COMMIT_SCN",
    "OPERATION_CODE",
    "SEG_OWNER",
    "TABLE_NAME",
    "SQL_REDO",
    "SQL_UNDO",
    "XID",
    "ROW_ID",
    "RS_ID",
    "SSN",
    "CSF",
    "TIMESTAMP",
)


@dataclass(frozen=True)
class LogFile:
    """Redo or archived log file covering ``[first_scn, next_scn)``."""

    name: str
    first_scn: int
    next_scn: Optional[int]
    archived: bool


class LogMinerGateway(Protocol):
    """Database operations the mining engine needs."""

    def current_scn(self) -> int: ...

    def oldest_available_scn(self) -> Optional[int]: ...

    def oldest_open_transaction_scn(self) -> Optional[int]: ...

    def log_files(self, start_scn: int) -> Sequence[LogFile]: ...

    def start_logminer(
        self, start_scn: int, end_scn: int, log_files: Sequence[LogFile]
    ) -> None: ...

    def end_logminer(self) -> None: ...

    def fetch_contents(
        self, tables: Sequence[TableId], start_scn: int, end_scn: int
    ) -> Iterable[Mapping[str, Any]]: ...

    def column_metadata(self, table: TableId) -> Sequence[ColumnDefinition]: ...

    def snapshot_rows(
        self, table: TableId, columns: Sequence[str], scn: int
    ) -> Iterable[Mapping[str, Any]]: ...


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class OracleLogMinerGateway:
    """:class:`LogMinerGateway` backed by a python-oracledb connection."""

    def __init__(
        self,
        connection: Connection,
        *,
        fetch_size: int = 1000,
        prepare: bool = True,
    ) -> None:
        self._connection = connection
        self._fetch_size = max(1, fetch_size)
        if prepare:
            prepare_session(connection)

    @property
    def connection(self) -> Connection:
        return self._connection

    def current_scn(self) -> int:
        with self._connection.cursor() as cursor:
            cursor.execute("SELECT CURRENT_SCN FROM V$DATABASE")
            row = cursor.fetchone()
        if row is None or row[0] is None:
            raise RuntimeError("V$DATABASE returned no current SCN")
        return int(row[0])

    def oldest_available_scn(self) -> Optional[int]:
        with self._connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT MIN(FIRST_CHANGE#) FROM (
                    SELECT FIRST_CHANGE# FROM V$ARCHIVED_LOG
                     WHERE NAME IS NOT NULL AND DELETED = 'NO' AND STATUS = 'A'
                    UNION ALL
                    SELECT FIRST_CHANGE# FROM V$LOG
                )
                """
            )
            row = cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return int(row[0])

    def oldest_open_transaction_scn(self) -> Optional[int]:
        with self._connection.cursor() as cursor:
            cursor.execute("SELECT MIN(START_SCN) FROM V$TRANSACTION")
            row = cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return int(row[0])

    def log_files(self, start_scn: int) -> List[LogFile]:
        files: Dict[int, LogFile] = {}
        for row in iter_dict_rows(
            self._connection,
            """
            SELECT NAME, FIRST_CHANGE#, NEXT_CHANGE#
              FROM V$ARCHIVED_LOG
             WHERE NAME IS NOT NULL
               AND DELETED = 'NO'
               AND STATUS = 'A'
               AND NEXT_CHANGE# > :start_scn
               AND DEST_ID IN (
                   SELECT DEST_ID FROM V$ARCHIVE_DEST_STATUS
                    WHERE STATUS = 'VALID' AND TYPE = 'LOCAL' AND ROWNUM = 1
               )
             ORDER BY FIRST_CHANGE#
            """,
            {"start_scn": start_scn},
        ):
            first = int(row["FIRST_CHANGE#"])
            files.setdefault(
                first,
                LogFile(
                    name=row["NAME"],
                    first_scn=first,
                    next_scn=int(row["NEXT_CHANGE#"]),
                    archived=True,
                ),
            )
        for row in iter_dict_rows(
            self._connection,
            """
            SELECT MIN(F.MEMBER) AS NAME, L.FIRST_CHANGE#, L.NEXT_CHANGE#, L.STATUS
              FROM V$LOG L
              JOIN V$LOGFILE F ON F.GROUP# = L.GROUP#
             WHERE L.STATUS IN ('CURRENT', 'ACTIVE', 'INACTIVE')
               AND (L.NEXT_CHANGE# IS NULL OR L.NEXT_CHANGE# > :start_scn)
             GROUP BY L.GROUP#, L.FIRST_CHANGE#, L.NEXT_CHANGE#, L.STATUS
            """,
            {"start_scn": start_scn},
        ):
            first = int(row["FIRST_CHANGE#"])
            if first in files:
                # archived copy of this log is already registered
                continue
            next_change = row["NEXT_CHANGE#"]
            files[first] = LogFile(
                name=row["NAME"],
                first_scn=first,
                next_scn=int(next_change) if next_change is not None else None,
                archived=False,
            )
        return [files[key] for key in sorted(files)]

    def start_logminer(
        self, start_scn: int, end_scn: int, log_files: Sequence[LogFile]
    ) -> None:
        if not log_files:
            raise ValueError("at least one log file is required to start LogMiner")
        with self._connection.cursor() as cursor:
            for index, log_file in enumerate(log_files):
                cursor.execute(
                    """
                    BEGIN
                        DBMS_LOGMNR.ADD_LOGFILE(
                            LOGFILENAME => :name,
                            OPTIONS => CASE WHEN :first = 1
                                            THEN DBMS_LOGMNR.NEW
                                            ELSE DBMS_LOGMNR.ADDFILE END);
                    END;
                    """,
                    {"name": log_file.name, "first": 1 if index == 0 else 0},
                )
            cursor.execute(
                """
                BEGIN
                    DBMS_LOGMNR.START_LOGMNR(
                        STARTSCN => :start_scn,
                        ENDSCN => :end_scn,
                        OPTIONS => DBMS_LOGMNR.DICT_FROM_ONLINE_CATALOG
                                 + DBMS_LOGMNR.COMMITTED_DATA_ONLY);
                END;
                """,
                {"start_scn": start_scn, "end_scn": end_scn},
            )
        logger.debug(
            "LogMiner started for scn %d..%d over %d log files",
            start_scn,
            end_scn,
            len(log_files),
        )

    def end_logminer(self) -> None:
        with self._connection.cursor() as cursor:
            cursor.execute("BEGIN DBMS_LOGMNR.END_LOGMNR; END;")

    def fetch_contents(
        self, tables: Sequence[TableId], start_scn: int, end_scn: int
    ) -> Iterator[Dict[str, Any]]:
        params: Dict[str, Any] = {"start_scn": start_scn, "end_scn": end_scn}
        table_filters: List[str] = []
        for index, table in enumerate(tables):
            params[f"owner{index}"] = table.owner
            params[f"table{index}"] = table.table
            table_filters.append(
                f"(SEG_OWNER = :owner{index} AND TABLE_NAME = :table{index})"
            )
        if not table_filters:
            return iter(())
        codes = ", ".join(str(code) for code in DML_OPERATION_CODES)
        statement = f"""
            SELECT {", ".join(CONTENT_COLUMNS)}
              FROM V$LOGMNR_CONTENTS
             WHERE COMMIT_SCN >= :start_scn
               AND COMMIT_SCN <= :end_scn
               AND OPERATION_CODE IN ({codes})
               AND ({" OR ".join(table_filters)})
             ORDER BY COMMIT_SCN, SCN, RS_ID, SSN
        """
        return iter_dict_rows(
            self._connection, statement, params, arraysize=self._fetch_size
        )

    def column_metadata(self, table: TableId) -> List[ColumnDefinition]:
        columns: List[ColumnDefinition] = []
        for row in iter_dict_rows(
            self._connection,
            """
            SELECT COLUMN_NAME, DATA_TYPE, DATA_PRECISION, DATA_SCALE,
                   NULLABLE, CHAR_LENGTH
              FROM ALL_TAB_COLUMNS
             WHERE OWNER = :owner AND TABLE_NAME = :table_name
             ORDER BY COLUMN_ID
            """,
            {"owner": table.owner, "table_name": table.table},
        ):
            precision = row["DATA_PRECISION"]
            scale = row["DATA_SCALE"]
            char_length = row["CHAR_LENGTH"]
            columns.append(
                ColumnDefinition(
                    name=row["COLUMN_NAME"],
                    data_type=row["DATA_TYPE"],
                    precision=int(precision) if precision is not None else None,
                    scale=int(scale) if scale is not None else None,
                    nullable=row["NULLABLE"] != "N",
                    char_length=int(char_length) if char_length else None,
                )
            )
        return columns

    def snapshot_rows(
        self, table: TableId, columns: Sequence[str], scn: int
    ) -> Iterator[Dict[str, Any]]:
        column_list = ", ".join(_quote(name) for name in columns)
        statement = (
            f"SELECT ROWIDTOCHAR(ROWID) AS ROW_ID$, {column_list} "
            f"FROM {table.full_name} AS OF SCN :scn ORDER BY ROWID"
        )
        return iter_dict_rows(
            self._connection,
            statement,
            {"scn": scn},
            arraysize=self._fetch_size,
            typed=True,
        )


__all__ = [
    "CONTENT_COLUMNS",
    "DML_OPERATION_CODES",
    "LogFile",
    "LogMinerGateway",
    "OracleLogMinerGateway",
]
