"""Test session configuration and shared LogMiner fakes.

The project `.env` is loaded once so integration tests can read `ORACLE_*`
settings without exporting them manually.  Unit tests drive the engine
through :class:`FakeLogMinerGateway`, an in-memory stand-in for
``V$LOGMNR_CONTENTS`` and the LogMiner control procedures.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Sequence

import pytest
from dotenv import load_dotenv

from logminer_cdc.cdc.logminer import LogFile
from logminer_cdc.cdc.schema import ColumnDefinition
from logminer_cdc.cdc.table import TableId

TEST_TAB = TableId("SIT", "TEST_TAB")
SECOND_TAB = TableId("SIT", "SECOND_TAB")

TEST_TAB_COLUMNS = [
    ColumnDefinition("ID", "NUMBER", precision=8, scale=0, nullable=False),
    ColumnDefinition("TIME", "TIMESTAMP(6)"),
    ColumnDefinition("STRING", "NVARCHAR2", char_length=255),
    ColumnDefinition("integer", "NUMBER", precision=10, scale=0),
    ColumnDefinition("long", "NUMBER", precision=19, scale=0),
    ColumnDefinition("date", "DATE"),
    ColumnDefinition("BIG_DECIMAL", "NUMBER", precision=38, scale=17),
]

SECOND_TAB_COLUMNS = [
    ColumnDefinition("ID", "NUMBER", precision=8, scale=0, nullable=False),
    ColumnDefinition("NAME", "VARCHAR2", char_length=50),
]

_COLUMN_LIST = '"ID","TIME","STRING","integer","long","date","BIG_DECIMAL"'
_TIME = "TO_TIMESTAMP('2024-05-01 10:11:12.123456')"
_DATE = "TO_DATE('2024-05-01 00:00:00', 'YYYY-MM-DD HH24:MI:SS')"


class TestTabStatements:
    """Builds SQL_REDO/SQL_UNDO text the way LogMiner renders it."""

    __test__ = False

    def values(self, row_id: int, text: str = "Test") -> str:
        return (
            f"'{row_id}',{_TIME},'{text}','123456','183456',{_DATE},"
            "'30.516658782958984'"
        )

    def where(self, row_id: int, text: str = "Test") -> str:
        return (
            f"\"ID\" = '{row_id}' and \"TIME\" = {_TIME} and \"STRING\" = '{text}' "
            f"and \"integer\" = '123456' and \"long\" = '183456' and \"date\" = {_DATE} "
            f"and \"BIG_DECIMAL\" = '30.516658782958984' and ROWID = '{self.rowid(row_id)}'"
        )

    @staticmethod
    def rowid(row_id: int) -> str:
        return f"AAAR3sAAEAAAACXAA{chr(ord('A') + row_id)}"

    def insert(self, row_id: int, text: str = "Test") -> str:
        return (
            f'insert into "SIT"."TEST_TAB"({_COLUMN_LIST}) '
            f"values ({self.values(row_id, text)});"
        )

    def update(self, row_id: int, old: str, new: str) -> str:
        return (
            f"update \"SIT\".\"TEST_TAB\" set \"STRING\" = '{new}' "
            f"where {self.where(row_id, old)};"
        )

    def update_undo(self, row_id: int, old: str, new: str) -> str:
        return (
            f"update \"SIT\".\"TEST_TAB\" set \"STRING\" = '{old}' "
            f"where \"ID\" = '{row_id}' and \"STRING\" = '{new}' "
            f"and ROWID = '{self.rowid(row_id)}';"
        )

    def delete(self, row_id: int, text: str = "Test") -> str:
        return f'delete from "SIT"."TEST_TAB" where {self.where(row_id, text)};'


def make_row(
    scn: int,
    operation_code: int,
    sql_redo: str,
    *,
    sql_undo: Optional[str] = None,
    commit_scn: Optional[int] = None,
    table: TableId = TEST_TAB,
    xid: str = "0A001B00C1030000",
    rs_id: str = " 0x00000a.00000b12.0010 ",
    ssn: int = 0,
    csf: int = 0,
    row_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "SCN": scn,
        "COMMIT_SCN": commit_scn if commit_scn is not None else scn,
        "OPERATION_CODE": operation_code,
        "SEG_OWNER": table.owner,
        "TABLE_NAME": table.table,
        "SQL_REDO": sql_redo,
        "SQL_UNDO": sql_undo,
        "XID": xid,
        "ROW_ID": row_id,
        "RS_ID": rs_id,
        "SSN": ssn,
        "CSF": csf,
        "TIMESTAMP": None,
    }


class FakeLogMinerGateway:
    """In-memory LogMiner.

    Rows are filtered by commit SCN like the real view, and rows whose redo
    lies below the STARTSCN of the running LogMiner are invisible.
    """

    def __init__(
        self,
        *,
        current_scn: int = 100,
        oldest_scn: Optional[int] = 1,
        columns: Optional[Dict[TableId, List[ColumnDefinition]]] = None,
    ) -> None:
        self.scn = current_scn
        self.oldest_scn = oldest_scn
        self.open_transaction_scn: Optional[int] = None
        self.columns = columns or {
            TEST_TAB: list(TEST_TAB_COLUMNS),
            SECOND_TAB: list(SECOND_TAB_COLUMNS),
        }
        self.rows: List[Dict[str, Any]] = []
        self.snapshot: Dict[TableId, List[Dict[str, Any]]] = {}
        self.files: List[LogFile] = [LogFile("/redo/redo01.log", 1, None, False)]
        self.started: List[tuple[int, int]] = []
        self.ended = 0
        self.fetches: List[tuple[int, int]] = []
        self.snapshot_reads: List[tuple[TableId, int]] = []
        self.fetch_failures: List[BaseException] = []
        self.start_failures: List[BaseException] = []
        self.snapshot_failures: List[BaseException] = []
        self.metadata_calls = 0

    def add(self, *rows: Dict[str, Any]) -> None:
        self.rows.extend(rows)

    def current_scn(self) -> int:
        return self.scn

    def oldest_available_scn(self) -> Optional[int]:
        return self.oldest_scn

    def oldest_open_transaction_scn(self) -> Optional[int]:
        return self.open_transaction_scn

    def log_files(self, start_scn: int) -> List[LogFile]:
        return list(self.files)

    def start_logminer(
        self, start_scn: int, end_scn: int, log_files: Sequence[LogFile]
    ) -> None:
        if self.start_failures:
            raise self.start_failures.pop(0)
        self.started.append((start_scn, end_scn))

    def end_logminer(self) -> None:
        self.ended += 1

    def fetch_contents(
        self, tables: Sequence[TableId], start_scn: int, end_scn: int
    ) -> Iterator[Dict[str, Any]]:
        self.fetches.append((start_scn, end_scn))
        failure = self.fetch_failures.pop(0) if self.fetch_failures else None
        wanted = {(table.owner, table.table) for table in tables}
        mined_from = self.started[-1][0] if self.started else 0
        rows = [
            row
            for row in self.rows
            if start_scn <= row["COMMIT_SCN"] <= end_scn
            and row["SCN"] >= mined_from
            and (row["SEG_OWNER"], row["TABLE_NAME"]) in wanted
        ]
        rows.sort(key=lambda row: (row["COMMIT_SCN"], row["SCN"], row["RS_ID"], row["SSN"]))
        return self._iterate(rows, failure)

    @staticmethod
    def _iterate(
        rows: List[Dict[str, Any]], failure: Optional[BaseException]
    ) -> Iterator[Dict[str, Any]]:
        for index, row in enumerate(rows):
            if failure is not None and index == 1:
                raise failure
            yield dict(row)
        if failure is not None:
            raise failure

    def column_metadata(self, table: TableId) -> List[ColumnDefinition]:
        self.metadata_calls += 1
        return list(self.columns.get(table, []))

    def snapshot_rows(
        self, table: TableId, columns: Sequence[str], scn: int
    ) -> Iterator[Dict[str, Any]]:
        self.snapshot_reads.append((table, scn))
        if self.snapshot_failures:
            raise self.snapshot_failures.pop(0)
        return iter([dict(row) for row in self.snapshot.get(table, [])])


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    # Load once per test session; no error if .env is absent.
    load_dotenv()


@pytest.fixture
def gateway() -> FakeLogMinerGateway:
    return FakeLogMinerGateway()


@pytest.fixture
def statements() -> TestTabStatements:
    return TestTabStatements()


@pytest.fixture
def make_redo_row():
    return make_row


@pytest.fixture
def fake_gateway_cls():
    return FakeLogMinerGateway


@pytest.fixture
def sleeps() -> List[float]:
    """Collects requested sleep delays; pass ``sleeps.append`` as ``sleep``."""
    return []
