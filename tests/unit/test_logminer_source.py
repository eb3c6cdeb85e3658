from decimal import Decimal

import oracledb
import pytest

from logminer_cdc.cdc.errors import SessionStartError, WindowAdvanceError
from logminer_cdc.cdc.metrics import CDCMetrics
from logminer_cdc.cdc.offset import Offset
from logminer_cdc.cdc.records import Operation
from logminer_cdc.cdc.schema import ColumnDefinition
from logminer_cdc.cdc.snapshot import ROW_ID_COLUMN
from logminer_cdc.cdc.source import LogMinerSource, PollBuffer
from logminer_cdc.cdc.table import TableId

TEST_TAB = TableId("SIT", "TEST_TAB")
SECOND_TAB = TableId("SIT", "SECOND_TAB")
CONNECTION = object()


def _source(gateway, sleeps, tables=(TEST_TAB,), **kwargs):
    options = {
        "start_scn": 10,
        "gateway_factory": lambda connection: gateway,
        "default_window_size": 50,
        "min_window_size": 10,
        "max_window_size": 1000,
        "high_water_rows": 100,
        "lookback_scns": 0,
        "session_renew_windows": 0,
        "sleep": sleeps.append,
    }
    options.update(kwargs)
    return LogMinerSource(list(tables), **options)


def _seed_changes(gateway, statements, make_redo_row):
    # one transaction inserting rows 1..5, then an update and a delete
    for row_id in range(1, 6):
        gateway.add(
            make_redo_row(
                20 + row_id,
                1,
                statements.insert(row_id),
                sql_undo=statements.delete(row_id),
                commit_scn=30,
            )
        )
    gateway.add(
        make_redo_row(
            38,
            3,
            statements.update(3, old="Test", new="Changed"),
            sql_undo=statements.update_undo(3, old="Test", new="Changed"),
            commit_scn=40,
        ),
        make_redo_row(
            48,
            2,
            statements.delete(2),
            sql_undo=statements.insert(2),
            commit_scn=50,
        ),
    )


def _ids(results):
    records = [result.cdc_record for result in results]
    return [(record.after or record.before)["ID"] for record in records]


@pytest.mark.unit
def test_poll_before_start_is_rejected(gateway, sleeps):
    with pytest.raises(RuntimeError):
        _source(gateway, sleeps).poll()


@pytest.mark.unit
def test_insert_update_delete_are_captured_in_commit_order(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    source = _source(gateway, sleeps)

    source.maybe_start_query(CONNECTION)
    results = source.poll()

    assert [result.cdc_record.operation for result in results] == [
        Operation.INSERT,
        Operation.INSERT,
        Operation.INSERT,
        Operation.INSERT,
        Operation.INSERT,
        Operation.UPDATE,
        Operation.DELETE,
    ]
    assert _ids(results) == [1, 2, 3, 4, 5, 3, 2]
    assert [result.offset for result in results] == [
        Offset(30, 0),
        Offset(30, 1),
        Offset(30, 2),
        Offset(30, 3),
        Offset(30, 4),
        Offset(40, 0),
        Offset(50, 0),
    ]
    update = results[5].cdc_record
    assert update.before["STRING"] == "Test"
    assert update.after["STRING"] == "Changed"
    assert update.row_id == statements.rowid(3)
    delete = results[6].cdc_record
    assert delete.after is None
    assert delete.before["BIG_DECIMAL"] == Decimal("30.51665878295898400")
    assert source.current_offset == Offset(50, 0)
    assert gateway.started == [(10, 100), (10, 59)]


@pytest.mark.unit
def test_poll_returns_empty_batch_when_caught_up(gateway, sleeps, statements, make_redo_row):
    _seed_changes(gateway, statements, make_redo_row)
    source = _source(gateway, sleeps)
    source.maybe_start_query(CONNECTION)
    source.poll()

    assert source.poll() == []
    assert source.current_offset == Offset(50, 0)
    stats = source.stats()
    assert stats["low_water_mark"] == 100
    assert stats["buffered"] == 0


@pytest.mark.unit
def test_maybe_start_query_is_idempotent(gateway, sleeps):
    factory_calls = []

    def factory(connection):
        factory_calls.append(connection)
        return gateway

    source = _source(gateway, sleeps, gateway_factory=factory)
    source.maybe_start_query(CONNECTION)
    source.maybe_start_query(CONNECTION)

    assert factory_calls == [CONNECTION]
    assert gateway.started == [(10, 100)]
    assert source.started


@pytest.mark.unit
def test_empty_windows_do_not_block_and_grow(gateway, sleeps, statements, make_redo_row):
    gateway.add(make_redo_row(89, 1, statements.insert(1), commit_scn=90))
    source = _source(gateway, sleeps, max_windows_per_poll=1)
    source.maybe_start_query(CONNECTION)

    assert source.poll() == []
    assert source.stats()["window_size"] == 100

    results = source.poll()

    assert [result.offset for result in results] == [Offset(90, 0)]


@pytest.mark.unit
def test_max_batch_size_splits_window_across_polls(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    source = _source(gateway, sleeps, max_batch_size=3)
    source.maybe_start_query(CONNECTION)

    batches = [source.poll() for _ in range(3)]

    assert [len(batch) for batch in batches] == [3, 3, 1]
    offsets = [result.offset for batch in batches for result in batch]
    assert offsets == sorted(offsets)
    assert len(gateway.fetches) == 1
    assert source.current_offset == Offset(50, 0)


@pytest.mark.unit
def test_resume_redelivers_boundary_row_and_nothing_earlier(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    source = _source(gateway, sleeps, offset=Offset(30, 2, mining_scn=10))

    source.maybe_start_query(CONNECTION)
    results = source.poll()

    assert gateway.started[0] == (10, 100)
    assert results[0].offset == Offset(30, 2)
    assert _ids(results) == [3, 4, 5, 3, 2]


@pytest.mark.unit
def test_close_then_restart_resumes_from_current_offset(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    source = _source(gateway, sleeps, max_batch_size=2)
    source.maybe_start_query(CONNECTION)
    source.poll()

    source.close()

    assert gateway.ended == 1
    assert not source.started
    source.maybe_start_query(CONNECTION)
    results = source.poll()
    assert results[0].offset == Offset(30, 1)


@pytest.mark.unit
def test_transaction_open_across_restart_is_not_lost(
    gateway, sleeps, statements, make_redo_row
):
    # row 1 is written at scn 60 but only commits at 95, after rows 2 and 3
    gateway.scn = 75
    gateway.open_transaction_scn = 60
    gateway.add(make_redo_row(70, 1, statements.insert(2)))
    source = _source(gateway, sleeps)
    source.maybe_start_query(CONNECTION)

    assert _ids(source.poll()) == [2]
    assert source.stats()["mining_start_scn"] == 60

    gateway.scn = 90
    gateway.add(make_redo_row(85, 1, statements.insert(3)))
    results = source.poll()

    assert _ids(results) == [3]
    assert gateway.started[-1] == (60, 90)
    assert results[0].offset.mining_scn == 60

    source.close()
    gateway.add(make_redo_row(60, 1, statements.insert(1), commit_scn=95))
    gateway.open_transaction_scn = None
    gateway.scn = 100
    source.maybe_start_query(CONNECTION)
    results = source.poll()

    assert _ids(results) == [3, 1]
    assert gateway.started[-1] == (60, 100)
    assert source.stats()["mining_start_scn"] == 100


@pytest.mark.unit
def test_offset_without_mining_scn_resumes_with_lookback(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    source = _source(gateway, sleeps, offset=Offset(30, 2), lookback_scns=20)

    source.maybe_start_query(CONNECTION)
    results = source.poll()

    assert gateway.started[0] == (10, 100)
    assert _ids(results) == [3, 4, 5, 3, 2]


@pytest.mark.unit
def test_renewal_keeps_transactions_open_across_it(
    gateway, sleeps, statements, make_redo_row
):
    gateway.scn = 75
    gateway.open_transaction_scn = 60
    gateway.add(
        make_redo_row(60, 1, statements.insert(1), commit_scn=95),
        make_redo_row(70, 1, statements.insert(2)),
    )
    source = _source(gateway, sleeps, session_renew_windows=1)
    source.maybe_start_query(CONNECTION)

    assert _ids(source.poll()) == [2]

    gateway.open_transaction_scn = None
    gateway.scn = 100
    results = source.poll()

    assert _ids(results) == [1]
    assert gateway.started[-1] == (60, 100)
    assert gateway.ended == 2


@pytest.mark.unit
def test_rewind_requires_closed_source(gateway, sleeps, statements, make_redo_row):
    _seed_changes(gateway, statements, make_redo_row)
    source = _source(gateway, sleeps)
    source.maybe_start_query(CONNECTION)
    results = source.poll()

    with pytest.raises(RuntimeError):
        source.rewind(Offset(30, 0))

    rewind_to = results[5].offset
    source.close()
    source.rewind(rewind_to)
    source.maybe_start_query(CONNECTION)

    assert _ids(source.poll()) == [3, 2]


@pytest.mark.unit
def test_undecodable_rows_are_skipped_and_spike_reported(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    gateway.add(
        make_redo_row(
            34,
            1,
            'insert into "SIT"."TEST_TAB"("ID","NOPE") values (\'9\',\'x\');',
            commit_scn=35,
        )
    )
    spikes = []
    metrics = CDCMetrics()
    source = _source(
        gateway,
        sleeps,
        metrics=metrics,
        decode_error_threshold=0,
        warning_handler=spikes.append,
    )
    source.maybe_start_query(CONNECTION)

    results = source.poll()

    assert len(results) == 7
    assert Offset(35, 0) not in [result.offset for result in results]
    assert len(spikes) == 1
    assert (spikes[0].start_scn, spikes[0].end_scn, spikes[0].errors) == (10, 59, 1)
    assert "1 decode errors" in str(spikes[0])
    assert source.stats()["decode_errors"] == 1
    assert metrics.snapshot()["decode_errors_total"] == 1


@pytest.mark.unit
def test_transient_fetch_failure_is_retried_without_duplicates(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    gateway.fetch_failures = [ConnectionError("connection reset by peer")]
    metrics = CDCMetrics()
    source = _source(gateway, sleeps, metrics=metrics)
    source.maybe_start_query(CONNECTION)

    results = source.poll()

    assert _ids(results) == [1, 2, 3, 4, 5, 3, 2]
    assert sleeps == [0.5]
    assert len(gateway.fetches) == 2
    assert metrics.snapshot()["window_retries_total"] == 1


@pytest.mark.unit
def test_exhausted_window_retries_leave_position_untouched(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    gateway.fetch_failures = [ConnectionError("reset")] * 3
    source = _source(gateway, sleeps, fetch_attempts=3)
    source.maybe_start_query(CONNECTION)

    with pytest.raises(WindowAdvanceError) as excinfo:
        source.poll()

    assert (excinfo.value.start_scn, excinfo.value.end_scn) == (10, 59)
    assert source.current_offset is None
    assert source.stats()["low_water_mark"] == 9
    assert source.stats()["buffered"] == 0

    results = source.poll()
    assert _ids(results) == [1, 2, 3, 4, 5, 3, 2]


@pytest.mark.unit
def test_fatal_error_while_extending_surfaces_session_error(gateway, sleeps):
    source = _source(gateway, sleeps)
    source.maybe_start_query(CONNECTION)
    gateway.start_failures = [oracledb.DatabaseError("ORA-01291: missing logfile")]

    with pytest.raises(SessionStartError):
        source.poll()
    assert sleeps == []


@pytest.mark.unit
def test_purged_resume_point_fails_start(gateway, sleeps):
    gateway.oldest_scn = 500
    source = _source(gateway, sleeps, offset=Offset(30, 0))

    with pytest.raises(SessionStartError):
        source.maybe_start_query(CONNECTION)
    assert not source.started


@pytest.mark.unit
def test_statement_continuations_are_merged(gateway, sleeps, statements, make_redo_row):
    sql = statements.insert(4)
    gateway.add(
        make_redo_row(60, 1, sql[:40], commit_scn=61, csf=1),
        make_redo_row(60, 1, sql[40:], commit_scn=61),
    )
    source = _source(gateway, sleeps, start_scn=60)
    source.maybe_start_query(CONNECTION)

    results = source.poll()

    assert _ids(results) == [4]
    assert results[0].offset == Offset(61, 0)


@pytest.mark.unit
def test_dangling_continuation_counts_as_decode_error(
    gateway, sleeps, statements, make_redo_row
):
    gateway.add(make_redo_row(60, 1, statements.insert(4)[:40], commit_scn=61, csf=1))
    source = _source(gateway, sleeps, start_scn=60)
    source.maybe_start_query(CONNECTION)

    assert source.poll() == []
    assert source.stats()["decode_errors"] == 1


@pytest.mark.unit
def test_only_requested_tables_are_captured(gateway, sleeps, statements, make_redo_row):
    gateway.add(
        make_redo_row(
            30,
            1,
            'insert into "SIT"."SECOND_TAB"("ID","NAME") values (\'1\',\'other\');',
            table=SECOND_TAB,
        ),
        make_redo_row(31, 1, statements.insert(1)),
    )

    only_first = _source(gateway, sleeps)
    only_first.maybe_start_query(CONNECTION)
    assert [r.cdc_record.table for r in only_first.poll()] == [TEST_TAB]

    both = _source(gateway, sleeps, tables=("sit.second_tab", TEST_TAB))
    both.maybe_start_query(CONNECTION)
    assert [r.cdc_record.table for r in both.poll()] == [SECOND_TAB, TEST_TAB]


@pytest.mark.unit
def test_initial_snapshot_then_streaming(gateway, sleeps, statements, make_redo_row):
    gateway.snapshot[TEST_TAB] = [
        {ROW_ID_COLUMN: "AAAT1", "ID": Decimal("1"), "STRING": "a"},
        {ROW_ID_COLUMN: "AAAT2", "ID": Decimal("2"), "STRING": "b"},
    ]
    source = _source(gateway, sleeps, start_scn=None, initial_snapshot=True)
    source.maybe_start_query(CONNECTION)
    assert source.stats()["snapshot_in_progress"]

    snapshot = source.poll()

    assert [result.cdc_record.operation for result in snapshot] == [Operation.READ] * 2
    assert [result.offset for result in snapshot] == [
        Offset(100, 0, snapshot=True),
        Offset(100, 1, snapshot=True),
    ]
    assert not source.stats()["snapshot_in_progress"]
    assert gateway.started == []

    gateway.add(make_redo_row(104, 1, statements.insert(3), commit_scn=105))
    gateway.scn = 110
    streamed = source.poll()

    assert [result.offset for result in streamed] == [Offset(105, 0)]
    assert gateway.started == [(100, 110)]


@pytest.mark.unit
def test_snapshot_resumes_from_snapshot_offset(gateway, sleeps):
    gateway.snapshot[TEST_TAB] = [
        {ROW_ID_COLUMN: "AAAT1", "ID": Decimal("1")},
        {ROW_ID_COLUMN: "AAAT2", "ID": Decimal("2")},
        {ROW_ID_COLUMN: "AAAT3", "ID": Decimal("3")},
    ]
    source = _source(gateway, sleeps, offset=Offset(80, 1, snapshot=True))
    source.maybe_start_query(CONNECTION)

    results = source.poll()

    assert _ids(results) == [2, 3]
    assert gateway.snapshot_reads == [(TEST_TAB, 80)]


@pytest.mark.unit
def test_snapshot_read_failure_is_retried(gateway, sleeps):
    gateway.snapshot[TEST_TAB] = [{ROW_ID_COLUMN: "AAAT1", "ID": Decimal("1")}]
    gateway.snapshot_failures = [ConnectionError("reset")]
    source = _source(gateway, sleeps, initial_snapshot=True)
    source.maybe_start_query(CONNECTION)

    results = source.poll()

    assert _ids(results) == [1]
    assert results[0].offset == Offset(10, 0, snapshot=True)
    assert sleeps == [0.5]


@pytest.mark.unit
def test_schema_change_detector_triggers_refresh(gateway, sleeps, statements, make_redo_row):
    class _Detector:
        def __init__(self):
            self.pending = []

        def changed_tables(self, tables):
            changed, self.pending = self.pending, []
            return changed

    detector = _Detector()
    gateway.add(make_redo_row(30, 1, statements.insert(1)))
    source = _source(gateway, sleeps, schema_change_detector=detector)
    source.maybe_start_query(CONNECTION)
    first = source.poll()[0].cdc_record

    gateway.columns[TEST_TAB].append(ColumnDefinition("EXTRA", "VARCHAR2"))
    gateway.add(
        make_redo_row(
            70,
            1,
            'insert into "SIT"."TEST_TAB"("ID","EXTRA") values (\'9\',\'x\');',
        )
    )
    detector.pending = [TEST_TAB]
    second = source.poll()[0].cdc_record

    assert second.data_schema.version == 2
    assert second.after["EXTRA"] == "x"
    assert "EXTRA" not in first.after
    assert first.data_schema.version == 1


@pytest.mark.unit
def test_refresh_schema_requires_started_source(gateway, sleeps):
    source = _source(gateway, sleeps)

    with pytest.raises(RuntimeError):
        source.refresh_schema("SIT.TEST_TAB")

    source.maybe_start_query(CONNECTION)
    assert source.refresh_schema("SIT.TEST_TAB").field_names[0] == "ID"


@pytest.mark.unit
def test_session_is_renewed_after_configured_windows(
    gateway, sleeps, statements, make_redo_row
):
    _seed_changes(gateway, statements, make_redo_row)
    source = _source(gateway, sleeps, session_renew_windows=1)
    source.maybe_start_query(CONNECTION)

    source.poll()
    source.poll()

    assert gateway.started == [(10, 100), (10, 59), (10, 100)]
    assert gateway.ended == 2


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_batch_size": 0},
        {"max_windows_per_poll": 0},
        {"fetch_attempts": 0},
        {"session_renew_windows": -1},
    ],
)
def test_invalid_source_options(gateway, sleeps, kwargs):
    with pytest.raises(ValueError):
        _source(gateway, sleeps, **kwargs)
    with pytest.raises(ValueError):
        LogMinerSource([])


@pytest.mark.unit
def test_poll_buffer_rejects_decreasing_offsets(gateway, sleeps, statements, make_redo_row):
    gateway.add(make_redo_row(30, 1, statements.insert(1)), make_redo_row(31, 1, statements.insert(2)))
    source = _source(gateway, sleeps)
    source.maybe_start_query(CONNECTION)
    first, second = source.poll()
    buffer = PollBuffer()

    buffer.extend([first, second])
    with pytest.raises(ValueError):
        buffer.extend([first])

    assert buffer.last_offset == second.offset
    assert buffer.drain(1) == [first]
    assert len(buffer) == 1
    buffer.clear()
    assert buffer.last_offset is None
