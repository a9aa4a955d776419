"""
Migration runner tests.

Every runner here works through pinned(conn): the runner closes its
connection after each step, and an in-memory store would otherwise vanish
between steps.
"""

import pytest
import pytest_asyncio

from dbtarget.data.connection import ConnectionMode, pinned
from dbtarget.data.migrations import (
    CORE,
    INDEX,
    MigrationRunner,
    MigrationStep,
    discover_steps,
    migrate_down,
    migrate_up,
)
from dbtarget.data.migrations.migration_runner import DEFAULT_SQL_DIR, split_statements
from dbtarget.errors import DuplicateMigrationId, MigrationFailed


async def _tables(conn) -> set:
    async with conn.execute("SELECT name FROM sqlite_master WHERE type='table'") as cursor:
        return {row[0] for row in await cursor.fetchall()}


async def _indexes(conn) -> set:
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name LIKE 'IX_%'"
    ) as cursor:
        return {row[0] for row in await cursor.fetchall()}


async def _schema_versions(conn) -> list:
    async with conn.execute(
        "SELECT Namespace, StepId FROM SchemaVersions ORDER BY rowid"
    ) as cursor:
        return [tuple(row) for row in await cursor.fetchall()]


@pytest_asyncio.fixture
async def conn(provider):
    handle = await provider.open(ConnectionMode.ISOLATED)
    yield handle
    await handle.close()


def test_packaged_steps_are_discovered_in_order():
    assert [s.step_id for s in discover_steps(DEFAULT_SQL_DIR)] == ["001_log_lines", "002_metrics"]
    assert [s.step_id for s in discover_steps(DEFAULT_SQL_DIR / "index")] == [
        "101_log_lines_reading",
        "102_metrics_reading",
    ]


def test_split_statements_ignores_comments():
    sql = "-- header\nCREATE TABLE a (x INT);\nCREATE INDEX i ON a (x);\n"
    assert split_statements(sql) == ["CREATE TABLE a (x INT);", "CREATE INDEX i ON a (x);"]


def test_duplicate_step_ids_rejected_at_construction():
    steps = [MigrationStep("001_a", "CREATE TABLE a (x INT);", "DROP TABLE a;")]
    index_steps = [MigrationStep("001_a", "CREATE INDEX i ON a (x);", "DROP INDEX i;")]

    async def never_called():
        raise AssertionError("runner must not connect while validating steps")

    with pytest.raises(DuplicateMigrationId) as excinfo:
        MigrationRunner(never_called, steps=steps, index_steps=index_steps)
    assert excinfo.value.step_id == "001_a"


@pytest.mark.asyncio
async def test_migrate_up_creates_tables_and_records_versions(conn):
    applied = await migrate_up(conn)

    assert applied == ["001_log_lines", "002_metrics"]
    assert {"LogLines", "Metrics", "SchemaVersions"} <= await _tables(conn)
    assert await _schema_versions(conn) == [(CORE, "001_log_lines"), (CORE, "002_metrics")]
    assert await _indexes(conn) == set()


@pytest.mark.asyncio
async def test_second_migrate_up_performs_no_writes(conn):
    await migrate_up(conn, include_index=True)
    versions_before = await _schema_versions(conn)
    changes_before = conn.total_changes

    assert await migrate_up(conn, include_index=True) == []

    assert conn.total_changes == changes_before
    assert await _schema_versions(conn) == versions_before


@pytest.mark.asyncio
async def test_index_steps_toggle_without_core_version_change(conn):
    runner = MigrationRunner(pinned(conn))
    await runner.migrate_up()
    core_version = await runner.current_version()

    assert await runner.migrate_up(include_index=True) == ["101_log_lines_reading", "102_metrics_reading"]
    assert await _indexes(conn) == {
        "IX_LogLines_Host_Timestamp",
        "IX_LogLines_Level",
        "IX_Metrics_Path_Timestamp",
    }
    assert await runner.current_version() == core_version == "002_metrics"
    assert await runner.applied_steps(INDEX) == ["101_log_lines_reading", "102_metrics_reading"]

    # Down with indexes reverts the latest index step first, then the latest core step
    assert await runner.migrate_down(include_index=True) == ["102_metrics_reading", "002_metrics"]
    assert await _indexes(conn) == {"IX_LogLines_Host_Timestamp", "IX_LogLines_Level"}
    assert await runner.current_version() == "001_log_lines"


@pytest.mark.asyncio
async def test_migrate_down_until_empty_then_noop(conn):
    await migrate_up(conn, include_index=True)

    reverted = []
    while True:
        step_ids = await migrate_down(conn, include_index=True)
        if not step_ids:
            break
        reverted.extend(step_ids)

    assert reverted == ["102_metrics_reading", "002_metrics", "101_log_lines_reading", "001_log_lines"]
    assert await _schema_versions(conn) == []
    assert "LogLines" not in await _tables(conn)
    assert "Metrics" not in await _tables(conn)

    assert await migrate_down(conn) == []
    assert await _schema_versions(conn) == []


@pytest.mark.asyncio
async def test_failed_step_is_left_unrecorded_and_halts(conn):
    steps = [
        MigrationStep("001_alpha", "CREATE TABLE alpha (x INT);", "DROP TABLE alpha;"),
        MigrationStep("002_broken", "CREATE TABLE beta (x INT);\nCREATE TABL oops;", "DROP TABLE beta;"),
        MigrationStep("003_later", "CREATE TABLE gamma (x INT);", "DROP TABLE gamma;"),
    ]
    runner = MigrationRunner(pinned(conn), steps=steps, index_steps=[])

    with pytest.raises(MigrationFailed) as excinfo:
        await runner.migrate_up()

    assert excinfo.value.step_id == "002_broken"
    assert excinfo.value.cause is not None
    assert await runner.applied_steps() == ["001_alpha"]
    tables = await _tables(conn)
    # The broken step rolled back as a unit, the later step never ran
    assert "alpha" in tables
    assert "beta" not in tables
    assert "gamma" not in tables

    fixed = steps[:1] + [
        MigrationStep("002_broken", "CREATE TABLE beta (x INT);", "DROP TABLE beta;"),
        steps[2],
    ]
    retry = MigrationRunner(pinned(conn), steps=fixed, index_steps=[])
    assert await retry.migrate_up() == ["002_broken", "003_later"]


@pytest.mark.asyncio
async def test_runner_closes_connection_after_every_step(conn):
    closes = []

    class CountingClose:
        def __init__(self, inner):
            self._inner = inner

        def __getattr__(self, name):
            return getattr(self._inner, name)

        async def close(self):
            closes.append(1)

    pin = pinned(conn)

    async def connect():
        return CountingClose(await pin())

    runner = MigrationRunner(connect)
    await runner.migrate_up()

    # One read of the applied set plus one connection per step, each closed
    assert len(closes) == 1 + len(runner.steps)
    assert "Metrics" in await _tables(conn)


@pytest.mark.asyncio
async def test_history_lists_both_namespaces(conn):
    runner = MigrationRunner(pinned(conn))
    assert await runner.history() == []
    assert await runner.current_version() is None

    await runner.migrate_up(include_index=True)
    history = await runner.history()

    assert [(h["namespace"], h["step_id"]) for h in history] == [
        (CORE, "001_log_lines"),
        (CORE, "002_metrics"),
        (INDEX, "101_log_lines_reading"),
        (INDEX, "102_metrics_reading"),
    ]
    assert all(h["applied_at"] for h in history)


def test_index_steps_declare_their_core_step():
    index_steps = discover_steps(DEFAULT_SQL_DIR / "index")
    assert {s.step_id: s.depends_on for s in index_steps} == {
        "101_log_lines_reading": "001_log_lines",
        "102_metrics_reading": "002_metrics",
    }


@pytest.mark.asyncio
async def test_core_down_reverts_dependent_index_and_up_rebuilds_it(conn):
    runner = MigrationRunner(pinned(conn))
    await runner.migrate_up(include_index=True)

    # Without the index flag, the index built on Metrics still goes down with it
    assert await runner.migrate_down() == ["102_metrics_reading", "002_metrics"]
    assert await runner.applied_steps(INDEX) == ["101_log_lines_reading"]
    assert "IX_Metrics_Path_Timestamp" not in await _indexes(conn)

    assert await runner.migrate_up(include_index=True) == ["002_metrics", "102_metrics_reading"]
    assert await _indexes(conn) == {
        "IX_LogLines_Host_Timestamp",
        "IX_LogLines_Level",
        "IX_Metrics_Path_Timestamp",
    }
