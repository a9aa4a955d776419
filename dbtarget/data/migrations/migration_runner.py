"""
Migration Runner - Applies and Reverts Database Schema Changes

This module handles discovery, ordering, and execution of migration steps.
Index steps are tracked in their own namespace, so toggling the read indexes
never changes the recorded core schema version.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from dbtarget.data.connection import ConnectionFactory, pinned
from dbtarget.errors import DuplicateMigrationId, MigrationFailed

logger = logging.getLogger(__name__)

DEFAULT_SQL_DIR = Path(__file__).parent / "sql"

CORE = "core"
INDEX = "index"

SCHEMA_TABLE = "SchemaVersions"

DEPENDS_PATTERN = re.compile(r"^--\s*depends:\s*(\S+)\s*$", re.MULTILINE)


@dataclass(frozen=True)
class MigrationStep:
    """A reversible schema change."""

    step_id: str  # Unique id, e.g. "001_log_lines"
    up_sql: str
    down_sql: str
    filepath: Optional[Path] = None
    # Core step this (index) step builds on; reverting that step reverts this one first
    depends_on: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.step_id


def split_statements(sql: str) -> List[str]:
    """
    Split a script into single statements.

    Each statement is executed on its own inside the step's transaction;
    executescript() would commit the open transaction first.
    """
    statements = []
    buffer = ""
    for line in sql.splitlines(keepends=True):
        if line.strip().startswith("--"):
            continue
        buffer += line
        if sqlite3.complete_statement(buffer):
            statements.append(buffer.strip())
            buffer = ""
    if buffer.strip():
        statements.append(buffer.strip())
    return statements


def discover_steps(sql_dir: Path) -> List[MigrationStep]:
    """
    Discover migration steps in `sql_dir`.

    Steps are pairs of files named like:
    - 001_log_lines.up.sql / 001_log_lines.down.sql

    The number determines the order, the name is for human readability.
    A step without a .down.sql file reverts as a no-op. A `-- depends: <step_id>`
    line in the .up.sql file names the core step an index step builds on.
    """
    pattern = re.compile(r"^(\d{3})_(.+)\.up\.sql$")
    found = []

    if not sql_dir.is_dir():
        logger.info(f"[MigrationRunner] No migrations directory at {sql_dir}")
        return []

    for up_file in sql_dir.glob("*.up.sql"):
        match = pattern.match(up_file.name)
        if not match:
            continue
        step_id = f"{match.group(1)}_{match.group(2)}"
        down_file = up_file.with_name(f"{step_id}.down.sql")
        up_sql = up_file.read_text(encoding="utf-8")
        depends = DEPENDS_PATTERN.search(up_sql)
        found.append(
            (
                int(match.group(1)),
                MigrationStep(
                    step_id=step_id,
                    up_sql=up_sql,
                    down_sql=down_file.read_text(encoding="utf-8") if down_file.exists() else "",
                    filepath=up_file,
                    depends_on=depends.group(1) if depends else None,
                ),
            )
        )

    found.sort(key=lambda pair: (pair[0], pair[1].step_id))
    logger.debug(f"[MigrationRunner] Discovered {len(found)} migrations in {sql_dir}")
    return [step for _, step in found]


class MigrationRunner:
    """
    Applies core and index migration steps through a connection factory.

    A connection is obtained before, and closed after, every step. To keep
    one physical handle alive across the whole run (required for in-memory
    stores), pass a factory from `pinned()`, which hands out a non-closing
    wrapper.

    Steps run in declared order going up and in reverse declared order going
    down. Applied steps are recorded in the SchemaVersions table of the store
    being migrated.
    """

    def __init__(
        self,
        connect: ConnectionFactory,
        steps: Optional[Sequence[MigrationStep]] = None,
        index_steps: Optional[Sequence[MigrationStep]] = None,
        sql_dir: Optional[Path] = None,
    ):
        """
        Args:
            connect: Zero-argument async callable returning a connection
            steps: Core steps (defaults to the SQL files under sql_dir)
            index_steps: Read-index steps (defaults to sql_dir/index)
            sql_dir: Directory of NNN_name.up.sql files (defaults to the packaged SQL)
        """
        self._connect = connect
        sql_dir = sql_dir or DEFAULT_SQL_DIR
        self.steps: List[MigrationStep] = list(steps) if steps is not None else discover_steps(sql_dir)
        self.index_steps: List[MigrationStep] = (
            list(index_steps) if index_steps is not None else discover_steps(sql_dir / "index")
        )
        self._check_unique(self.steps + self.index_steps)

    @staticmethod
    def _check_unique(steps: Iterable[MigrationStep]) -> None:
        seen = set()
        for step in steps:
            if step.step_id in seen:
                raise DuplicateMigrationId(step.step_id)
            seen.add(step.step_id)

    def _steps_for(self, namespace: str) -> List[MigrationStep]:
        return self.steps if namespace == CORE else self.index_steps

    # ------------------------------------------------------------------
    # Applied state
    # ------------------------------------------------------------------

    async def _has_schema_table(self, conn) -> bool:
        # Cursors are always closed: an open statement on a shared-cache store
        # keeps a table lock that blocks other handles
        async with conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (SCHEMA_TABLE,)
        ) as cursor:
            return bool(await cursor.fetchall())

    async def _ensure_schema_table(self, conn) -> None:
        # Checked first so that an up-to-date store sees no writes at all
        if await self._has_schema_table(conn):
            return
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {SCHEMA_TABLE} (
                Namespace TEXT NOT NULL,
                StepId TEXT NOT NULL,
                AppliedAt TEXT NOT NULL,
                PRIMARY KEY (Namespace, StepId)
            )
            """
        )

    async def _applied(self, conn, namespace: str) -> List[str]:
        """Applied step ids in application order, oldest first."""
        if not await self._has_schema_table(conn):
            return []
        async with conn.execute(
            f"SELECT StepId FROM {SCHEMA_TABLE} WHERE Namespace = ? ORDER BY rowid ASC",
            (namespace,),
        ) as cursor:
            return [row[0] for row in await cursor.fetchall()]

    async def applied_steps(self, namespace: str = CORE) -> List[str]:
        conn = await self._connect()
        try:
            return await self._applied(conn, namespace)
        finally:
            await conn.close()

    async def current_version(self) -> Optional[str]:
        """Most recently applied core step id, or None for an empty schema."""
        applied = await self.applied_steps(CORE)
        return applied[-1] if applied else None

    async def history(self) -> List[Dict[str, str]]:
        """
        Get list of applied migrations, both namespaces, oldest first.

        Returns:
            List of dicts with namespace, step_id, applied_at
        """
        conn = await self._connect()
        try:
            if not await self._has_schema_table(conn):
                return []
            async with conn.execute(
                f"SELECT Namespace, StepId, AppliedAt FROM {SCHEMA_TABLE} ORDER BY rowid ASC"
            ) as cursor:
                rows = await cursor.fetchall()
            return [{"namespace": row[0], "step_id": row[1], "applied_at": row[2]} for row in rows]
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Up / down
    # ------------------------------------------------------------------

    async def migrate_up(self, include_index: bool = False) -> List[str]:
        """
        Apply all pending core steps, then (optionally) all pending index steps.

        Returns:
            Ids of the steps applied by this call

        Raises:
            MigrationFailed: a step failed; it is left unrecorded and no later
                step is attempted
        """
        applied = await self._migrate_namespace_up(CORE)
        if include_index:
            applied += await self._migrate_namespace_up(INDEX)

        if applied:
            logger.info(f"[MigrationRunner] Applied {len(applied)} migrations: {', '.join(applied)}")
        else:
            logger.info("[MigrationRunner] Schema is up to date")
        return applied

    async def migrate_down(self, include_index: bool = False) -> List[str]:
        """
        Revert the most recently applied core step (and index step, if asked).

        The index step is reverted first since it may depend on a core table.
        Index steps that depend on the reverted core step are always reverted
        with it, so SchemaVersions never records an index whose table is gone.

        Returns:
            Ids of the steps reverted by this call (empty when nothing was applied)
        """
        reverted = []
        if include_index:
            index_applied = await self.applied_steps(INDEX)
            if index_applied:
                step = self._find(INDEX, index_applied[-1])
                await self._run_step(step, INDEX, up=False)
                reverted.append(step.step_id)
        reverted += await self._migrate_core_down()

        if not reverted:
            logger.info("[MigrationRunner] Nothing to revert")
        return reverted

    def _find(self, namespace: str, step_id: str) -> MigrationStep:
        step = next((s for s in self._steps_for(namespace) if s.step_id == step_id), None)
        if step is None:
            raise MigrationFailed(step_id, LookupError(f"no registered {namespace} step {step_id}"))
        return step

    async def _migrate_namespace_up(self, namespace: str) -> List[str]:
        conn = await self._connect()
        try:
            done = set(await self._applied(conn, namespace))
        finally:
            await conn.close()

        applied = []
        for step in self._steps_for(namespace):
            if step.step_id in done:
                continue
            await self._run_step(step, namespace, up=True)
            applied.append(step.step_id)
        return applied

    async def _migrate_core_down(self) -> List[str]:
        conn = await self._connect()
        try:
            core_applied = await self._applied(conn, CORE)
            index_applied = await self._applied(conn, INDEX)
        finally:
            await conn.close()

        if not core_applied:
            return []

        step = self._find(CORE, core_applied[-1])
        index_by_id = {s.step_id: s for s in self.index_steps}
        dependents = [
            index_by_id[step_id]
            for step_id in reversed(index_applied)
            if step_id in index_by_id and index_by_id[step_id].depends_on == step.step_id
        ]

        reverted = []
        for index_step in dependents:
            await self._run_step(index_step, INDEX, up=False)
            reverted.append(index_step.step_id)
        await self._run_step(step, CORE, up=False)
        reverted.append(step.step_id)
        return reverted

    async def _run_step(self, step: MigrationStep, namespace: str, up: bool) -> None:
        """Run one step and its SchemaVersions bookkeeping in a single transaction."""
        direction = "up" if up else "down"
        logger.info(f"[MigrationRunner] Migrating {namespace} step {step.display_name} {direction}")

        conn = await self._connect()
        try:
            await self._ensure_schema_table(conn)
            await conn.execute("BEGIN")
            for statement in split_statements(step.up_sql if up else step.down_sql):
                await conn.execute(statement)
            if up:
                await conn.execute(
                    f"INSERT INTO {SCHEMA_TABLE} (Namespace, StepId, AppliedAt) VALUES (?, ?, ?)",
                    (namespace, step.step_id, datetime.now(timezone.utc).isoformat()),
                )
            else:
                await conn.execute(
                    f"DELETE FROM {SCHEMA_TABLE} WHERE Namespace = ? AND StepId = ?",
                    (namespace, step.step_id),
                )
            await conn.execute("COMMIT")
        except Exception as e:
            logger.error(f"[MigrationRunner] Failed {step.display_name} {direction}: {e}")
            if conn.in_transaction:
                await conn.execute("ROLLBACK")
            raise MigrationFailed(step.step_id, e) from e
        finally:
            await conn.close()


async def migrate_up(conn, include_index: bool = False, sql_dir: Optional[Path] = None) -> List[str]:
    """Apply the packaged (or `sql_dir`) steps to an open handle without closing it."""
    return await MigrationRunner(pinned(conn), sql_dir=sql_dir).migrate_up(include_index)


async def migrate_down(conn, include_index: bool = False, sql_dir: Optional[Path] = None) -> List[str]:
    """Revert the latest step(s) on an open handle without closing it."""
    return await MigrationRunner(pinned(conn), sql_dir=sql_dir).migrate_down(include_index)
