"""
DB Target - the persistence actor for log lines and metrics.

Responsibilities:
1.  Bring the store's schema current on start-up, on a handle pinned open
    for the whole migration run.
2.  Serialize every row write into a single writer task ("one funnel"), so
    insertion order matches submission order and the engine only ever sees
    one writer.
3.  Flush: acknowledge only after everything enqueued before the call is
    committed.
4.  Shutdown: refuse new events, drain the mailbox, close the connection.

Lifecycle:
    UNINITIALIZED -> MIGRATING -> READY -> DRAINING -> CLOSED

Producers call submit_log()/submit_metric() without waiting; they may do so
from the loop's thread or from any other thread. Rows reach the store at
least once only after a later flush() succeeds.
"""

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from dbtarget.base.config import TargetConfig, get_config
from dbtarget.data.codec import StoredRow, encode_log, encode_metric
from dbtarget.data.connection import ConnectionFactory, pinned
from dbtarget.data.migrations import MigrationRunner
from dbtarget.data.models import LogRecord, MetricRecord
from dbtarget.errors import (
    FlushError,
    InitializationFailed,
    ShutdownError,
    TargetClosed,
    TargetNotReady,
)

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[ConnectionFactory], MigrationRunner]


class TargetState(str, Enum):
    UNINITIALIZED = "uninitialized"
    MIGRATING = "migrating"
    READY = "ready"
    DRAINING = "draining"
    CLOSED = "closed"


# Mailbox messages

@dataclass(frozen=True)
class _WriteRow:
    row: StoredRow


@dataclass(frozen=True)
class _Flush:
    future: asyncio.Future


@dataclass(frozen=True)
class _Shutdown:
    future: asyncio.Future


class DBTarget:
    """
    Message-driven sink writing LogRecords and MetricRecords to SQLite.

    Usage:
        provider = ConnectionProvider()
        target = DBTarget("db-target", provider.factory("file", "/var/lib/app/logs.db"))
        await target.start()
        target.submit_log(LogRecord(message="hello world"))
        await target.flush()
        await target.shutdown()
    """

    def __init__(
        self,
        name: str,
        connect: ConnectionFactory,
        *,
        config: Optional[TargetConfig] = None,
        runner_factory: Optional[RunnerFactory] = None,
        log: Optional[logging.Logger] = None,
    ):
        """
        Args:
            name: Target identity, used only in diagnostics
            connect: Zero-argument async callable returning an open connection;
                called once by start()
            config: Settings (defaults to the global config)
            runner_factory: Builds the MigrationRunner from a connection factory
                (defaults to the packaged migrations)
            log: Diagnostic channel for write failures (defaults to the module logger)
        """
        self.name = name
        self._connect = connect
        self._config = config or get_config()
        self._runner_factory = runner_factory or self._default_runner
        self._log = log or logger

        self._state = TargetState.UNINITIALIZED
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self._config.writer.queue_maxsize)
        self._conn = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._shutdown_future: Optional[asyncio.Future] = None

        # Write failures not yet reported to a flush/shutdown waiter
        self._failures: List[BaseException] = []
        self._rows_written = 0
        self._rows_dropped = 0

    def _default_runner(self, connect: ConnectionFactory) -> MigrationRunner:
        return MigrationRunner(connect, sql_dir=self._config.migration.sql_dir)

    @property
    def state(self) -> TargetState:
        return self._state

    def pending(self) -> int:
        """Messages waiting in the mailbox."""
        return self._queue.qsize()

    def stats(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "pending": self._queue.qsize(),
            "rows_written": self._rows_written,
            "rows_dropped": self._rows_dropped,
            "unreported_failures": len(self._failures),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Open the connection, migrate the schema and start the writer loop.

        Raises:
            InitializationFailed: connection or migration failed; the target
                stays UNINITIALIZED and start() may be retried
            TargetClosed: the target was already shut down, or shutdown() was
                called before migration finished (the handle is closed)
        """
        if self._state in (TargetState.READY, TargetState.MIGRATING):
            return
        if self._state in (TargetState.DRAINING, TargetState.CLOSED):
            raise TargetClosed(self.name)

        self._state = TargetState.MIGRATING
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()

        conn = None
        try:
            conn = await self._connect()
            # The runner closes its connection after every step; the pinned
            # factory hands it a non-closing wrapper around our handle.
            runner = self._runner_factory(pinned(conn))
            await runner.migrate_up(include_index=self._config.migration.index_for_reading)
        except Exception as e:
            self._log.error(f"[DBTarget:{self.name}] Initialisation failed: {e}")
            if conn is not None:
                await conn.close()
            if self._state is TargetState.MIGRATING:
                self._state = TargetState.UNINITIALIZED
            raise InitializationFailed(self.name, e) from e

        if self._state is not TargetState.MIGRATING:
            # shutdown() ran while migrating; it already reported CLOSED
            self._log.info(f"[DBTarget:{self.name}] Shut down during start-up. Releasing connection.")
            await conn.close()
            raise TargetClosed(self.name)

        self._conn = conn
        self._worker_task = asyncio.create_task(self._writer_loop(), name=f"DBTarget-{self.name}-writer")
        self._state = TargetState.READY
        self._log.info(f"[DBTarget:{self.name}] Ready.")

    async def flush(self) -> None:
        """
        Wait until every message enqueued before this call is committed.

        Cancelling the caller does not cancel the writer's work.

        Raises:
            FlushError: one or more batches failed since the previous flush
            TargetClosed: shutdown was already requested
        """
        self._check_accepting()
        future = self._loop.create_future()
        await self._queue.put(_Flush(future))
        await asyncio.shield(future)

    async def shutdown(self) -> None:
        """
        Graceful shutdown protocol.
        1. Mark as draining (no new events).
        2. Write everything already enqueued.
        3. Close the connection.

        Calling it again once CLOSED is a no-op.

        Raises:
            ShutdownError: writes failed during the drain (or since the last
                flush), or the connection failed to close
        """
        if self._state is TargetState.CLOSED:
            return
        if self._state is TargetState.DRAINING:
            await asyncio.shield(self._shutdown_future)
            return
        if self._state is not TargetState.READY:
            # Never started: nothing to drain
            self._state = TargetState.CLOSED
            return

        self._log.info(f"[DBTarget:{self.name}] Initiating shutdown. Pending messages: {self._queue.qsize()}")
        self._state = TargetState.DRAINING
        self._shutdown_future = self._loop.create_future()
        await self._queue.put(_Shutdown(self._shutdown_future))

        try:
            await asyncio.wait_for(
                asyncio.shield(self._shutdown_future),
                timeout=self._config.writer.shutdown_timeout,
            )
        except asyncio.TimeoutError as e:
            self._log.warning(f"[DBTarget:{self.name}] Writer timed out during shutdown. Force cancelling.")
            await self._abort(e)
        finally:
            if self._worker_task is not None and self._worker_task.done():
                self._worker_task = None

        self._log.info(f"[DBTarget:{self.name}] Shutdown complete.")

    def flush_threadsafe(self, timeout: Optional[float] = None) -> None:
        """Blocking flush() for producer threads outside the target's loop."""
        asyncio.run_coroutine_threadsafe(self.flush(), self._require_loop()).result(timeout)

    def shutdown_threadsafe(self, timeout: Optional[float] = None) -> None:
        asyncio.run_coroutine_threadsafe(self.shutdown(), self._require_loop()).result(timeout)

    async def __aenter__(self) -> "DBTarget":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def submit_log(self, record: LogRecord) -> None:
        """Encode and enqueue a log line. Does not wait for the write."""
        self._check_accepting()
        self._deliver(_WriteRow(encode_log(record)))

    def submit_metric(self, record: MetricRecord) -> None:
        """Encode and enqueue a metric point. Does not wait for the write."""
        self._check_accepting()
        self._deliver(_WriteRow(encode_metric(record)))

    def _check_accepting(self) -> None:
        if self._state in (TargetState.DRAINING, TargetState.CLOSED):
            raise TargetClosed(self.name)
        if self._state is not TargetState.READY:
            raise TargetNotReady(self.name, self._state.value)

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise TargetNotReady(self.name, self._state.value)
        return self._loop

    def _deliver(self, message: _WriteRow) -> None:
        if threading.get_ident() == self._loop_thread:
            self._queue.put_nowait(message)
            return

        def _enqueue_or_warn() -> None:
            # Re-checked on the loop: shutdown may have started since the
            # producer thread passed _check_accepting()
            if self._state is not TargetState.READY:
                self._rows_dropped += 1
                self._log.warning(f"[DBTarget:{self.name}] Dropped row submitted during shutdown.")
                return
            try:
                self._queue.put_nowait(message)
            except asyncio.QueueFull:
                self._rows_dropped += 1
                self._log.error(f"[DBTarget:{self.name}] Mailbox full! Dropping row.")

        self._loop.call_soon_threadsafe(_enqueue_or_warn)

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    async def _writer_loop(self) -> None:
        """Consume the mailbox until a shutdown message is processed."""
        self._log.debug(f"[DBTarget:{self.name}] Writer loop active.")
        batch_size = max(1, self._config.writer.batch_size)

        while True:
            message = await self._queue.get()
            batch: List[StoredRow] = []

            # Gather consecutive row messages into one transaction
            while isinstance(message, _WriteRow):
                batch.append(message.row)
                if len(batch) >= batch_size:
                    message = None
                    break
                try:
                    message = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    message = None

            if batch:
                await self._write_batch(batch)

            if isinstance(message, _Flush):
                self._complete_flush(message.future)
            elif isinstance(message, _Shutdown):
                await self._complete_shutdown(message.future)
                return

    async def _write_batch(self, batch: List[StoredRow]) -> None:
        """
        Commit `batch` in one transaction.

        If the batch fails it is retried row by row, so a single bad row
        only costs itself; each row that still fails is reported once.
        """
        try:
            await self._commit(batch)
            return
        except Exception as e:
            await self._rollback()
            if len(batch) == 1:
                self._record_failure(e)
                return
            self._log.warning(
                f"[DBTarget:{self.name}] Batch of {len(batch)} rows failed ({e}). Retrying row by row."
            )

        for row in batch:
            try:
                await self._commit([row])
            except Exception as e:
                await self._rollback()
                self._record_failure(e)

    async def _commit(self, rows: List[StoredRow]) -> None:
        conn = self._conn
        await conn.execute("BEGIN IMMEDIATE")
        for sql, group in itertools.groupby(rows, key=StoredRow.insert_sql):
            await conn.executemany(sql, [row.params() for row in group])
        await conn.execute("COMMIT")
        self._rows_written += len(rows)

    async def _rollback(self) -> None:
        if not self._conn.in_transaction:
            return
        try:
            await self._conn.execute("ROLLBACK")
        except Exception as e:
            self._failures.append(e)
            self._log.error(f"[DBTarget:{self.name}] Rollback failed: {e}")

    def _record_failure(self, error: BaseException) -> None:
        self._failures.append(error)
        self._log.error(f"[DBTarget:{self.name}] Write failure, row rolled back: {error}", exc_info=error)

    def _take_failures(self) -> List[BaseException]:
        failures, self._failures = self._failures, []
        return failures

    def _complete_flush(self, future: asyncio.Future) -> None:
        failures = self._take_failures()
        if future.done():
            return
        if failures:
            future.set_exception(FlushError(self.name, failures))
        else:
            future.set_result(None)

    async def _complete_shutdown(self, future: asyncio.Future) -> None:
        failures = self._take_failures()
        try:
            await self._conn.close()
        except Exception as e:
            failures.append(e)
            self._log.error(f"[DBTarget:{self.name}] Error closing connection: {e}")
        self._conn = None
        self._state = TargetState.CLOSED

        if future.done():
            return
        if failures:
            future.set_exception(ShutdownError(self.name, failures))
        else:
            future.set_result(None)

    async def _abort(self, cause: BaseException) -> None:
        """Stop a writer that missed the shutdown deadline."""
        if self._worker_task is not None and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass

        failures = self._take_failures() + [cause]
        if self._conn is not None:
            try:
                await self._conn.close()
            except Exception as e:
                failures.append(e)
            self._conn = None
        self._state = TargetState.CLOSED

        if not self._shutdown_future.done():
            self._shutdown_future.set_exception(ShutdownError(self.name, failures))
        # Retrieve it so the loop does not report an unobserved exception
        error = self._shutdown_future.exception()
        if error is not None:
            raise error
