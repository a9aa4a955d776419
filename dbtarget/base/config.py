# ============================================================================
# dbtarget/base/config.py
# Target Configuration Management
# ============================================================================
#
# PURPOSE:
# All tunable settings of the database target in one place: which store to
# open, how the writer batches, whether the read-optimisation indexes are
# migrated and how diagnostics are logged.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: one immutable section per concern
# 2. Environment variables: every setting can be overridden via DBTARGET_*
# 3. Singleton: get_config() returns one shared TargetConfig per process
#
# ============================================================================

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# ============================================================================
# Storage Configuration
# ============================================================================
# Which relational store the target writes into.

@dataclass(frozen=True)
class StorageConfig:
    # "file" = on-disk database at db_path
    # "shared" = named in-memory store visible to every handle with shared_name
    # "isolated" = private in-memory store, destroyed when the handle closes
    mode: str = "file"

    # On-disk location used in "file" mode
    db_path: Path = field(default_factory=lambda: Path.home() / ".dbtarget" / "logs.db")

    # Store name used in "shared" mode
    shared_name: str = "dbtarget"

    # Seconds the driver waits on a locked database before failing a statement
    busy_timeout: float = 5.0

    @property
    def identifier(self) -> str:
        # The identifier handed to ConnectionProvider.open() for the chosen mode
        if self.mode == "file":
            return str(self.db_path)
        return self.shared_name


# ============================================================================
# Writer Configuration
# ============================================================================
# Controls the single writer task behind each target.

@dataclass(frozen=True)
class WriterConfig:
    # Maximum number of row messages committed in one transaction
    batch_size: int = 200

    # Mailbox bound; 0 = unbounded so producers never stall
    queue_maxsize: int = 0

    # How long shutdown() waits for the writer task after the drain (seconds)
    shutdown_timeout: float = 30.0


# ============================================================================
# Migration Configuration
# ============================================================================

@dataclass(frozen=True)
class MigrationConfig:
    # Also migrate the read-optimisation index set on start-up
    index_for_reading: bool = False

    # Directory holding NNN_name.up.sql / NNN_name.down.sql files
    # None = the SQL shipped with the package
    sql_dir: Optional[Path] = None


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Optional log file; None = console only
    file_path: Optional[Path] = None
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass(frozen=True)
class TargetConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    writer: WriterConfig = field(default_factory=WriterConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(cls) -> "TargetConfig":
        storage = StorageConfig(
            mode=os.getenv("DBTARGET_CONNECTION_MODE", "file").lower(),
            db_path=Path(
                os.getenv("DBTARGET_DB_PATH", str(Path.home() / ".dbtarget" / "logs.db"))
            ).expanduser(),
            shared_name=os.getenv("DBTARGET_SHARED_NAME", "dbtarget"),
            busy_timeout=float(os.getenv("DBTARGET_BUSY_TIMEOUT", "5")),
        )

        writer = WriterConfig(
            batch_size=int(os.getenv("DBTARGET_BATCH_SIZE", "200")),
            queue_maxsize=int(os.getenv("DBTARGET_QUEUE_MAXSIZE", "0")),
            shutdown_timeout=float(os.getenv("DBTARGET_SHUTDOWN_TIMEOUT", "30")),
        )

        sql_dir = os.getenv("DBTARGET_MIGRATIONS_DIR")
        migration = MigrationConfig(
            index_for_reading=_env_bool("DBTARGET_INDEX_FOR_READING", "false"),
            sql_dir=Path(sql_dir) if sql_dir else None,
        )

        log_file = os.getenv("DBTARGET_LOG_FILE")
        log = LogConfig(
            level=os.getenv("DBTARGET_LOG_LEVEL", "INFO"),
            file_path=Path(log_file).expanduser() if log_file else None,
        )

        return cls(storage=storage, writer=writer, migration=migration, log=log)


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[TargetConfig] = None


def get_config() -> TargetConfig:
    """
    Get the global configuration instance.

    Loaded from the environment on first use, then shared.
    """
    global _config
    if _config is None:
        _config = TargetConfig.from_env()
    return _config


def set_config(config: Optional[TargetConfig]) -> None:
    """Replace the global configuration (mainly used for testing). None resets it."""
    global _config
    _config = config


def setup_logging(config: Optional[TargetConfig] = None) -> None:
    """
    Configure Python's logging system from LogConfig.

    Console output always; a rotating file as well when log.file_path is set.
    Call this once at application startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_path is not None:
        from logging.handlers import RotatingFileHandler
        cfg.log.file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                cfg.log.file_path,
                maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
                backupCount=cfg.log.backup_count,
            )
        )

    logging.basicConfig(
        level=getattr(logging, cfg.log.level.upper()),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
