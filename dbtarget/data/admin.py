"""
Administrative migration entry points.

Run schema changes out of band, independent of a target's start-up
migration. The caller must make sure no DBTarget writes to the same store
while these run; each call holds one exclusive handle for its duration and
closes it afterwards.
"""

import logging
from typing import List, Optional

from dbtarget.base.config import TargetConfig, get_config
from dbtarget.data.connection import ConnectionProvider, get_provider, pinned
from dbtarget.data.migrations import MigrationRunner

logger = logging.getLogger(__name__)


async def _run(
    direction: str,
    include_index: bool,
    config: Optional[TargetConfig],
    provider: Optional[ConnectionProvider],
) -> List[str]:
    cfg = config or get_config()
    provider = provider or get_provider()

    conn = await provider.open(cfg.storage.mode, cfg.storage.identifier)
    try:
        runner = MigrationRunner(pinned(conn), sql_dir=cfg.migration.sql_dir)
        if direction == "up":
            steps = await runner.migrate_up(include_index=include_index)
        else:
            steps = await runner.migrate_down(include_index=include_index)
        logger.info(
            f"[Admin] migrate {direction} on {cfg.storage.mode} store "
            f"{cfg.storage.identifier!r}: {steps or 'no changes'}"
        )
        return steps
    finally:
        await conn.close()


async def migrate_store_up(
    include_index: bool = False,
    config: Optional[TargetConfig] = None,
    provider: Optional[ConnectionProvider] = None,
) -> List[str]:
    """Apply pending steps to the configured store. Returns the applied ids."""
    return await _run("up", include_index, config, provider)


async def migrate_store_down(
    include_index: bool = False,
    config: Optional[TargetConfig] = None,
    provider: Optional[ConnectionProvider] = None,
) -> List[str]:
    """Revert the latest step(s) on the configured store. Returns the reverted ids."""
    return await _run("down", include_index, config, provider)
