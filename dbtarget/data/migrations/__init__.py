"""
Schema Migrations - Database Version Control

PURPOSE:
Keep the LogLines/Metrics schema under versioned, reversible control.

KEY CONCEPTS:
- **Step**: a numbered pair of SQL files (NNN_name.up.sql / .down.sql)
- **Core steps**: the tables themselves (sql/)
- **Index steps**: optional read-optimisation indexes (sql/index/), tracked in
  their own namespace so they can be toggled without a core version change
- **SchemaVersions**: table inside the migrated store recording applied steps
"""

from .migration_runner import (
    CORE,
    INDEX,
    MigrationRunner,
    MigrationStep,
    discover_steps,
    migrate_down,
    migrate_up,
)

__all__ = [
    "CORE",
    "INDEX",
    "MigrationRunner",
    "MigrationStep",
    "discover_steps",
    "migrate_down",
    "migrate_up",
]
