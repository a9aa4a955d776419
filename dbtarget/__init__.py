# ============================================================================
# dbtarget/__init__.py
# Relational Storage Target for Log Lines and Metrics
# ============================================================================
#
# PURPOSE:
# Receives log-line and metric-point events from a logging pipeline and
# records them durably in SQLite, keeping the schema under versioned
# migration control.
#
# PACKAGE LAYOUT:
# - **base/**: configuration and logging setup
# - **data/**: row codec, connection provider, migrations, the target actor
# - **errors.py**: structured error taxonomy
#
# ============================================================================

from dbtarget.data.models import LogLevel, LogRecord, MetricRecord, MetricType
from dbtarget.data.target import DBTarget, TargetState

__version__ = "0.3.0"

__all__ = [
    "DBTarget",
    "LogLevel",
    "LogRecord",
    "MetricRecord",
    "MetricType",
    "TargetState",
]
