# ============================================================================
# dbtarget/data/__init__.py
# Data Layer Package - Storage and Persistence
# ============================================================================
#
# MODULES IN THIS PACKAGE:
# - **models.py**: LogRecord / MetricRecord and the LogLevel / MetricType enums
# - **codec.py**: record <-> row mapping and the fixed integer code tables
# - **connection.py**: isolated / shared / file handles, non-closing wrapper
# - **migrations/**: versioned schema steps and the runner that applies them
# - **target.py**: DBTarget, the single-writer persistence actor
# - **admin.py**: out-of-band migrate up / down against the configured store
#
# DATA FLOW:
# Producer -> submit_log/submit_metric -> codec -> mailbox -> writer -> SQLite
#
# ============================================================================
