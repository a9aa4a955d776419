# ============================================================================
# dbtarget/base/__init__.py
# Shared Foundations - Configuration
# ============================================================================
#
# MODULES IN THIS PACKAGE:
# - **config.py**: Frozen dataclass settings, env loading, logging setup
#
# ============================================================================
