"""Pytest configuration for dbtarget."""
import os
import uuid

import pytest

from dbtarget.base.config import set_config
from dbtarget.data.connection import ConnectionProvider


def pytest_configure():
    # Keep tests away from the on-disk default store in the home directory.
    os.environ.setdefault("DBTARGET_CONNECTION_MODE", "isolated")


@pytest.fixture(autouse=True)
def reset_global_config():
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def provider():
    return ConnectionProvider(busy_timeout=1.0)


@pytest.fixture
def shared_name():
    # Shared in-memory stores are process wide; one name per test
    return f"test-{uuid.uuid4().hex}"

