"""
Shared pytest fixtures. The database URL must be set before any gateway
module is imported, so it happens at module import time.
"""
import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="gateway-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'gateway-test.db')}"
os.environ["GATEWAY_ALLOW_INSECURE"] = "true"

import pytest

from gateway.database import engine
from gateway.models import Base

ORG_ID = 101


@pytest.fixture(autouse=True)
def fresh_db():
    """Recreate all tables for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def org_id():
    return ORG_ID
