"""Shared test fixtures."""
import os
import sys
import pytest
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timezone
from models.database import Database
from models.rules import Rule
from alerts.fingerprint import FingerprintIndex
from alerts.lifecycle import AlertLifecycleManager


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def t0():
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def lifecycle(temp_db):
    return AlertLifecycleManager(temp_db, FingerprintIndex(temp_db))


@pytest.fixture
def cpu_rule(temp_db):
    """Threshold 80 with no for/keep-firing windows, stored."""
    rule = Rule(
        id="cpu_high", name="CPU high", expression="cpu_usage", operator=">",
        threshold=80, interval_seconds=60, labels={"host": "web-1"},
    )
    temp_db.save_rule(rule)
    return rule
