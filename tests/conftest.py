"""Pytest fixtures and utilities for safe-cli tests."""

import tempfile
from pathlib import Path

import pytest
import nacl.utils

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from safe_cli.audit import AuditLogger
from safe_cli.store import SecretStore, create_store
from safe_cli.vault import Vault

TEST_PASSWORD = "test_password_123"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for store and log files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def audit_logger(temp_dir):
    """Create an audit logger with temp log path."""
    return AuditLogger(temp_dir / "store.log")


@pytest.fixture
def store(temp_dir, audit_logger):
    """An initialised store with a v1 mount `legacy` and a v2 mount `secret`.

    Uses a random raw key so tests skip the password KDF.
    """
    store_path = temp_dir / "store.db"
    key = create_store(store_path, key=nacl.utils.random(32))

    client = SecretStore(store_path, key, audit_logger)
    client.mount("legacy", version=1)
    client.mount("secret", version=2)
    return client


@pytest.fixture
def vault(store):
    """A Vault around the test store."""
    return Vault(store)


@pytest.fixture
def password_store(temp_dir, monkeypatch):
    """A password-protected store plus the environment to open it non-interactively."""
    from safe_cli import main

    store_path = temp_dir / "cli.db"
    key = create_store(store_path, password=TEST_PASSWORD)
    SecretStore(store_path, key).mount("secret", version=2)

    monkeypatch.setenv("SAFE_PASSWORD", TEST_PASSWORD)
    monkeypatch.delenv("SAFE_STORE", raising=False)
    monkeypatch.setattr(main, "SESSION_FILE", temp_dir / "session")

    return {"path": store_path, "password": TEST_PASSWORD, "key": key}


def history(store, path):
    """(number, state) pairs for a path, oldest first."""
    states = []
    for record in store.versions(path):
        if record.destroyed:
            states.append((record.number, "destroyed"))
        elif record.deleted:
            states.append((record.number, "deleted"))
        else:
            states.append((record.number, "alive"))
    return states


def assert_log_entry(audit_logger, result, action, path=None):
    """Helper to verify a log entry exists."""
    for record in audit_logger.records(limit=1000):
        if record.result == result and record.action == action:
            if path is None or record.path == path:
                return True
    return False
