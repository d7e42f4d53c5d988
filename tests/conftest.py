"""
Agent Memory Test Configuration
-------------------------------
Shared fixtures for all tests.

- Durable tables run on a temporary SQLite file, never a shared path
- Hybrid stores are built with the sync thread disabled; tests drive
  reconciliation through force_sync_all()
- `clock` freezes the epoch-seconds clock used for item TTLs
"""

import sys
import time
from pathlib import Path
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from infra.kv_table import KeyValueTable
from memory.durable import DurableMemoryStore
from memory.hybrid import HybridMemoryStore
from memory.secure import SecureMemoryStore
from memory.volatile import VolatileMemoryStore

TEST_ENCRYPTION_KEY = "test-key-0123456789abcdef-0123456789"


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, start: int):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock(monkeypatch):
    """Freeze item-expiry time at the current second; advance() moves it."""
    fake = FakeClock(int(time.time()))
    for module in ("memory.models", "memory.volatile", "memory.durable"):
        monkeypatch.setattr(f"{module}.now_seconds", fake)
    return fake


@pytest.fixture
def table_path(tmp_path):
    return str(tmp_path / "memory.db")


@pytest.fixture
def table(table_path):
    """An initialized keyed table on a temporary file."""
    kv = KeyValueTable("test-memory", endpoint=table_path)
    kv.initialize()
    yield kv
    kv.close()


@pytest.fixture
def volatile():
    return VolatileMemoryStore(max_messages=100, max_conversations=10)


@pytest.fixture
def durable(table):
    return DurableMemoryStore(table=table)


@pytest.fixture
def hybrid(durable):
    """Hybrid store with the background thread off."""
    store = HybridMemoryStore(durable=durable, auto_start=False)
    yield store
    store.stop(flush=False)


@pytest.fixture
def secure(volatile):
    return SecureMemoryStore(volatile, encryption_key=TEST_ENCRYPTION_KEY)
