import os
import random
from copy import deepcopy

import pytest

# Must be set before the application module configures logging
os.environ.setdefault("LEDGER_LOG_LEVEL", "WARNING")

from config import TestingSettings
from repositories import IdAllocator, LedgerStore
from services import LedgerService
from storage import AccountStorage, JsonFileStorage


class MemoryStorage(AccountStorage):
    """Keeps the saved collection in memory and counts saves."""

    def __init__(self, accounts=None):
        self.accounts = deepcopy(accounts or [])
        self.saves = 0

    def load(self):
        return deepcopy(self.accounts)

    def save(self, accounts):
        self.accounts = deepcopy(accounts)
        self.saves += 1


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "users.json"


@pytest.fixture
def store(db_path):
    """File-backed store with a seeded id allocator."""
    ledger_store = LedgerStore(JsonFileStorage(db_path), IdAllocator(rng=random.Random(1234)))
    ledger_store.load()
    return ledger_store


@pytest.fixture
def memory_store():
    ledger_store = LedgerStore(MemoryStorage(), IdAllocator(rng=random.Random(4321)))
    ledger_store.load()
    return ledger_store


@pytest.fixture
def service(store):
    return LedgerService(store)


@pytest.fixture
def memory_service(memory_store):
    return LedgerService(memory_store)


@pytest.fixture
def testing_settings(db_path):
    return TestingSettings(database_path=str(db_path))
