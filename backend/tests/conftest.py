"""Pytest configuration and shared fixtures."""
import os

import pytest

# server.py reads MONGO_URL at import time; the client connects lazily so no server is needed.
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "portal_test")

from scoring import DEFAULT_RULES, ScoringLedger  # noqa: E402
from tests.helpers.memory_store import SAMPLE_STUDENTS, MemoryScoringStore  # noqa: E402


@pytest.fixture
def store() -> MemoryScoringStore:
    return MemoryScoringStore(students=[dict(s) for s in SAMPLE_STUDENTS])


@pytest.fixture
def ledger(store: MemoryScoringStore) -> ScoringLedger:
    return ScoringLedger(store, DEFAULT_RULES.delta)
