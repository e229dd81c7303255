"""Shared test fixtures for issuepilot tests."""

import threading

import pytest

from issuepilot.config import DEFAULT_LABELS
from issuepilot.leases import LeaseStore
from issuepilot.phases import PhaseContext
from issuepilot.spawner import WorkerRegistry
from tests.fakes import FakeSpawner, FakeTracker


@pytest.fixture
def store(tmp_path):
    """A lease store backed by a temporary database."""
    return LeaseStore(tmp_path / "leases.db", audit_path=tmp_path / "lease_audit.jsonl")


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def registry():
    return WorkerRegistry()


@pytest.fixture
def spawner(registry):
    return FakeSpawner(registry=registry)


@pytest.fixture
def ctx(tracker, store, spawner, registry):
    """PhaseContext wired to the fakes, with default labels and limits."""
    return PhaseContext(
        tracker=tracker,
        store=store,
        spawner=spawner,
        registry=registry,
        labels=dict(DEFAULT_LABELS),
        repo="acme/widgets",
        max_parallel_builds=3,
        max_parallel_reviews=2,
        stop=threading.Event(),
    )
