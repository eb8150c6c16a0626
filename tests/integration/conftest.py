"""
Integration test fixtures: a client wired to the in-memory backend.
"""

import pytest

from firestore_rest.auth import StaticTokenProvider
from firestore_rest.client import Firestore
from firestore_rest.config import Settings
from firestore_rest.memory import InMemoryTransport

PROJECT = "demo-project"


def make_settings(**overrides) -> Settings:
    """Settings with retry delays disabled."""
    params = {
        "project_id": PROJECT,
        "emulator_host": None,
        "backoff_base_ms": 0,
        "backoff_jitter": 0,
        "max_attempts": 5,
        "attempt_timeout": None,
        "total_timeout": None,
        "update_must_exist": True,
    }
    params.update(overrides)
    return Settings(**params)


@pytest.fixture
def backend():
    """Fresh in-memory Firestore backend."""
    return InMemoryTransport()


@pytest.fixture
def make_db(backend):
    """Factory for clients sharing the in-memory backend."""

    def factory(project: str = PROJECT, **overrides) -> Firestore:
        settings = make_settings(project_id=project, **overrides)
        return Firestore(project, auth=StaticTokenProvider(), transport=backend, settings=settings)

    return factory


@pytest.fixture
def db(make_db):
    """Client for the default database of the in-memory backend."""
    return make_db()
