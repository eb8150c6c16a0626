"""
E2E test fixtures for the Firestore emulator.

These tests require a running emulator, e.g.:

    gcloud emulators firestore start --host-port=localhost:8080
    export FIRESTORE_EMULATOR_HOST=localhost:8080
"""

import os
import uuid

import pytest
import pytest_asyncio

from firestore_rest.client import Firestore

EMULATOR_HOST = os.environ.get("FIRESTORE_EMULATOR_HOST")


@pytest_asyncio.fixture
async def db():
    """Client connected to the emulator, closed after the test."""
    client = Firestore.use_emulator(EMULATOR_HOST, project_id="demo-e2e")
    async with client:
        yield client


@pytest.fixture
def collection_name() -> str:
    """Unique collection name so runs never collide."""
    return f"e2e_{uuid.uuid4().hex[:12]}"
