"""
Unit tests for environment configuration.
"""

import os
import random
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as SettingsValidationError

from firestore_rest.config import DEFAULT_BASE_URL, Settings
from firestore_rest.errors import UsageError
from firestore_rest.transaction import BackoffPolicy, TransactionOptions


@pytest.fixture
def clean_env(monkeypatch):
    """Remove FIRESTORE_* variables from the environment."""
    for key in list(os.environ):
        if key.startswith("FIRESTORE_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, clean_env):
        settings = Settings()
        assert settings.project_id is None
        assert settings.database_id == "(default)"
        assert settings.base_url == DEFAULT_BASE_URL
        assert settings.max_attempts == 5
        assert settings.update_must_exist is True
        assert not settings.uses_emulator

    def test_env_prefix(self, clean_env):
        clean_env.setenv("FIRESTORE_PROJECT_ID", "env-project")
        clean_env.setenv("FIRESTORE_EMULATOR_HOST", "localhost:8080")
        clean_env.setenv("FIRESTORE_MAX_ATTEMPTS", "3")
        clean_env.setenv("FIRESTORE_UPDATE_MUST_EXIST", "false")

        settings = Settings()

        assert settings.project_id == "env-project"
        assert settings.uses_emulator
        assert settings.max_attempts == 3
        assert settings.update_must_exist is False

    def test_private_key_newlines(self, clean_env):
        """Keys pasted into env vars carry literal \\n sequences."""
        clean_env.setenv("FIRESTORE_PRIVATE_KEY", "-----BEGIN-----\\nabc\\n-----END-----")
        assert Settings().private_key == "-----BEGIN-----\nabc\n-----END-----"

    def test_private_key_not_in_repr(self, clean_env):
        settings = Settings(private_key="super-secret")
        assert "super-secret" not in repr(settings)

    def test_invalid_attempts(self, clean_env):
        with pytest.raises(SettingsValidationError):
            Settings(max_attempts=0)


class TestTransactionOptions:
    """Tests for TransactionOptions defaults and validation."""

    def test_from_settings(self, clean_env):
        settings = Settings(
            max_attempts=7,
            backoff_base_ms=10,
            backoff_multiplier=3,
            backoff_max_ms=50,
            backoff_jitter=0,
            attempt_timeout=2.0,
        )
        options = TransactionOptions.from_settings(settings)
        assert options.max_attempts == 7
        assert options.backoff == BackoffPolicy(base_ms=10, multiplier=3, max_ms=50, jitter=0)
        assert options.attempt_timeout == 2.0
        assert options.total_timeout is None

    def test_overrides(self, clean_env):
        options = TransactionOptions.from_settings(Settings(), max_attempts=1, read_only=True)
        assert options.max_attempts == 1
        assert options.read_only

    def test_invalid_attempts(self):
        with pytest.raises(UsageError):
            TransactionOptions(max_attempts=0)

    def test_read_time_requires_read_only(self):
        with pytest.raises(UsageError):
            TransactionOptions(read_time=datetime.now(timezone.utc))


class TestBackoffPolicy:
    """Tests for retry delays."""

    def test_exponential_growth(self):
        policy = BackoffPolicy(base_ms=100, multiplier=2, max_ms=10_000, jitter=0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [0.1, 0.2, 0.4, 0.8]

    def test_capped(self):
        policy = BackoffPolicy(base_ms=100, multiplier=10, max_ms=500, jitter=0)
        assert policy.delay(5) == 0.5

    def test_jitter_bounds(self):
        policy = BackoffPolicy(base_ms=100, multiplier=2, max_ms=10_000, jitter=0.5)
        rng = random.Random(42)
        delays = [policy.delay(1, rng) for _ in range(200)]
        assert all(0.05 <= d <= 0.15 for d in delays)
        assert len(set(delays)) > 1

    def test_zero_base(self):
        assert BackoffPolicy(base_ms=0, jitter=0.2).delay(3) == 0.0
