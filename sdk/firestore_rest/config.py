"""
Configuration for the Firestore REST SDK.

Uses pydantic-settings for environment variable loading. Every setting can
also be passed explicitly; nothing is read until Settings() is constructed.

Environment variables (prefix FIRESTORE_):
    FIRESTORE_PROJECT_ID, FIRESTORE_DATABASE_ID, FIRESTORE_EMULATOR_HOST,
    FIRESTORE_CLIENT_EMAIL, FIRESTORE_PRIVATE_KEY, FIRESTORE_CREDENTIALS_FILE,
    FIRESTORE_MAX_ATTEMPTS, FIRESTORE_BACKOFF_*, ...

Invariants:
    - All settings have defaults suitable for the emulator
    - The private key is excluded from repr()
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

DEFAULT_BASE_URL = "https://firestore.googleapis.com/v1"


class Settings(BaseSettings):
    """SDK configuration loaded from the environment."""

    # Target database
    project_id: Optional[str] = Field(default=None, description="Google Cloud project id")
    database_id: str = Field(default="(default)", description="Firestore database id")

    # Connection
    emulator_host: Optional[str] = Field(default=None, description="host:port of the Firestore emulator")
    base_url: str = Field(default=DEFAULT_BASE_URL, description="REST endpoint (ignored with emulator)")
    request_timeout: float = Field(default=30.0, description="Per-request timeout seconds")

    # Service account credentials
    client_email: Optional[str] = Field(default=None, description="Service account email")
    private_key: Optional[str] = Field(default=None, description="Service account PEM key", repr=False)
    credentials_file: Optional[str] = Field(default=None, description="Path to service account JSON")

    # Transactions
    max_attempts: int = Field(default=5, ge=1, description="Attempts before TransactionAbortedError")
    backoff_base_ms: float = Field(default=100.0, ge=0, description="First retry delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Delay growth per retry")
    backoff_max_ms: float = Field(default=5000.0, ge=0, description="Delay cap")
    backoff_jitter: float = Field(default=0.2, ge=0, le=1.0, description="Random +/- fraction of delay")
    attempt_timeout: Optional[float] = Field(default=None, description="Seconds per attempt")
    total_timeout: Optional[float] = Field(default=None, description="Seconds for the whole transaction")

    # Writes
    update_must_exist: bool = Field(
        default=True,
        description="update() on a missing document fails (True) or creates it (False)",
    )

    model_config = {"env_prefix": "FIRESTORE_"}

    @field_validator("private_key")
    @classmethod
    def _unescape_newlines(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.replace("\\n", "\n")

    @property
    def uses_emulator(self) -> bool:
        return bool(self.emulator_host)
