"""
Bearer-token providers for the Firestore REST SDK.

The client asks its AuthProvider for a token before every request. Providers
are injected collaborators, never process-wide singletons, and may be shared
by many concurrent transactions.

Providers:
- StaticTokenProvider: fixed token (the emulator accepts "owner")
- ServiceAccountTokenProvider: signs an RS256 JWT assertion with the service
  account key and exchanges it for an OAuth2 access token

Invariants:
    - get_token() is safe to call from many coroutines at once
    - A cached token is reused until shortly before it expires
    - At most one refresh is in flight per provider
    - Private keys are never logged or put in error messages
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

import httpx
import jwt

from .errors import AuthError

logger = logging.getLogger(__name__)

DATASTORE_SCOPE = "https://www.googleapis.com/auth/datastore"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
EMULATOR_TOKEN = "owner"


@runtime_checkable
class AuthProvider(Protocol):
    """Supplies a currently valid bearer token."""

    @abstractmethod
    async def get_token(self) -> str:
        """Return a valid token, refreshing if needed.

        Raises:
            AuthError: If no token can be obtained
        """
        ...


class StaticTokenProvider:
    """Always returns the same token."""

    def __init__(self, token: str = EMULATOR_TOKEN) -> None:
        self._token = token

    async def get_token(self) -> str:
        return self._token


@dataclass(frozen=True)
class ServiceAccountCredentials:
    """Fields of a service-account key needed to mint tokens.

    Attributes:
        project_id: Project the account belongs to
        client_email: Service account email (JWT issuer)
        private_key: PEM-encoded RSA private key
        private_key_id: Key id, sent as the JWT 'kid' header when known
        token_uri: OAuth2 token endpoint
    """

    project_id: str
    client_email: str
    private_key: str
    private_key_id: Optional[str] = None
    token_uri: str = GOOGLE_TOKEN_URI

    def __repr__(self) -> str:
        return (
            f"ServiceAccountCredentials(project_id={self.project_id!r}, "
            f"client_email={self.client_email!r})"
        )

    @classmethod
    def from_info(cls, info: Dict[str, Any]) -> ServiceAccountCredentials:
        """Build from a parsed service-account JSON key."""
        missing = [k for k in ("project_id", "client_email", "private_key") if not info.get(k)]
        if missing:
            raise AuthError(f"Service account info is missing: {', '.join(missing)}")
        return cls(
            project_id=info["project_id"],
            client_email=info["client_email"],
            # keys pasted into env vars often carry literal "\n"
            private_key=info["private_key"].replace("\\n", "\n"),
            private_key_id=info.get("private_key_id"),
            token_uri=info.get("token_uri") or GOOGLE_TOKEN_URI,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ServiceAccountCredentials:
        try:
            info = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise AuthError(f"Cannot read service account file '{path}': {e}") from e
        return cls.from_info(info)


class ServiceAccountTokenProvider:
    """OAuth2 tokens for a service account, cached until near expiry.

    Example:
        >>> creds = ServiceAccountCredentials.from_file("key.json")
        >>> auth = ServiceAccountTokenProvider(creds)
        >>> token = await auth.get_token()
    """

    def __init__(
        self,
        credentials: ServiceAccountCredentials,
        *,
        scope: str = DATASTORE_SCOPE,
        http: Optional[httpx.AsyncClient] = None,
        refresh_margin: float = 300.0,
        lifetime: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the provider.

        Args:
            credentials: Service account key fields
            scope: OAuth2 scope to request
            http: Client for the token exchange (created lazily if omitted)
            refresh_margin: Seconds before expiry at which a token is replaced
            lifetime: Requested assertion lifetime in seconds (max 3600)
            clock: Time source, seconds since the epoch
        """
        self._credentials = credentials
        self._scope = scope
        self._http = http
        self._owns_http = http is None
        self._refresh_margin = refresh_margin
        self._lifetime = lifetime
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def credentials(self) -> ServiceAccountCredentials:
        return self._credentials

    def _is_fresh(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at - self._refresh_margin

    async def get_token(self) -> str:
        if self._is_fresh():
            return self._token  # type: ignore[return-value]
        async with self._lock:
            # another coroutine may have refreshed while we waited
            if not self._is_fresh():
                await self._refresh()
            return self._token  # type: ignore[return-value]

    def build_assertion(self, now: Optional[float] = None) -> str:
        """Sign the JWT assertion exchanged for an access token."""
        issued_at = int(now if now is not None else self._clock())
        claims = {
            "iss": self._credentials.client_email,
            "sub": self._credentials.client_email,
            "aud": self._credentials.token_uri,
            "scope": self._scope,
            "iat": issued_at,
            "exp": issued_at + self._lifetime,
        }
        headers = {"kid": self._credentials.private_key_id} if self._credentials.private_key_id else None
        try:
            return jwt.encode(claims, self._credentials.private_key, algorithm="RS256", headers=headers)
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise AuthError(f"Cannot sign token assertion for {self._credentials.client_email}: {e}") from e

    async def _refresh(self) -> None:
        now = self._clock()
        assertion = self.build_assertion(now)
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=30.0)

        try:
            response = await self._http.post(
                self._credentials.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Token exchange failed: {e}") from e

        if response.status_code != 200:
            raise AuthError(
                f"Token exchange rejected (HTTP {response.status_code}): {response.text[:200]}",
                status=response.status_code,
            )
        try:
            payload = response.json()
            token = payload["access_token"]
            expires_in = float(payload.get("expires_in", self._lifetime))
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError(f"Token exchange returned an unexpected body: {e}") from e

        self._token = token
        self._expires_at = now + expires_in
        self.refresh_count += 1
        logger.info(f"Refreshed access token for {self._credentials.client_email}, expires in {expires_in:.0f}s")

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
