"""
Unit tests for token providers.

Tests cover:
- Static emulator token
- Service account credential loading
- JWT assertion claims and signature
- Token caching, expiry and single-flight refresh
- Token exchange failures
"""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from firestore_rest.auth import (
    DATASTORE_SCOPE,
    GOOGLE_TOKEN_URI,
    JWT_BEARER_GRANT,
    AuthProvider,
    ServiceAccountCredentials,
    ServiceAccountTokenProvider,
    StaticTokenProvider,
)
from firestore_rest.errors import AuthError


@pytest.fixture(scope="module")
def rsa_key():
    """Freshly generated RSA key pair."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return pem, key.public_key()


@pytest.fixture
def credentials(rsa_key):
    pem, _ = rsa_key
    return ServiceAccountCredentials(
        project_id="demo-project",
        client_email="svc@demo-project.iam.gserviceaccount.com",
        private_key=pem,
        private_key_id="key-1",
    )


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TokenEndpoint:
    """httpx handler standing in for the OAuth2 token endpoint."""

    def __init__(self, status: int = 200, expires_in: int = 3600) -> None:
        self.status = status
        self.expires_in = expires_in
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append(form)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "invalid_grant"})
        return httpx.Response(
            200,
            json={
                "access_token": f"token-{len(self.requests)}",
                "expires_in": self.expires_in,
                "token_type": "Bearer",
            },
        )


def make_provider(credentials, endpoint, clock=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return ServiceAccountTokenProvider(credentials, http=http, clock=clock or FakeClock())


class TestStaticTokenProvider:
    @pytest.mark.asyncio
    async def test_emulator_token(self):
        provider = StaticTokenProvider()
        assert await provider.get_token() == "owner"
        assert isinstance(provider, AuthProvider)

    @pytest.mark.asyncio
    async def test_custom_token(self):
        assert await StaticTokenProvider("abc").get_token() == "abc"


class TestServiceAccountCredentials:
    """Tests for credential loading."""

    def test_from_info_unescapes_newlines(self):
        creds = ServiceAccountCredentials.from_info(
            {
                "project_id": "p",
                "client_email": "a@b",
                "private_key": "-----BEGIN-----\\nabc\\n-----END-----",
            }
        )
        assert "\n" in creds.private_key
        assert "\\n" not in creds.private_key
        assert creds.token_uri == GOOGLE_TOKEN_URI

    def test_from_info_missing_fields(self):
        with pytest.raises(AuthError) as exc_info:
            ServiceAccountCredentials.from_info({"project_id": "p"})
        assert "client_email" in exc_info.value.message

    def test_from_file(self, tmp_path, rsa_key):
        pem, _ = rsa_key
        key_file = tmp_path / "key.json"
        key_file.write_text(
            json.dumps(
                {
                    "type": "service_account",
                    "project_id": "p",
                    "client_email": "svc@p.iam.gserviceaccount.com",
                    "private_key": pem,
                    "private_key_id": "kid-7",
                }
            )
        )
        creds = ServiceAccountCredentials.from_file(key_file)
        assert creds.private_key_id == "kid-7"

    def test_from_file_unreadable(self, tmp_path):
        with pytest.raises(AuthError):
            ServiceAccountCredentials.from_file(tmp_path / "missing.json")

    def test_repr_hides_key(self, credentials):
        assert "PRIVATE" not in repr(credentials)


class TestServiceAccountTokenProvider:
    """Tests for the JWT-bearer token flow."""

    def test_assertion_claims(self, credentials, rsa_key):
        """The assertion is an RS256 JWT for the token endpoint."""
        _, public_key = rsa_key
        provider = ServiceAccountTokenProvider(credentials, clock=FakeClock(1000.0))

        assertion = provider.build_assertion()
        claims = jwt.decode(
            assertion,
            public_key,
            algorithms=["RS256"],
            audience=GOOGLE_TOKEN_URI,
            options={"verify_exp": False, "verify_iat": False},
        )
        assert claims["iss"] == credentials.client_email
        assert claims["sub"] == credentials.client_email
        assert claims["scope"] == DATASTORE_SCOPE
        assert claims["iat"] == 1000
        assert claims["exp"] == 4600
        assert jwt.get_unverified_header(assertion)["kid"] == "key-1"

    def test_bad_key(self):
        creds = ServiceAccountCredentials(project_id="p", client_email="a@b", private_key="not a key")
        with pytest.raises(AuthError):
            ServiceAccountTokenProvider(creds).build_assertion()

    @pytest.mark.asyncio
    async def test_exchange(self, credentials):
        """The assertion is exchanged with the jwt-bearer grant."""
        endpoint = TokenEndpoint()
        provider = make_provider(credentials, endpoint)

        assert await provider.get_token() == "token-1"
        assert endpoint.requests[0]["grant_type"] == JWT_BEARER_GRANT
        assert endpoint.requests[0]["assertion"].count(".") == 2

    @pytest.mark.asyncio
    async def test_token_cached(self, credentials):
        endpoint = TokenEndpoint()
        provider = make_provider(credentials, endpoint)

        await provider.get_token()
        await provider.get_token()

        assert provider.refresh_count == 1
        assert len(endpoint.requests) == 1

    @pytest.mark.asyncio
    async def test_refresh_near_expiry(self, credentials):
        """Tokens are replaced once inside the refresh margin."""
        endpoint = TokenEndpoint(expires_in=3600)
        clock = FakeClock()
        provider = make_provider(credentials, endpoint, clock)

        assert await provider.get_token() == "token-1"
        clock.now += 3000
        assert await provider.get_token() == "token-1"
        clock.now += 400
        assert await provider.get_token() == "token-2"
        assert provider.refresh_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, credentials):
        """Many concurrent get_token() calls trigger a single exchange."""
        endpoint = TokenEndpoint()
        provider = make_provider(credentials, endpoint)

        tokens = await asyncio.gather(*(provider.get_token() for _ in range(10)))

        assert set(tokens) == {"token-1"}
        assert provider.refresh_count == 1

    @pytest.mark.asyncio
    async def test_rejected_exchange(self, credentials):
        provider = make_provider(credentials, TokenEndpoint(status=400))
        with pytest.raises(AuthError) as exc_info:
            await provider.get_token()
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_network_failure(self, credentials):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        provider = ServiceAccountTokenProvider(credentials, http=http)
        with pytest.raises(AuthError):
            await provider.get_token()

    @pytest.mark.asyncio
    async def test_malformed_body(self, credentials):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        provider = ServiceAccountTokenProvider(credentials, http=http)
        with pytest.raises(AuthError):
            await provider.get_token()
