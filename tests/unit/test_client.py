"""
Unit tests for the Firestore client request plumbing.

Tests cover:
- Constructors (emulator, settings)
- Authenticated requests and error mapping
- batchGet ordering and commit results
- beginTransaction / rollback bodies
"""

from unittest.mock import AsyncMock

import pytest

from firestore_rest.auth import StaticTokenProvider
from firestore_rest.client import CommitResult, Firestore
from firestore_rest.config import Settings
from firestore_rest.errors import (
    ContentionError,
    FirestoreError,
    NotFoundError,
    TransportError,
    UsageError,
)
from firestore_rest.transport import TransportResponse

ROOT = "projects/demo-project/databases/(default)/documents"
BASE = "http://localhost:8080/v1"


@pytest.fixture
def transport():
    """Mock transport answering 200 {} by default."""
    transport = AsyncMock()
    transport.send = AsyncMock(return_value=TransportResponse(200, {}))
    return transport


@pytest.fixture
def db(transport):
    settings = Settings(project_id="demo-project", emulator_host=None)
    return Firestore.use_emulator("localhost:8080", "demo-project", transport=transport, settings=settings)


def sent(transport, index=-1):
    """(method, url, body, headers) of a recorded send() call."""
    return transport.send.call_args_list[index].args


class TestConstructors:
    """Tests for client construction."""

    def test_use_emulator(self, db):
        assert db.database.name == "projects/demo-project/databases/(default)"
        assert isinstance(db.auth, StaticTokenProvider)
        assert repr(db) == f"Firestore('projects/demo-project/databases/(default)', base_url='{BASE}')"

    def test_use_emulator_requires_host(self, monkeypatch):
        monkeypatch.delenv("FIRESTORE_EMULATOR_HOST", raising=False)
        with pytest.raises(UsageError):
            Firestore.use_emulator(settings=Settings(emulator_host=None))

    def test_from_settings_prefers_emulator(self, transport):
        settings = Settings(project_id="p", emulator_host="127.0.0.1:9000", database_id="db2")
        db = Firestore.from_settings(settings, transport=transport)
        assert db.database.name == "projects/p/databases/db2"
        assert db._url("x") == "http://127.0.0.1:9000/v1/x"

    def test_from_settings_without_credentials(self, monkeypatch):
        for var in ("EMULATOR_HOST", "CREDENTIALS_FILE", "CLIENT_EMAIL", "PRIVATE_KEY"):
            monkeypatch.delenv(f"FIRESTORE_{var}", raising=False)
        with pytest.raises(UsageError):
            Firestore.from_settings(Settings(emulator_host=None, credentials_file=None))

    @pytest.mark.asyncio
    async def test_context_manager_closes_transport(self, db, transport):
        async with db:
            pass
        transport.close.assert_awaited_once()


class TestRequest:
    """Tests for Firestore.request()."""

    @pytest.mark.asyncio
    async def test_bearer_token_attached(self, db, transport):
        await db.request("GET", db._url(f"{ROOT}/users/alice"))
        method, url, body, headers = sent(transport)
        assert method == "GET"
        assert url == f"{BASE}/{ROOT}/users/alice"
        assert body is None
        assert headers == {"Authorization": "Bearer owner"}

    @pytest.mark.asyncio
    async def test_error_mapped(self, db, transport):
        transport.send.return_value = TransportResponse(
            409, {"error": {"code": 409, "status": "ABORTED", "message": "Too much contention"}}
        )
        with pytest.raises(ContentionError, match="Too much contention"):
            await db.request("POST", db._url(ROOT, "commit"), {})

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self, db, transport):
        transport.send.return_value = TransportResponse(503, None)
        with pytest.raises(TransportError) as exc_info:
            await db.request("POST", db._url(ROOT, "commit"), {})
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_get_document_not_found_is_missing_snapshot(self, db, transport):
        transport.send.return_value = TransportResponse(404, {"error": {"status": "NOT_FOUND", "message": "gone"}})
        snap = await db.get_document(db.doc("users/alice"))
        assert not snap.exists

    @pytest.mark.asyncio
    async def test_not_found_elsewhere_raises(self, db, transport):
        transport.send.return_value = TransportResponse(404, {"error": {"status": "NOT_FOUND", "message": "gone"}})
        with pytest.raises(NotFoundError):
            await db.commit_writes([])


class TestBatchGet:
    """Tests for batchGet decoding."""

    @pytest.mark.asyncio
    async def test_order_follows_request(self, db, transport):
        transport.send.return_value = TransportResponse(
            200,
            [
                {"missing": f"{ROOT}/users/b", "readTime": "2024-01-01T00:00:00Z"},
                {
                    "found": {
                        "name": f"{ROOT}/users/a",
                        "fields": {"n": {"integerValue": "1"}},
                        "updateTime": "2024-01-01T00:00:00.000001Z",
                    },
                    "readTime": "2024-01-01T00:00:00Z",
                },
            ],
        )

        snaps = await db.get_all([db.doc("users/a"), db.doc("users/b")])

        assert [s.id for s in snaps] == ["a", "b"]
        assert snaps[0].get("n") == 1
        assert not snaps[1].exists
        assert sent(transport)[2] == {"documents": [f"{ROOT}/users/a", f"{ROOT}/users/b"]}

    @pytest.mark.asyncio
    async def test_omitted_document_raises(self, db, transport):
        transport.send.return_value = TransportResponse(200, [])
        with pytest.raises(FirestoreError):
            await db.get_all([db.doc("users/a")])

    @pytest.mark.asyncio
    async def test_empty_request_sends_nothing(self, db, transport):
        assert await db.batch_get([]) == []
        transport.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transaction_token_passed(self, db, transport):
        transport.send.return_value = TransportResponse(200, [{"missing": f"{ROOT}/users/a"}])
        await db.batch_get([db.doc("users/a").resource_path], transaction="dHhu")
        assert sent(transport)[2]["transaction"] == "dHhu"


class TestTransactionCalls:
    """Tests for beginTransaction / commit / rollback request bodies."""

    @pytest.mark.asyncio
    async def test_begin_read_write(self, db, transport):
        transport.send.return_value = TransportResponse(200, {"transaction": "dHgx"})
        assert await db.begin_transaction() == "dHgx"
        method, url, body, _ = sent(transport)
        assert url == f"{BASE}/{ROOT}:beginTransaction"
        assert body == {"options": {"readWrite": {}}}

    @pytest.mark.asyncio
    async def test_begin_retry(self, db, transport):
        transport.send.return_value = TransportResponse(200, {"transaction": "dHgy"})
        await db.begin_transaction(retry_transaction="dHgx")
        assert sent(transport)[2] == {"options": {"readWrite": {"retryTransaction": "dHgx"}}}

    @pytest.mark.asyncio
    async def test_begin_without_token_fails(self, db, transport):
        transport.send.return_value = TransportResponse(200, {})
        with pytest.raises(FirestoreError):
            await db.begin_transaction()

    @pytest.mark.asyncio
    async def test_rollback(self, db, transport):
        await db.rollback("dHgx")
        method, url, body, _ = sent(transport)
        assert (method, url, body) == ("POST", f"{BASE}/{ROOT}:rollback", {"transaction": "dHgx"})

    def test_commit_result(self):
        result = CommitResult.from_response(
            {
                "commitTime": "2024-01-01T00:00:02Z",
                "writeResults": [{"updateTime": "2024-01-01T00:00:01Z"}, {}],
            }
        )
        assert result.write_time(0) == "2024-01-01T00:00:01Z"
        assert result.write_time(1) == "2024-01-01T00:00:02Z"
        assert result.write_time(5) == "2024-01-01T00:00:02Z"
