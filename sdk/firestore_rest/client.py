"""
Firestore client for the Python SDK.

This module provides the main client interface:
- Firestore: Connection to one database, entry point for references,
  queries and transactions
- CommitResult / WriteResult: Outcome of a commit request

Every request goes through Firestore.request(), which attaches the bearer
token from the injected AuthProvider, sends through the injected Transport
and maps non-2xx responses to the SDK error taxonomy.

Example:
    >>> async with Firestore.use_emulator("localhost:8080", "demo-project") as db:
    ...     await db.collection("users").doc("alice").set({"score": 10})
    ...     result = await db.run_transaction(add_bonus)

Invariants:
    - Auth and transport are injected collaborators, never globals
    - Non-transactional reads and writes never carry a transaction token
    - Transactional reads and commits always carry exactly one token
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from .auth import (
    AuthProvider,
    ServiceAccountCredentials,
    ServiceAccountTokenProvider,
    StaticTokenProvider,
)
from .config import DEFAULT_BASE_URL, Settings
from .errors import FirestoreError, NotFoundError, UsageError, error_from_response
from .paths import DatabaseId, ResourcePath
from .query import Query, snapshots_from_rows
from .references import CollectionReference, DocumentReference
from .snapshot import DocumentSnapshot, QuerySnapshot, snapshot_from_batch_get
from .transaction import Transaction, TransactionOptions, TransactionRunner
from .transport import HttpxTransport, Transport
from .values import format_timestamp
from .writes import PendingWrite, commit_body

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class WriteResult:
    """Per-write outcome of a commit.

    Attributes:
        update_time: New update time (absent for deletes)
        transform_results: Server-computed transform values (wire form)
    """

    update_time: Optional[str] = None
    transform_results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class CommitResult:
    """Outcome of one commit request."""

    commit_time: Optional[str]
    write_results: List[WriteResult] = field(default_factory=list)

    def write_time(self, index: int) -> str:
        """Update time of one write, falling back to the commit time."""
        if index < len(self.write_results) and self.write_results[index].update_time:
            return self.write_results[index].update_time  # type: ignore[return-value]
        return self.commit_time or ""

    @classmethod
    def from_response(cls, payload: Optional[Dict[str, Any]]) -> CommitResult:
        payload = payload or {}
        return cls(
            commit_time=payload.get("commitTime"),
            write_results=[
                WriteResult(
                    update_time=r.get("updateTime"),
                    transform_results=r.get("transformResults", []),
                )
                for r in payload.get("writeResults", [])
            ],
        )


class Firestore:
    """Client for one Firestore database over REST.

    Provides a clean Python API for documents, queries and transactions.
    Use the use_emulator / use_service_account / from_settings constructors
    unless you need to inject custom collaborators.
    """

    def __init__(
        self,
        project_id: str,
        *,
        auth: AuthProvider,
        database_id: str = "(default)",
        transport: Optional[Transport] = None,
        base_url: str = DEFAULT_BASE_URL,
        settings: Optional[Settings] = None,
    ) -> None:
        """Initialize client.

        Args:
            project_id: Google Cloud project id
            auth: Bearer-token provider
            database_id: Database id
            transport: Request transport (httpx by default)
            base_url: REST endpoint up to and including the version
            settings: Defaults for transactions and writes
        """
        self._settings = settings or Settings(project_id=project_id, database_id=database_id)
        self._database = DatabaseId(project_id, database_id)
        self._auth = auth
        self._transport = transport or HttpxTransport(timeout=self._settings.request_timeout)
        self._base_url = base_url.rstrip("/")

    @classmethod
    def use_emulator(
        cls,
        emulator_host: Optional[str] = None,
        project_id: Optional[str] = None,
        *,
        database_id: str = "(default)",
        transport: Optional[Transport] = None,
        settings: Optional[Settings] = None,
    ) -> Firestore:
        """Connect to the Firestore emulator.

        Args:
            emulator_host: host:port (default from FIRESTORE_EMULATOR_HOST)
            project_id: Any project id (default from settings, else "demo-project")
        """
        settings = settings or Settings()
        host = emulator_host or settings.emulator_host
        if not host:
            raise UsageError("No emulator host given and FIRESTORE_EMULATOR_HOST is not set")
        project = project_id or settings.project_id or "demo-project"
        logger.info(f"Using Firestore emulator at {host} for project {project}")
        return cls(
            project,
            auth=StaticTokenProvider(),
            database_id=database_id,
            transport=transport,
            base_url=f"http://{host}/v1",
            settings=settings,
        )

    @classmethod
    def use_service_account(
        cls,
        project_id: str,
        *,
        client_email: str,
        private_key: str,
        private_key_id: Optional[str] = None,
        database_id: str = "(default)",
        transport: Optional[Transport] = None,
        settings: Optional[Settings] = None,
    ) -> Firestore:
        """Connect to production Firestore with service-account credentials."""
        credentials = ServiceAccountCredentials.from_info(
            {
                "project_id": project_id,
                "client_email": client_email,
                "private_key": private_key,
                "private_key_id": private_key_id,
            }
        )
        settings = settings or Settings(project_id=project_id, database_id=database_id)
        return cls(
            project_id,
            auth=ServiceAccountTokenProvider(credentials),
            database_id=database_id,
            transport=transport,
            base_url=settings.base_url,
            settings=settings,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[Transport] = None,
    ) -> Firestore:
        """Connect using environment configuration.

        The emulator wins when FIRESTORE_EMULATOR_HOST is set; otherwise a
        credentials file or an email/key pair is required.
        """
        settings = settings or Settings()
        if settings.uses_emulator:
            return cls.use_emulator(
                database_id=settings.database_id,
                transport=transport,
                settings=settings,
            )

        if settings.credentials_file:
            credentials = ServiceAccountCredentials.from_file(settings.credentials_file)
        elif settings.client_email and settings.private_key and settings.project_id:
            credentials = ServiceAccountCredentials(
                project_id=settings.project_id,
                client_email=settings.client_email,
                private_key=settings.private_key,
            )
        else:
            raise UsageError(
                "Set FIRESTORE_EMULATOR_HOST, FIRESTORE_CREDENTIALS_FILE, or "
                "FIRESTORE_PROJECT_ID + FIRESTORE_CLIENT_EMAIL + FIRESTORE_PRIVATE_KEY"
            )
        return cls(
            settings.project_id or credentials.project_id,
            auth=ServiceAccountTokenProvider(credentials),
            database_id=settings.database_id,
            transport=transport,
            base_url=settings.base_url,
            settings=settings,
        )

    @property
    def database(self) -> DatabaseId:
        return self._database

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def auth(self) -> AuthProvider:
        return self._auth

    @property
    def transport(self) -> Transport:
        return self._transport

    async def close(self) -> None:
        """Close the transport and any token client."""
        await self._transport.close()
        close_auth = getattr(self._auth, "close", None)
        if close_auth is not None:
            await close_auth()

    async def __aenter__(self) -> Firestore:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # References
    # -------------------------------------------------------------------------

    def collection(self, path: str) -> CollectionReference:
        """Reference to a collection, e.g. "users" or "users/alice/posts"."""
        return CollectionReference(self, ResourcePath.from_relative(self._database, path))

    def doc(self, path: str) -> DocumentReference:
        """Reference to a document, e.g. "users/alice"."""
        return DocumentReference(self, ResourcePath.from_relative(self._database, path))

    def document_from_path(self, path: ResourcePath) -> DocumentReference:
        if path.database != self._database:
            raise UsageError(
                f"Document '{path}' belongs to {path.database.name}, not {self._database.name}"
            )
        return DocumentReference(self, path)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _url(self, resource: str, verb: Optional[str] = None) -> str:
        url = f"{self._base_url}/{resource}"
        if verb:
            url = f"{url}:{verb}"
        return url

    async def request(self, method: str, url: str, body: Optional[Any] = None) -> Any:
        """Send one authenticated request and return the decoded body.

        Raises:
            AuthError: Token could not be obtained or was rejected
            TransportError: Network failure or 5xx
            FirestoreError: Mapped from the error response
        """
        token = await self._auth.get_token()
        headers = {"Authorization": f"Bearer {token}"}
        response = await self._transport.send(method, url, body, headers)
        if not response.ok:
            error = error_from_response(response.status, response.json, url)
            logger.debug(f"{method} {url} failed: {error.code} {error.message}")
            raise error
        return response.json

    async def get_document(self, ref: DocumentReference) -> DocumentSnapshot:
        """Read one document; a 404 becomes a snapshot with exists=False."""
        try:
            document = await self.request("GET", self._url(ref.name))
        except NotFoundError:
            return DocumentSnapshot.missing(ref)
        return DocumentSnapshot.from_document(ref, document)

    async def batch_get(
        self,
        paths: Sequence[ResourcePath],
        transaction: Optional[str] = None,
    ) -> List[DocumentSnapshot]:
        """Read several documents in one request, in the order given."""
        if not paths:
            return []
        names = [p.require_document().to_resource_name() for p in paths]
        body: Dict[str, Any] = {"documents": names}
        if transaction is not None:
            body["transaction"] = transaction
        rows = await self.request("POST", self._url(self._database.documents_root, "batchGet"), body)

        by_name: Dict[str, DocumentSnapshot] = {}
        for row in rows or []:
            snapshot = snapshot_from_batch_get(self, row)
            by_name[snapshot.reference.name] = snapshot
        missing = [n for n in names if n not in by_name]
        if missing:
            raise FirestoreError(f"batchGet response omitted {len(missing)} document(s): {missing[:3]}")
        return [by_name[n] for n in names]

    async def get_all(self, refs: Sequence[DocumentReference]) -> List[DocumentSnapshot]:
        """Read several documents outside any transaction."""
        return await self.batch_get([r.resource_path for r in refs])

    async def run_query(self, query: Query, transaction: Optional[str] = None) -> QuerySnapshot:
        """Issue one runQuery RPC."""
        rows = await self.request(
            "POST",
            self._url(query.parent_resource_name, "runQuery"),
            query.request_body(transaction),
        )
        return snapshots_from_rows(self, rows or [])

    async def commit_writes(
        self,
        writes: List[PendingWrite],
        transaction: Optional[str] = None,
    ) -> CommitResult:
        """Commit writes atomically, inside a transaction when a token is given."""
        payload = await self.request(
            "POST",
            self._url(self._database.documents_root, "commit"),
            commit_body(writes, transaction),
        )
        return CommitResult.from_response(payload)

    async def begin_transaction(
        self,
        *,
        read_only: bool = False,
        read_time: Optional[datetime] = None,
        retry_transaction: Optional[str] = None,
    ) -> str:
        """Start a server transaction and return its token."""
        if read_only:
            mode: Dict[str, Any] = {}
            if read_time is not None:
                mode["readTime"] = format_timestamp(read_time)
            options: Dict[str, Any] = {"readOnly": mode}
        else:
            mode = {}
            if retry_transaction is not None:
                mode["retryTransaction"] = retry_transaction
            options = {"readWrite": mode}

        payload = await self.request(
            "POST",
            self._url(self._database.documents_root, "beginTransaction"),
            {"options": options},
        )
        token = (payload or {}).get("transaction")
        if not token:
            raise FirestoreError("beginTransaction response carried no transaction token")
        return token

    async def rollback(self, transaction: str) -> None:
        await self.request(
            "POST",
            self._url(self._database.documents_root, "rollback"),
            {"transaction": transaction},
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        options: Optional[TransactionOptions] = None,
    ) -> T:
        """Run ``fn`` inside a transaction, retrying on contention.

        IMPORTANT: ``fn`` may be called more than once. When a concurrent
        writer invalidates what ``fn`` read, its buffered writes are thrown
        away and ``fn`` runs again from scratch against fresh data. Keep it
        free of side effects outside the transaction's own get/set/update/
        delete calls (no HTTP calls, no appends to outer lists, no emails).

        Args:
            fn: Async function receiving the Transaction handle
            options: Attempts, backoff, timeouts, cancellation, read-only mode

        Returns:
            Whatever ``fn`` returned on the attempt that committed

        Raises:
            TransactionAbortedError: Contention on every attempt
            CancelledError: Cancelled via options.cancel_event
            DeadlineExceededError: attempt_timeout or total_timeout exceeded
            FirestoreError: Any other failure, after a best-effort rollback
        """
        options = options or TransactionOptions.from_settings(self._settings)
        return await TransactionRunner(self, options).run(fn)

    def __repr__(self) -> str:
        return f"Firestore({self._database.name!r}, base_url={self._base_url!r})"
