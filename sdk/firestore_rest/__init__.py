"""
Firestore REST SDK - Async client library for Cloud Firestore over REST.

This SDK provides:
- Firestore client with emulator and service-account constructors
- Document and collection references with immediate reads and writes
- Queries translated to structured queries
- Transactions with buffered writes and retry on contention
- The typed-value codec for Firestore's JSON wire format

Example:
    >>> from firestore_rest import Firestore, Increment
    >>>
    >>> async with Firestore.use_emulator("localhost:8080", "demo-project") as db:
    ...     counter = db.doc("counters/visits")
    ...     await counter.set({"count": 0})
    ...
    ...     async def bump(txn):
    ...         snap = await txn.get(counter)
    ...         txn.update(counter, {"count": snap.get("count") + 1})
    ...
    ...     await db.run_transaction(bump)

Invariants:
    - Transaction functions may run more than once; keep them side-effect free
    - Integers stay integers across the wire
    - All I/O goes through an injected Transport and AuthProvider

Version: 0.1.0
"""

__version__ = "0.1.0"

from .auth import (
    AuthProvider,
    ServiceAccountCredentials,
    ServiceAccountTokenProvider,
    StaticTokenProvider,
)
from .client import CommitResult, Firestore, WriteResult
from .config import Settings
from .errors import (
    AlreadyExistsError,
    AuthError,
    CancelledError,
    CodecError,
    CodecErrorKind,
    ContentionError,
    DeadlineExceededError,
    FirestoreError,
    NotFoundError,
    PathError,
    PermissionDeniedError,
    PreconditionFailedError,
    TransactionAbortedError,
    TransportError,
    UsageError,
    ValidationError,
)
from .memory import InMemoryTransport
from .paths import DatabaseId, FieldPath, ResourcePath
from .query import ASCENDING, DESCENDING, Query
from .references import CollectionReference, DocumentReference
from .snapshot import DocumentSnapshot, QuerySnapshot
from .transaction import (
    BackoffPolicy,
    Transaction,
    TransactionOptions,
    TransactionRunner,
    TransactionState,
)
from .transforms import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    Increment,
    Maximum,
    Minimum,
)
from .transport import HttpxTransport, Transport, TransportResponse
from .values import GeoPoint, TypedValue, ValueKind, decode_value, encode_value, from_wire, to_wire

__all__ = [
    # Version
    "__version__",
    # Client
    "Firestore",
    "CommitResult",
    "WriteResult",
    "Settings",
    # References and reads
    "CollectionReference",
    "DocumentReference",
    "DocumentSnapshot",
    "QuerySnapshot",
    "Query",
    "ASCENDING",
    "DESCENDING",
    # Paths
    "DatabaseId",
    "ResourcePath",
    "FieldPath",
    # Values
    "GeoPoint",
    "TypedValue",
    "ValueKind",
    "encode_value",
    "decode_value",
    "to_wire",
    "from_wire",
    # Field transforms
    "DELETE_FIELD",
    "SERVER_TIMESTAMP",
    "Increment",
    "Maximum",
    "Minimum",
    "ArrayUnion",
    "ArrayRemove",
    # Transactions
    "Transaction",
    "TransactionOptions",
    "TransactionRunner",
    "TransactionState",
    "BackoffPolicy",
    # Auth and transport
    "AuthProvider",
    "StaticTokenProvider",
    "ServiceAccountCredentials",
    "ServiceAccountTokenProvider",
    "Transport",
    "TransportResponse",
    "HttpxTransport",
    "InMemoryTransport",
    # Errors
    "FirestoreError",
    "PathError",
    "CodecError",
    "CodecErrorKind",
    "UsageError",
    "AuthError",
    "TransportError",
    "NotFoundError",
    "AlreadyExistsError",
    "PreconditionFailedError",
    "ValidationError",
    "PermissionDeniedError",
    "ContentionError",
    "TransactionAbortedError",
    "CancelledError",
    "DeadlineExceededError",
]
