"""
In-memory Firestore REST backend for testing.

This module provides a Transport that answers the REST calls the SDK makes
from a process-local document store, for:
- Unit and integration tests
- Local development without the emulator or network access

Supported calls:
    GET {document}, :batchGet, :runQuery, :commit, :beginTransaction,
    :rollback

Transactions are optimistic: every document read under a token records
the version it saw, and a commit under that token fails with ABORTED (409)
if any of those documents changed since. Commits apply all writes or none.

Invariants:
    - All data is lost on process exit
    - Update-time tokens are strictly increasing across commits
    - A token is unusable after its commit, failed commit or rollback

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep response bodies shaped exactly like the REST API's
    - Add injection hooks here rather than special-casing tests in the SDK
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import secrets
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from .errors import FirestoreError
from .paths import FieldPath, parse
from .transport import TransportResponse
from .values import TypedValue, ValueKind, fields_from_wire, fields_to_wire, format_timestamp, from_wire, to_wire

logger = logging.getLogger(__name__)

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)

_HTTP_CODES = {
    "INVALID_ARGUMENT": 400,
    "FAILED_PRECONDITION": 400,
    "UNAUTHENTICATED": 401,
    "PERMISSION_DENIED": 403,
    "NOT_FOUND": 404,
    "ABORTED": 409,
    "ALREADY_EXISTS": 409,
    "INTERNAL": 500,
    "UNAVAILABLE": 503,
}


class _WriteRejected(Exception):
    def __init__(self, status: str, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass
class StoredDocument:
    """One stored document with its version counter."""

    fields: Dict[str, TypedValue]
    create_time: str
    update_time: str
    version: int

    def to_wire(self, name: str) -> Dict[str, Any]:
        return {
            "name": name,
            "fields": fields_to_wire(self.fields),
            "createTime": self.create_time,
            "updateTime": self.update_time,
        }


@dataclass
class _TransactionState:
    read_only: bool
    reads: Dict[str, int] = field(default_factory=dict)
    active: bool = True


@dataclass(frozen=True)
class RecordedRequest:
    method: str
    verb: str
    resource: str
    body: Any
    headers: Dict[str, str]


class InMemoryTransport:
    """Transport that serves the Firestore REST API from memory.

    Attributes:
        requests: Every request received, in order
        closed: Whether close() was called

    Example:
        >>> backend = InMemoryTransport()
        >>> db = Firestore("demo", auth=StaticTokenProvider(), transport=backend)
        >>> await db.doc("users/alice").set({"score": 10})
        >>> backend.count("commit")
        1
    """

    def __init__(self) -> None:
        self._documents: Dict[str, StoredDocument] = {}
        self._transactions: Dict[str, _TransactionState] = {}
        self._tick = 0
        self._versions = 0
        self._lock = asyncio.Lock()
        self._forced_aborts = 0
        self._failures: Dict[str, List[Tuple[int, str, str]]] = defaultdict(list)
        self._latency: Dict[str, float] = {}
        self.requests: List[RecordedRequest] = []
        self.closed = False

    # -------------------------------------------------------------------------
    # Test hooks
    # -------------------------------------------------------------------------

    def count(self, verb: str) -> int:
        """Number of requests received for a verb ("get", "commit", ...)."""
        return sum(1 for r in self.requests if r.verb == verb)

    def transactional_commits(self) -> int:
        return sum(1 for r in self.requests if r.verb == "commit" and (r.body or {}).get("transaction"))

    def abort_next_commits(self, count: int = 1) -> None:
        """Fail the next ``count`` transactional commits with ABORTED."""
        self._forced_aborts += count

    def fail_next(
        self,
        verb: str,
        status: str = "INTERNAL",
        message: str = "Injected failure",
        http_status: Optional[int] = None,
    ) -> None:
        """Fail the next request for ``verb`` with a google error body."""
        code = http_status or _HTTP_CODES.get(status, 500)
        self._failures[verb].append((code, status, message))

    def set_latency(self, verb: str, seconds: float) -> None:
        """Delay every request for ``verb``."""
        self._latency[verb] = seconds

    def open_transactions(self) -> List[str]:
        return [token for token, state in self._transactions.items() if state.active]

    def document(self, relative: str) -> Optional[StoredDocument]:
        """Stored document by its path relative to any database, or None."""
        for name, doc in self._documents.items():
            if name.endswith(f"/documents/{relative}"):
                return doc
        return None

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        self.closed = True
        logger.debug("InMemoryTransport closed")

    async def send(
        self,
        method: str,
        url: str,
        body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> TransportResponse:
        resource, verb = _split_url(url)
        headers = dict(headers or {})
        self.requests.append(RecordedRequest(method, verb, resource, body, headers))

        delay = self._latency.get(verb)
        if delay:
            await asyncio.sleep(delay)

        if not headers.get("Authorization", "").startswith("Bearer "):
            return _error("UNAUTHENTICATED", "Missing bearer token")
        if self._failures[verb]:
            code, status, message = self._failures[verb].pop(0)
            return _error(status, message, code)

        handler = {
            ("GET", "get"): self._get,
            ("POST", "batchGet"): self._batch_get,
            ("POST", "runQuery"): self._run_query,
            ("POST", "commit"): self._commit,
            ("POST", "beginTransaction"): self._begin,
            ("POST", "rollback"): self._rollback,
        }.get((method, verb))
        if handler is None:
            return _error("NOT_FOUND", f"No handler for {method} {verb}")

        async with self._lock:
            try:
                return handler(resource, body or {})
            except _WriteRejected as e:
                return _error(e.status, e.message)
            except FirestoreError as e:
                return _error("INVALID_ARGUMENT", e.message)

    # -------------------------------------------------------------------------
    # Clock and transactions
    # -------------------------------------------------------------------------

    def _now(self) -> str:
        return format_timestamp(_EPOCH + timedelta(microseconds=self._tick))

    def _advance(self) -> str:
        self._tick += 1
        return self._now()

    def _transaction(self, token: Optional[str]) -> Optional[_TransactionState]:
        if token is None:
            return None
        state = self._transactions.get(token)
        if state is None or not state.active:
            raise _WriteRejected("INVALID_ARGUMENT", "The referenced transaction has expired or is no longer valid.")
        return state

    def _record_read(self, txn: Optional[_TransactionState], name: str) -> None:
        if txn is None:
            return
        doc = self._documents.get(name)
        txn.reads.setdefault(name, doc.version if doc else 0)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _get(self, resource: str, body: Dict[str, Any]) -> TransportResponse:
        doc = self._documents.get(resource)
        if doc is None:
            return _error("NOT_FOUND", f"Document \"{resource}\" not found")
        return TransportResponse(200, doc.to_wire(resource))

    def _batch_get(self, resource: str, body: Dict[str, Any]) -> TransportResponse:
        txn = self._transaction(body.get("transaction"))
        read_time = self._now()
        rows = []
        for name in body.get("documents", []):
            parse(name).require_document()
            self._record_read(txn, name)
            doc = self._documents.get(name)
            if doc is None:
                rows.append({"missing": name, "readTime": read_time})
            else:
                rows.append({"found": doc.to_wire(name), "readTime": read_time})
        return TransportResponse(200, rows)

    def _begin(self, resource: str, body: Dict[str, Any]) -> TransportResponse:
        options = body.get("options") or {}
        token = secrets.token_urlsafe(16)
        self._transactions[token] = _TransactionState(read_only="readOnly" in options)
        return TransportResponse(200, {"transaction": token})

    def _rollback(self, resource: str, body: Dict[str, Any]) -> TransportResponse:
        txn = self._transaction(body.get("transaction"))
        if txn is not None:
            txn.active = False
        return TransportResponse(200, {})

    def _commit(self, resource: str, body: Dict[str, Any]) -> TransportResponse:
        txn = self._transaction(body.get("transaction"))
        writes = body.get("writes", [])
        if txn is not None:
            txn.active = False
            if txn.read_only and writes:
                raise _WriteRejected("INVALID_ARGUMENT", "Cannot modify entities in a read-only transaction.")
            if self._forced_aborts > 0:
                self._forced_aborts -= 1
                raise _WriteRejected("ABORTED", "Transaction lock timeout (injected).")
            for name, version in txn.reads.items():
                doc = self._documents.get(name)
                if (doc.version if doc else 0) != version:
                    raise _WriteRejected("ABORTED", f"Too much contention on these documents: {name}")

        staged = dict(self._documents)
        commit_time = self._advance()
        commit_dt = _EPOCH + timedelta(microseconds=self._tick)
        results = []
        for write in writes:
            results.append(self._apply(staged, write, commit_time, commit_dt))
        self._documents = staged
        return TransportResponse(200, {"commitTime": commit_time, "writeResults": results})

    def _apply(
        self,
        staged: Dict[str, StoredDocument],
        write: Dict[str, Any],
        commit_time: str,
        commit_dt: datetime,
    ) -> Dict[str, Any]:
        if "delete" in write:
            name = write["delete"]
            _check_precondition(staged.get(name), write.get("currentDocument"), name)
            staged.pop(name, None)
            return {}

        update = write["update"]
        name = update["name"]
        parse(name).require_document()
        current = staged.get(name)
        _check_precondition(current, write.get("currentDocument"), name)

        incoming = fields_from_wire(update.get("fields", {}))
        mask = write.get("updateMask")
        if mask is None or current is None:
            fields = {} if mask is not None else incoming
            if mask is not None:
                for path in mask.get("fieldPaths", []):
                    _apply_mask_path(fields, incoming, FieldPath.parse(path).segments)
        else:
            fields = dict(current.fields)
            for path in mask.get("fieldPaths", []):
                _apply_mask_path(fields, incoming, FieldPath.parse(path).segments)

        transform_results = []
        for transform in write.get("updateTransforms", []):
            transform_results.append(_apply_transform(fields, transform, commit_dt))

        self._versions += 1
        staged[name] = StoredDocument(
            fields=fields,
            create_time=current.create_time if current else commit_time,
            update_time=commit_time,
            version=self._versions,
        )
        result: Dict[str, Any] = {"updateTime": commit_time}
        if transform_results:
            result["transformResults"] = transform_results
        return result

    def _run_query(self, resource: str, body: Dict[str, Any]) -> TransportResponse:
        txn = self._transaction(body.get("transaction"))
        query = body.get("structuredQuery") or {}
        sources = query.get("from") or []
        if len(sources) != 1 or sources[0].get("allDescendants"):
            raise _WriteRejected("INVALID_ARGUMENT", "Exactly one direct collection source is supported")
        prefix = f"{resource}/{sources[0]['collectionId']}/"

        matches = []
        for name, doc in self._documents.items():
            if not name.startswith(prefix) or "/" in name[len(prefix):]:
                continue
            if "where" in query and not _matches(name, doc, query["where"]):
                continue
            matches.append((name, doc))

        orders = [(FieldPath.parse(o["field"]["fieldPath"]), o.get("direction", "ASCENDING")) for o in query.get("orderBy", [])]
        if orders:
            matches = [(n, d) for n, d in matches if all(_field_value(n, d, p) is not None for p, _ in orders)]
        matches = _sort(matches, orders)
        if "limit" in query:
            limit = query["limit"]
            matches = matches[: int(limit["value"] if isinstance(limit, dict) else limit)]

        read_time = self._now()
        rows = []
        for name, doc in matches:
            self._record_read(txn, name)
            rows.append({"document": doc.to_wire(name), "readTime": read_time})
        if not rows:
            rows.append({"readTime": read_time})
        return TransportResponse(200, rows)


# =============================================================================
# Helpers
# =============================================================================


def _split_url(url: str) -> Tuple[str, str]:
    path = unquote(urlsplit(url).path)
    index = path.find("projects/")
    resource = path[index:] if index >= 0 else path.lstrip("/")
    last = resource.rsplit("/", 1)[-1]
    if ":" in last:
        resource, verb = resource.rsplit(":", 1)
        return resource, verb
    return resource, "get"


def _error(status: str, message: str, http_status: Optional[int] = None) -> TransportResponse:
    code = http_status or _HTTP_CODES.get(status, 500)
    return TransportResponse(code, {"error": {"code": code, "message": message, "status": status}})


def _check_precondition(current: Optional[StoredDocument], precondition: Optional[Dict[str, Any]], name: str) -> None:
    if not precondition:
        return
    if "exists" in precondition:
        if precondition["exists"] and current is None:
            raise _WriteRejected("NOT_FOUND", f"No document to update: {name}")
        if not precondition["exists"] and current is not None:
            raise _WriteRejected("ALREADY_EXISTS", f"Document already exists: {name}")
    if "updateTime" in precondition:
        if current is None or current.update_time != precondition["updateTime"]:
            raise _WriteRejected("FAILED_PRECONDITION", f"The update time does not match: {name}")


def _get_path(fields: Dict[str, TypedValue], segments: Tuple[str, ...]) -> Optional[TypedValue]:
    current: Any = fields
    for i, segment in enumerate(segments):
        if segment not in current:
            return None
        value = current[segment]
        if i == len(segments) - 1:
            return value
        if value.kind != ValueKind.MAP:
            return None
        current = value.value
    return None


def _set_path(fields: Dict[str, TypedValue], segments: Tuple[str, ...], value: TypedValue) -> None:
    head = segments[0]
    if len(segments) == 1:
        fields[head] = value
        return
    child = fields.get(head)
    nested = dict(child.value) if child is not None and child.kind == ValueKind.MAP else {}
    _set_path(nested, segments[1:], value)
    fields[head] = TypedValue(ValueKind.MAP, nested)


def _delete_path(fields: Dict[str, TypedValue], segments: Tuple[str, ...]) -> None:
    head = segments[0]
    if len(segments) == 1:
        fields.pop(head, None)
        return
    child = fields.get(head)
    if child is None or child.kind != ValueKind.MAP:
        return
    nested = dict(child.value)
    _delete_path(nested, segments[1:])
    fields[head] = TypedValue(ValueKind.MAP, nested)


def _apply_mask_path(fields: Dict[str, TypedValue], incoming: Dict[str, TypedValue], segments: Tuple[str, ...]) -> None:
    value = _get_path(incoming, segments)
    if value is None:
        _delete_path(fields, segments)
    else:
        _set_path(fields, segments, value)


def _is_number(value: Optional[TypedValue]) -> bool:
    return value is not None and value.kind in (ValueKind.INTEGER, ValueKind.DOUBLE)


def _apply_transform(fields: Dict[str, TypedValue], transform: Dict[str, Any], commit_dt: datetime) -> Dict[str, Any]:
    segments = FieldPath.parse(transform["fieldPath"]).segments
    current = _get_path(fields, segments)

    if "setToServerValue" in transform:
        result = TypedValue(ValueKind.TIMESTAMP, commit_dt)
    elif "increment" in transform:
        operand = from_wire(transform["increment"])
        base = current if _is_number(current) else TypedValue(ValueKind.INTEGER, 0)
        total = base.value + operand.value
        if base.kind == ValueKind.INTEGER and operand.kind == ValueKind.INTEGER:
            result = TypedValue(ValueKind.INTEGER, max(-(2**63), min(2**63 - 1, total)))
        else:
            result = TypedValue(ValueKind.DOUBLE, float(total))
    elif "maximum" in transform or "minimum" in transform:
        is_max = "maximum" in transform
        operand = from_wire(transform["maximum" if is_max else "minimum"])
        if not _is_number(current):
            result = operand
        else:
            keep_current = current.value >= operand.value if is_max else current.value <= operand.value
            result = current if keep_current else operand
    elif "appendMissingElements" in transform:
        existing = list(current.value) if current is not None and current.kind == ValueKind.ARRAY else []
        for element in transform["appendMissingElements"].get("values", []):
            item = from_wire(element)
            if not any(_compare(item, e) == 0 for e in existing):
                existing.append(item)
        result = TypedValue(ValueKind.ARRAY, tuple(existing))
    elif "removeAllFromArray" in transform:
        existing = list(current.value) if current is not None and current.kind == ValueKind.ARRAY else []
        removed = [from_wire(e) for e in transform["removeAllFromArray"].get("values", [])]
        kept = [e for e in existing if not any(_compare(e, r) == 0 for r in removed)]
        result = TypedValue(ValueKind.ARRAY, tuple(kept))
    else:
        raise _WriteRejected("INVALID_ARGUMENT", f"Unsupported transform: {sorted(transform)}")

    _set_path(fields, segments, result)
    if "appendMissingElements" in transform or "removeAllFromArray" in transform:
        return {"nullValue": None}
    return to_wire(result)


# =============================================================================
# Query evaluation
# =============================================================================

_TYPE_ORDER = {
    ValueKind.NULL: 0,
    ValueKind.BOOLEAN: 1,
    ValueKind.INTEGER: 2,
    ValueKind.DOUBLE: 2,
    ValueKind.TIMESTAMP: 3,
    ValueKind.STRING: 4,
    ValueKind.BYTES: 5,
    ValueKind.REFERENCE: 6,
    ValueKind.GEO_POINT: 7,
    ValueKind.ARRAY: 8,
    ValueKind.MAP: 9,
}


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def _compare(a: TypedValue, b: TypedValue) -> int:
    """Total order over values, matching Firestore's cross-type ordering."""
    rank_a, rank_b = _TYPE_ORDER[a.kind], _TYPE_ORDER[b.kind]
    if rank_a != rank_b:
        return _cmp(rank_a, rank_b)
    kind = a.kind
    if kind == ValueKind.NULL:
        return 0
    if rank_a == _TYPE_ORDER[ValueKind.INTEGER]:
        a_nan = isinstance(a.value, float) and math.isnan(a.value)
        b_nan = isinstance(b.value, float) and math.isnan(b.value)
        if a_nan or b_nan:
            return _cmp(not a_nan, not b_nan)
        return _cmp(a.value, b.value)
    if kind == ValueKind.REFERENCE:
        return _cmp(a.value.segments, b.value.segments)
    if kind == ValueKind.GEO_POINT:
        return _cmp((a.value.latitude, a.value.longitude), (b.value.latitude, b.value.longitude))
    if kind == ValueKind.ARRAY:
        for x, y in zip(a.value, b.value):
            result = _compare(x, y)
            if result:
                return result
        return _cmp(len(a.value), len(b.value))
    if kind == ValueKind.MAP:
        items_a, items_b = sorted(a.value.items()), sorted(b.value.items())
        for (key_a, val_a), (key_b, val_b) in zip(items_a, items_b):
            if key_a != key_b:
                return _cmp(key_a, key_b)
            result = _compare(val_a, val_b)
            if result:
                return result
        return _cmp(len(items_a), len(items_b))
    return _cmp(a.value, b.value)


def _field_value(name: str, doc: StoredDocument, path: FieldPath) -> Optional[TypedValue]:
    if path.segments == ("__name__",):
        return TypedValue(ValueKind.REFERENCE, parse(name))
    return _get_path(doc.fields, path.segments)


def _is_nan(value: TypedValue) -> bool:
    return value.kind == ValueKind.DOUBLE and math.isnan(value.value)


def _matches(name: str, doc: StoredDocument, node: Dict[str, Any]) -> bool:
    if "compositeFilter" in node:
        composite = node["compositeFilter"]
        results = (_matches(name, doc, f) for f in composite.get("filters", []))
        return any(results) if composite.get("op") == "OR" else all(results)

    if "unaryFilter" in node:
        unary = node["unaryFilter"]
        value = _field_value(name, doc, FieldPath.parse(unary["field"]["fieldPath"]))
        if value is None:
            return False
        op = unary["op"]
        if op == "IS_NULL":
            return value.kind == ValueKind.NULL
        if op == "IS_NOT_NULL":
            return value.kind != ValueKind.NULL
        if op == "IS_NAN":
            return _is_nan(value)
        if op == "IS_NOT_NAN":
            return not _is_nan(value)
        raise _WriteRejected("INVALID_ARGUMENT", f"Unknown unary operator {op}")

    field_filter = node["fieldFilter"]
    op = field_filter["op"]
    operand = from_wire(field_filter["value"])
    value = _field_value(name, doc, FieldPath.parse(field_filter["field"]["fieldPath"]))
    if value is None:
        return False

    if op == "EQUAL":
        return _compare(value, operand) == 0
    if op == "NOT_EQUAL":
        return value.kind != ValueKind.NULL and _compare(value, operand) != 0
    if op in ("LESS_THAN", "LESS_THAN_OR_EQUAL", "GREATER_THAN", "GREATER_THAN_OR_EQUAL"):
        if _TYPE_ORDER[value.kind] != _TYPE_ORDER[operand.kind] or _is_nan(value) or _is_nan(operand):
            return False
        result = _compare(value, operand)
        return {
            "LESS_THAN": result < 0,
            "LESS_THAN_OR_EQUAL": result <= 0,
            "GREATER_THAN": result > 0,
            "GREATER_THAN_OR_EQUAL": result >= 0,
        }[op]
    if op == "ARRAY_CONTAINS":
        return value.kind == ValueKind.ARRAY and any(_compare(e, operand) == 0 for e in value.value)
    if op == "ARRAY_CONTAINS_ANY":
        return value.kind == ValueKind.ARRAY and any(
            _compare(e, candidate) == 0 for e in value.value for candidate in operand.value
        )
    if op == "IN":
        return any(_compare(value, candidate) == 0 for candidate in operand.value)
    if op == "NOT_IN":
        return value.kind != ValueKind.NULL and all(_compare(value, candidate) != 0 for candidate in operand.value)
    raise _WriteRejected("INVALID_ARGUMENT", f"Unknown operator {op}")


def _sort(
    matches: List[Tuple[str, StoredDocument]],
    orders: List[Tuple[FieldPath, str]],
) -> List[Tuple[str, StoredDocument]]:
    # Stable sorts applied from the least significant key; name is the implicit tiebreak.
    result = sorted(matches, key=lambda item: parse(item[0]).segments)
    for path, direction in reversed(orders):
        result = _sort_by(result, path, direction == "DESCENDING")
    return result


def _sort_by(
    matches: List[Tuple[str, StoredDocument]],
    path: FieldPath,
    descending: bool,
) -> List[Tuple[str, StoredDocument]]:
    def compare(left: Tuple[str, StoredDocument], right: Tuple[str, StoredDocument]) -> int:
        return _compare(_field_value(left[0], left[1], path), _field_value(right[0], right[1], path))

    return sorted(matches, key=functools.cmp_to_key(compare), reverse=descending)
