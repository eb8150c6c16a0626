"""
Query translation for the Firestore REST SDK.

Chained where() calls build a filter tree that is encoded into the
``structuredQuery`` body of one ``runQuery`` RPC. Comparison values go
through the value codec; result rows are decoded into DocumentSnapshots.

Supported operators:
    ==, !=, <, <=, >, >=, array-contains, array-contains-any, in, not-in

Invariants:
    - Query objects are immutable; each builder call returns a new Query
    - in / not-in / array-contains-any take a list
    - Comparisons against None or NaN become unary IS_[NOT_]NULL / IS_[NOT_]NAN
    - Inside a transaction a query read carries the transaction token

Example:
    >>> active = await db.collection("users").where("active", "==", True).get()
    >>> [snap.id for snap in active]
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import UsageError
from .paths import FieldPath, ResourcePath, parse
from .snapshot import DocumentSnapshot, QuerySnapshot
from .values import TypedValue, encode_value, to_wire

if TYPE_CHECKING:
    from .client import Firestore

OPERATORS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "array-contains": "ARRAY_CONTAINS",
    "array-contains-any": "ARRAY_CONTAINS_ANY",
    "in": "IN",
    "not-in": "NOT_IN",
}
LIST_OPERATORS = frozenset({"in", "not-in", "array-contains-any"})

ASCENDING = "ASCENDING"
DESCENDING = "DESCENDING"


@dataclass(frozen=True)
class FieldFilter:
    """Binary comparison of a field against a value."""

    field_path: FieldPath
    op: str
    value: TypedValue

    def to_wire(self) -> Dict[str, Any]:
        return {
            "fieldFilter": {
                "field": {"fieldPath": self.field_path.to_api_repr()},
                "op": self.op,
                "value": to_wire(self.value),
            }
        }


@dataclass(frozen=True)
class UnaryFilter:
    """IS_NULL, IS_NOT_NULL, IS_NAN or IS_NOT_NAN on a field."""

    field_path: FieldPath
    op: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "unaryFilter": {
                "field": {"fieldPath": self.field_path.to_api_repr()},
                "op": self.op,
            }
        }


Filter = Union[FieldFilter, UnaryFilter]


@dataclass(frozen=True)
class Order:
    field_path: FieldPath
    direction: str = ASCENDING

    def to_wire(self) -> Dict[str, Any]:
        return {"field": {"fieldPath": self.field_path.to_api_repr()}, "direction": self.direction}


def make_filter(field_path: Union[str, FieldPath], op: str, value: Any) -> Filter:
    """Translate one where() clause.

    Raises:
        UsageError: For unknown operators or operands of the wrong shape
    """
    path = FieldPath.coerce(field_path)
    if op not in OPERATORS:
        raise UsageError(f"Unsupported operator '{op}'. Use one of: {', '.join(OPERATORS)}")

    is_nan = isinstance(value, float) and math.isnan(value)
    if value is None or is_nan:
        if op not in ("==", "!="):
            raise UsageError(f"Only '==' and '!=' can compare against {value!r}")
        if value is None:
            return UnaryFilter(path, "IS_NULL" if op == "==" else "IS_NOT_NULL")
        return UnaryFilter(path, "IS_NAN" if op == "==" else "IS_NOT_NAN")

    if op in LIST_OPERATORS:
        if not isinstance(value, (list, tuple)) or not value:
            raise UsageError(f"Operator '{op}' requires a non-empty list, got {value!r}")

    return FieldFilter(path, OPERATORS[op], encode_value(value))


class Query:
    """Immutable query over one collection.

    Built from CollectionReference.where()/order_by()/limit(); not usually
    constructed directly.
    """

    def __init__(
        self,
        client: Firestore,
        collection_path: ResourcePath,
        filters: Tuple[Filter, ...] = (),
        orders: Tuple[Order, ...] = (),
        limit_count: Optional[int] = None,
    ) -> None:
        collection_path.require_collection()
        self._client = client
        self._collection_path = collection_path
        self._filters = filters
        self._orders = orders
        self._limit = limit_count

    @property
    def client(self) -> Firestore:
        return self._client

    @property
    def collection_path(self) -> ResourcePath:
        return self._collection_path

    @property
    def filters(self) -> Tuple[Filter, ...]:
        return self._filters

    def _copy(self, **changes: Any) -> Query:
        params = {
            "filters": self._filters,
            "orders": self._orders,
            "limit_count": self._limit,
        }
        params.update(changes)
        return Query(self._client, self._collection_path, **params)

    def where(self, field_path: Union[str, FieldPath], op: str, value: Any) -> Query:
        return self._copy(filters=self._filters + (make_filter(field_path, op, value),))

    def order_by(self, field_path: Union[str, FieldPath], direction: str = ASCENDING) -> Query:
        direction = direction.upper()
        if direction not in (ASCENDING, DESCENDING):
            raise UsageError(f"Order direction must be ASCENDING or DESCENDING, got '{direction}'")
        return self._copy(orders=self._orders + (Order(FieldPath.coerce(field_path), direction),))

    def limit(self, count: int) -> Query:
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise UsageError(f"limit() requires a positive integer, got {count!r}")
        return self._copy(limit_count=count)

    @property
    def parent_resource_name(self) -> str:
        """Resource the runQuery RPC is issued against."""
        return self._collection_path.parent().to_resource_name()

    def to_structured_query(self) -> Dict[str, Any]:
        query: Dict[str, Any] = {"from": [{"collectionId": self._collection_path.id}]}
        if len(self._filters) == 1:
            query["where"] = self._filters[0].to_wire()
        elif self._filters:
            query["where"] = {
                "compositeFilter": {
                    "op": "AND",
                    "filters": [f.to_wire() for f in self._filters],
                }
            }
        if self._orders:
            query["orderBy"] = [o.to_wire() for o in self._orders]
        if self._limit is not None:
            query["limit"] = self._limit
        return query

    def request_body(self, transaction: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"structuredQuery": self.to_structured_query()}
        if transaction is not None:
            body["transaction"] = transaction
        return body

    async def get(self) -> QuerySnapshot:
        """Run the query outside any transaction."""
        return await self._client.run_query(self)

    def __repr__(self) -> str:
        return f"Query({self._collection_path.relative_name!r}, filters={len(self._filters)})"


def snapshots_from_rows(client: Firestore, rows: Iterable[Dict[str, Any]]) -> QuerySnapshot:
    """Decode runQuery response rows; rows without a document are progress markers."""
    docs: List[DocumentSnapshot] = []
    read_time = None
    for row in rows:
        read_time = row.get("readTime", read_time)
        document = row.get("document")
        if document is None:
            continue
        reference = client.document_from_path(parse(document["name"]))
        docs.append(DocumentSnapshot.from_document(reference, document, row.get("readTime")))
    return QuerySnapshot(docs=docs, read_time=read_time)

