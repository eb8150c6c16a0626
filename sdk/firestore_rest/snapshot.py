"""
Read results: document and query snapshots.

Snapshots are immutable. They keep field values typed internally and
decode to native values on access, so callers get fresh containers they
can mutate without affecting the snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Mapping, Optional, Union

from .errors import FirestoreError
from .paths import FieldPath, parse
from .values import TypedValue, ValueKind, decode_fields, decode_value, fields_from_wire, parse_timestamp

if TYPE_CHECKING:
    from .references import DocumentReference


@dataclass(frozen=True)
class DocumentSnapshot:
    """A document as read at one point in time.

    Attributes:
        reference: Reference to the document
        exists: Whether the document existed at read time
        create_time: Creation time token (None when missing)
        update_time: Update time token, usable as a write precondition
        read_time: Server read time
    """

    reference: DocumentReference
    exists: bool
    fields: Mapping[str, TypedValue] = field(default_factory=lambda: MappingProxyType({}))
    create_time: Optional[str] = None
    update_time: Optional[str] = None
    read_time: Optional[str] = None

    @classmethod
    def from_document(
        cls,
        reference: DocumentReference,
        document: Mapping[str, Any],
        read_time: Optional[str] = None,
    ) -> DocumentSnapshot:
        """Build from a REST Document resource body."""
        return cls(
            reference=reference,
            exists=True,
            fields=MappingProxyType(fields_from_wire(document.get("fields", {}))),
            create_time=document.get("createTime"),
            update_time=document.get("updateTime"),
            read_time=read_time,
        )

    @classmethod
    def missing(cls, reference: DocumentReference, read_time: Optional[str] = None) -> DocumentSnapshot:
        return cls(reference=reference, exists=False, read_time=read_time)

    @property
    def id(self) -> str:
        return self.reference.id

    @property
    def path(self) -> str:
        return self.reference.path

    @property
    def update_datetime(self) -> Optional[datetime]:
        return parse_timestamp(self.update_time) if self.update_time else None

    @property
    def create_datetime(self) -> Optional[datetime]:
        return parse_timestamp(self.create_time) if self.create_time else None

    def data(self) -> Optional[Dict[str, Any]]:
        """Decoded field map, or None if the document does not exist."""
        if not self.exists:
            return None
        return decode_fields(self.fields)

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return self.data()

    def get(self, field_path: Union[str, FieldPath]) -> Any:
        """Value at a field path.

        Raises:
            KeyError: If the document or the field is missing
        """
        path = FieldPath.coerce(field_path)
        if not self.exists:
            raise KeyError(f"Document '{self.path}' does not exist")
        current: Mapping[str, TypedValue] = self.fields
        for i, segment in enumerate(path.segments):
            if segment not in current:
                raise KeyError(f"Field '{path}' not found in '{self.path}'")
            value = current[segment]
            if i == len(path.segments) - 1:
                return decode_value(value)
            if value.kind != ValueKind.MAP:
                raise KeyError(f"Field '{path}' not found in '{self.path}'")
            current = value.value
        raise KeyError(str(path))  # unreachable: field paths are never empty

    def __contains__(self, field_path: Union[str, FieldPath]) -> bool:
        try:
            self.get(field_path)
        except KeyError:
            return False
        return True


@dataclass(frozen=True)
class QuerySnapshot:
    """Result of a query: matching documents in server order."""

    docs: List[DocumentSnapshot]
    read_time: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not self.docs

    @property
    def size(self) -> int:
        return len(self.docs)

    def __iter__(self) -> Iterator[DocumentSnapshot]:
        return iter(self.docs)

    def __len__(self) -> int:
        return len(self.docs)


def snapshot_from_batch_get(client: Any, entry: Mapping[str, Any]) -> DocumentSnapshot:
    """Build a snapshot from one batchGet response element."""
    read_time = entry.get("readTime")
    if "found" in entry:
        document = entry["found"]
        return DocumentSnapshot.from_document(client.document_from_path(parse(document["name"])), document, read_time)
    if "missing" in entry:
        return DocumentSnapshot.missing(client.document_from_path(parse(entry["missing"])), read_time)
    raise FirestoreError(f"batchGet element has neither 'found' nor 'missing': {sorted(entry)}")

