"""
Document and collection references.

References are cheap, addressable handles. They perform no I/O until a
read or write method is awaited, and every such call is independent of any
transaction: get() issues one read, set/create/update/delete each commit one
write and return the server's new update-time token.

Example:
    >>> users = db.collection("users")
    >>> alice = users.doc("alice")
    >>> await alice.set({"name": "Alice", "score": 10})
    >>> snap = await alice.get()
    >>> snap.get("score")
    10
"""

from __future__ import annotations

import secrets
import string
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

from .paths import FieldPath, ResourcePath
from .query import ASCENDING, Query
from .snapshot import DocumentSnapshot, QuerySnapshot
from .writes import build_create, build_delete, build_set, build_update

if TYPE_CHECKING:
    from .client import Firestore

_AUTO_ID_ALPHABET = string.ascii_letters + string.digits
AUTO_ID_LENGTH = 20


def auto_id() -> str:
    """Random 20-character document id."""
    return "".join(secrets.choice(_AUTO_ID_ALPHABET) for _ in range(AUTO_ID_LENGTH))


class DocumentReference:
    """Handle to one document."""

    def __init__(self, client: Firestore, path: ResourcePath) -> None:
        self._client = client
        self._path = path.require_document()

    @property
    def client(self) -> Firestore:
        return self._client

    @property
    def resource_path(self) -> ResourcePath:
        return self._path

    @property
    def id(self) -> str:
        return self._path.id

    @property
    def path(self) -> str:
        """Path relative to the database, e.g. "users/alice"."""
        return self._path.relative_name

    @property
    def name(self) -> str:
        """Full resource name."""
        return self._path.to_resource_name()

    @property
    def parent(self) -> CollectionReference:
        return CollectionReference(self._client, self._path.parent())

    def collection(self, collection_id: str) -> CollectionReference:
        return CollectionReference(self._client, self._path.child(collection_id))

    async def get(self) -> DocumentSnapshot:
        """Read the document. A missing document yields exists=False."""
        return await self._client.get_document(self)

    async def set(
        self,
        data: Mapping[str, Any],
        *,
        merge: Union[bool, list] = False,
    ) -> str:
        """Write the whole document (or merge into it).

        Returns:
            New update-time token
        """
        result = await self._client.commit_writes([build_set(self._path, data, merge=merge)])
        return result.write_time(0)

    async def create(self, data: Mapping[str, Any]) -> str:
        """Write a new document.

        Raises:
            AlreadyExistsError: If the document exists
        """
        result = await self._client.commit_writes([build_create(self._path, data)])
        return result.write_time(0)

    async def update(
        self,
        data: Mapping[Union[str, FieldPath], Any],
        *,
        last_update_time: Optional[str] = None,
        must_exist: Optional[bool] = None,
    ) -> str:
        """Change some fields, addressed by field path.

        Args:
            data: Field path -> value
            last_update_time: Only apply if the document's update time matches
            must_exist: Fail on a missing document (default from settings);
                when False the document is created

        Raises:
            NotFoundError: Document missing and must_exist
            PreconditionFailedError: last_update_time did not match
        """
        if must_exist is None:
            must_exist = self._client.settings.update_must_exist
        write = build_update(
            self._path,
            data,
            must_exist=must_exist,
            last_update_time=last_update_time,
        )
        result = await self._client.commit_writes([write])
        return result.write_time(0)

    async def delete(
        self,
        *,
        last_update_time: Optional[str] = None,
        must_exist: bool = False,
    ) -> str:
        """Delete the document.

        Returns:
            Commit time token

        Raises:
            NotFoundError: Document missing and must_exist
            PreconditionFailedError: last_update_time did not match
        """
        write = build_delete(self._path, must_exist=must_exist, last_update_time=last_update_time)
        result = await self._client.commit_writes([write])
        return result.write_time(0)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DocumentReference):
            return NotImplemented
        return self._path == other._path

    def __hash__(self) -> int:
        return hash(self._path)

    def __repr__(self) -> str:
        return f"DocumentReference({self.path!r})"


class CollectionReference:
    """Handle to one collection."""

    def __init__(self, client: Firestore, path: ResourcePath) -> None:
        self._client = client
        self._path = path.require_collection()

    @property
    def client(self) -> Firestore:
        return self._client

    @property
    def resource_path(self) -> ResourcePath:
        return self._path

    @property
    def id(self) -> str:
        return self._path.id

    @property
    def path(self) -> str:
        return self._path.relative_name

    @property
    def parent(self) -> Optional[DocumentReference]:
        """Owning document, or None for a top-level collection."""
        parent = self._path.parent()
        if parent.is_root:
            return None
        return DocumentReference(self._client, parent)

    def doc(self, document_id: Optional[str] = None) -> DocumentReference:
        """Reference to a child document; a random id when omitted."""
        if document_id is None:
            document_id = auto_id()
        return DocumentReference(self._client, self._path.child(document_id))

    async def add(self, data: Mapping[str, Any]) -> DocumentReference:
        """Create a document with a random id."""
        ref = self.doc()
        await ref.create(data)
        return ref

    def query(self) -> Query:
        return Query(self._client, self._path)

    def where(self, field_path: Union[str, FieldPath], op: str, value: Any) -> Query:
        return self.query().where(field_path, op, value)

    def order_by(self, field_path: Union[str, FieldPath], direction: str = ASCENDING) -> Query:
        return self.query().order_by(field_path, direction)

    def limit(self, count: int) -> Query:
        return self.query().limit(count)

    async def get(self) -> QuerySnapshot:
        """All documents in the collection."""
        return await self.query().get()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CollectionReference):
            return NotImplemented
        return self._path == other._path

    def __hash__(self) -> int:
        return hash(self._path)

    def __repr__(self) -> str:
        return f"CollectionReference({self.path!r})"
