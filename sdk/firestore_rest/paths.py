"""
Resource and field paths for the Firestore REST SDK.

Resource names identify databases, collections and documents:

    projects/{project}/databases/{database}/documents/{col}/{doc}/{col}/...

A ResourcePath is the database id plus the segments after ``documents``.
An even (non-zero) number of segments addresses a document, an odd number
a collection, zero segments the database root.

Field paths address values inside a document (``address.city``), with
backtick quoting for segments that are not plain identifiers.

Invariants:
    - parse(p.to_resource_name()) == p for every well-formed path
    - A document path always has a parent collection
    - Segments are never empty and never contain '/'

Example:
    >>> db = DatabaseId("demo-project")
    >>> users = ResourcePath(db, ("users",))
    >>> alice = users.child("alice")
    >>> alice.to_resource_name()
    'projects/demo-project/databases/(default)/documents/users/alice'
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Tuple, Union

from .errors import PathError

DEFAULT_DATABASE = "(default)"

_RESOURCE_NAME_RE = re.compile(
    r"^projects/(?P<project>[^/]+)/databases/(?P<database>[^/]+)/documents(?:/(?P<rest>.*))?$"
)
_SIMPLE_FIELD_RE = re.compile(r"^[_a-zA-Z][_a-zA-Z0-9]*$")


def validate_segment(segment: str, path: str | None = None) -> str:
    """Check a single collection or document id.

    Raises:
        PathError: If the segment is empty, '.', '..' or contains '/'
    """
    if not isinstance(segment, str):
        raise PathError(f"Path segment must be a string, got {type(segment).__name__}", path)
    if not segment:
        raise PathError("Path segment cannot be empty", path)
    if "/" in segment:
        raise PathError(f"Path segment '{segment}' cannot contain '/'", path)
    if segment in (".", ".."):
        raise PathError(f"Path segment cannot be '{segment}'", path)
    return segment


@dataclass(frozen=True)
class DatabaseId:
    """Identifies one Firestore database.

    Attributes:
        project: Google Cloud project id
        database: Database id, "(default)" unless a named database is used
    """

    project: str
    database: str = DEFAULT_DATABASE

    def __post_init__(self) -> None:
        if not self.project or "/" in self.project:
            raise PathError(f"Invalid project id: '{self.project}'")
        if not self.database or "/" in self.database:
            raise PathError(f"Invalid database id: '{self.database}'")

    @property
    def name(self) -> str:
        """Database resource name."""
        return f"projects/{self.project}/databases/{self.database}"

    @property
    def documents_root(self) -> str:
        """Resource name of the documents root."""
        return f"{self.name}/documents"


@dataclass(frozen=True)
class ResourcePath:
    """Path to the documents root, a collection or a document."""

    database: DatabaseId
    segments: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for segment in self.segments:
            validate_segment(segment, "/".join(self.segments))

    @classmethod
    def root(cls, database: DatabaseId) -> ResourcePath:
        return cls(database, ())

    @classmethod
    def from_relative(cls, database: DatabaseId, relative: str) -> ResourcePath:
        """Build a path from a relative name like "users/alice".

        Leading and trailing slashes are ignored; empty inner segments are not.
        """
        stripped = relative.strip("/")
        if not stripped:
            raise PathError("Relative path cannot be empty", relative)
        return cls(database, tuple(stripped.split("/")))

    @property
    def is_root(self) -> bool:
        return not self.segments

    @property
    def is_document(self) -> bool:
        return bool(self.segments) and len(self.segments) % 2 == 0

    @property
    def is_collection(self) -> bool:
        return len(self.segments) % 2 == 1

    @property
    def id(self) -> str:
        """Last segment (collection or document id)."""
        if self.is_root:
            raise PathError("The database root has no id", self.to_resource_name())
        return self.segments[-1]

    @property
    def relative_name(self) -> str:
        """Segments joined with '/', without the database prefix."""
        return "/".join(self.segments)

    def child(self, *segments: str) -> ResourcePath:
        """Append one or more segments."""
        if not segments:
            raise PathError("child() requires at least one segment", self.to_resource_name())
        for segment in segments:
            validate_segment(segment, self.relative_name)
        return ResourcePath(self.database, self.segments + tuple(segments))

    def parent(self) -> ResourcePath:
        """Parent path. A top-level collection's parent is the root.

        Raises:
            PathError: If called on the root
        """
        if self.is_root:
            raise PathError("The database root has no parent", self.to_resource_name())
        return ResourcePath(self.database, self.segments[:-1])

    def to_resource_name(self) -> str:
        if not self.segments:
            return self.database.documents_root
        return f"{self.database.documents_root}/{self.relative_name}"

    def require_document(self) -> ResourcePath:
        if not self.is_document:
            raise PathError(
                f"'{self.relative_name}' is not a document path (even number of segments)",
                self.to_resource_name(),
            )
        return self

    def require_collection(self) -> ResourcePath:
        if not self.is_collection:
            raise PathError(
                f"'{self.relative_name}' is not a collection path (odd number of segments)",
                self.to_resource_name(),
            )
        return self

    def __str__(self) -> str:
        return self.to_resource_name()


def parse(resource_name: str) -> ResourcePath:
    """Parse a full resource name into a ResourcePath.

    Raises:
        PathError: If the prefix is wrong or a segment is empty
    """
    if not isinstance(resource_name, str):
        raise PathError(f"Resource name must be a string, got {type(resource_name).__name__}")
    match = _RESOURCE_NAME_RE.match(resource_name)
    if match is None:
        raise PathError(
            "Resource name must look like projects/{project}/databases/{database}/documents/...",
            resource_name,
        )
    database = DatabaseId(match.group("project"), match.group("database"))
    rest = match.group("rest")
    if rest is None:
        return ResourcePath.root(database)
    segments = tuple(rest.split("/"))
    if any(not s for s in segments):
        raise PathError("Resource name contains an empty segment", resource_name)
    return ResourcePath(database, segments)


def to_resource_name(path: ResourcePath) -> str:
    return path.to_resource_name()


def child(path: ResourcePath, segment: str) -> ResourcePath:
    return path.child(segment)


def parent(path: ResourcePath) -> ResourcePath:
    return path.parent()


@dataclass(frozen=True, init=False)
class FieldPath:
    """Path to a field inside a document.

    Example:
        >>> FieldPath.parse("address.city").segments
        ('address', 'city')
        >>> FieldPath("a.b", "c").to_api_repr()
        '`a.b`.c'
    """

    segments: Tuple[str, ...]

    def __init__(self, *segments: str) -> None:
        if not segments:
            raise PathError("Field path requires at least one segment")
        for segment in segments:
            if not isinstance(segment, str) or not segment:
                raise PathError("Field path segments must be non-empty strings")
        object.__setattr__(self, "segments", tuple(segments))

    @classmethod
    def parse(cls, dotted: str) -> FieldPath:
        """Parse a dotted field path, honoring backtick quoting."""
        segments = []
        current = []
        quoted = False
        i = 0
        while i < len(dotted):
            ch = dotted[i]
            if quoted:
                if ch == "\\" and i + 1 < len(dotted):
                    current.append(dotted[i + 1])
                    i += 2
                    continue
                if ch == "`":
                    quoted = False
                else:
                    current.append(ch)
            elif ch == "`":
                quoted = True
            elif ch == ".":
                if not current:
                    raise PathError(f"Field path '{dotted}' has an empty segment")
                segments.append("".join(current))
                current = []
            else:
                current.append(ch)
            i += 1
        if quoted:
            raise PathError(f"Field path '{dotted}' has an unterminated backtick")
        if not current:
            raise PathError(f"Field path '{dotted}' has an empty segment")
        segments.append("".join(current))
        return cls(*segments)

    @classmethod
    def coerce(cls, value: Union[str, FieldPath]) -> FieldPath:
        if isinstance(value, FieldPath):
            return value
        return cls.parse(value)

    @classmethod
    def document_id(cls) -> FieldPath:
        """Special path ordering/filtering on the document name."""
        return cls("__name__")

    def to_api_repr(self) -> str:
        parts = []
        for segment in self.segments:
            if _SIMPLE_FIELD_RE.match(segment):
                parts.append(segment)
            else:
                escaped = segment.replace("\\", "\\\\").replace("`", "\\`")
                parts.append(f"`{escaped}`")
        return ".".join(parts)

    def is_prefix_of(self, other: FieldPath) -> bool:
        return other.segments[: len(self.segments)] == self.segments

    def __str__(self) -> str:
        return self.to_api_repr()


def field_paths(keys: Iterable[Union[str, FieldPath]]) -> Tuple[FieldPath, ...]:
    return tuple(FieldPath.coerce(k) for k in keys)
