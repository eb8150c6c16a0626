"""
Buffered writes and their wire encoding.

A PendingWrite is one mutation of one document, built locally and sent
later inside a commit request. The same builders serve the transaction
engine (which buffers writes until commit) and the references (which
commit a single write immediately).

Invariants:
    - Building a write never performs I/O
    - Field-value sentinels are lifted out of the field map: DELETE_FIELD
      into the update mask, transforms into updateTransforms
    - update() and merge-set always carry an update mask, so fields outside
      the mask are left untouched on the server
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import UsageError
from .paths import FieldPath, ResourcePath
from .transforms import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    Increment,
    Maximum,
    Minimum,
    is_transform,
)
from .values import TypedValue, encode_fields, encode_value, fields_to_wire, to_wire


class WriteKind(Enum):
    SET = "set"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Precondition:
    """Server-checked condition on the current document.

    Attributes:
        exists: Document must (True) or must not (False) exist
        update_time: Document's update time must equal this token exactly
    """

    exists: Optional[bool] = None
    update_time: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        if self.update_time is not None:
            return {"updateTime": self.update_time}
        return {"exists": self.exists}


@dataclass(frozen=True)
class FieldTransform:
    field_path: FieldPath
    transform: Any

    def to_wire(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"fieldPath": self.field_path.to_api_repr()}
        transform = self.transform
        if transform is SERVER_TIMESTAMP:
            result["setToServerValue"] = "REQUEST_TIME"
        elif isinstance(transform, Increment):
            result["increment"] = to_wire(encode_value(transform.value))
        elif isinstance(transform, Maximum):
            result["maximum"] = to_wire(encode_value(transform.value))
        elif isinstance(transform, Minimum):
            result["minimum"] = to_wire(encode_value(transform.value))
        elif isinstance(transform, ArrayUnion):
            result["appendMissingElements"] = {
                "values": [to_wire(encode_value(v)) for v in transform.values]
            }
        elif isinstance(transform, ArrayRemove):
            result["removeAllFromArray"] = {
                "values": [to_wire(encode_value(v)) for v in transform.values]
            }
        else:
            raise UsageError(f"Unsupported field transform: {transform!r}")
        return result


@dataclass(frozen=True)
class PendingWrite:
    """One buffered mutation.

    Attributes:
        kind: set / create / update / delete
        path: Target document
        fields: Typed field values to write (nested maps for dotted paths)
        mask: Update mask; None means replace the whole document
        transforms: Server-side transforms applied after the field write
        precondition: Optional existence/update-time check
    """

    kind: WriteKind
    path: ResourcePath
    fields: Dict[str, TypedValue] = field(default_factory=dict)
    mask: Optional[Tuple[FieldPath, ...]] = None
    transforms: Tuple[FieldTransform, ...] = ()
    precondition: Optional[Precondition] = None

    def to_wire(self) -> Dict[str, Any]:
        name = self.path.to_resource_name()
        if self.kind == WriteKind.DELETE:
            write: Dict[str, Any] = {"delete": name}
        else:
            write = {"update": {"name": name, "fields": fields_to_wire(self.fields)}}
            if self.mask is not None:
                write["updateMask"] = {"fieldPaths": [p.to_api_repr() for p in self.mask]}
            if self.transforms:
                write["updateTransforms"] = [t.to_wire() for t in self.transforms]
        if self.precondition is not None:
            write["currentDocument"] = self.precondition.to_wire()
        return write


@dataclass
class _Split:
    data: Dict[str, Any] = field(default_factory=dict)
    transforms: List[FieldTransform] = field(default_factory=list)
    deletes: List[FieldPath] = field(default_factory=list)
    leaves: List[FieldPath] = field(default_factory=list)


def _split_sentinels(
    data: Mapping[str, Any],
    prefix: Tuple[str, ...],
    out: _Split,
    allow_delete: bool,
) -> Dict[str, Any]:
    """Copy ``data`` without sentinels, recording where they were."""
    clean: Dict[str, Any] = {}
    for key, value in data.items():
        if not isinstance(key, str) or not key:
            raise UsageError(f"Field names must be non-empty strings, got {key!r}")
        path = prefix + (key,)
        if value is DELETE_FIELD:
            if not allow_delete:
                raise UsageError(
                    f"DELETE_FIELD at '{FieldPath(*path)}' is only allowed in update() or set(merge=True)"
                )
            out.deletes.append(FieldPath(*path))
        elif is_transform(value):
            out.transforms.append(FieldTransform(FieldPath(*path), value))
        elif isinstance(value, Mapping) and value:
            nested = _split_sentinels(value, path, out, allow_delete)
            if nested:
                clean[key] = nested
        else:
            clean[key] = value
            out.leaves.append(FieldPath(*path))
    return clean


def _set_nested(target: Dict[str, Any], path: FieldPath, value: Any) -> None:
    node = target
    for segment in path.segments[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = {}
            node[segment] = child
        node = child
    node[path.segments[-1]] = value


def build_set(
    path: ResourcePath,
    data: Mapping[str, Any],
    merge: Union[bool, List[Union[str, FieldPath]]] = False,
) -> PendingWrite:
    """Build a set write.

    Args:
        path: Document path
        data: Full field map (nested dicts are maps)
        merge: False replaces the document; True merges the given leaves;
            a list of field paths merges only those paths
    """
    path.require_document()
    if not isinstance(data, Mapping):
        raise UsageError(f"set() data must be a mapping, got {type(data).__name__}")

    split = _Split()
    clean = _split_sentinels(data, (), split, allow_delete=bool(merge))
    fields = encode_fields(clean)

    mask: Optional[Tuple[FieldPath, ...]] = None
    if merge is True:
        mask = tuple(split.leaves) + tuple(split.deletes)
    elif merge:
        mask = tuple(FieldPath.coerce(p) for p in merge)

    return PendingWrite(
        kind=WriteKind.SET,
        path=path,
        fields=fields,
        mask=mask,
        transforms=tuple(split.transforms),
    )


def build_create(path: ResourcePath, data: Mapping[str, Any]) -> PendingWrite:
    """Build a set that fails with AlreadyExistsError if the document exists."""
    write = build_set(path, data)
    return PendingWrite(
        kind=WriteKind.CREATE,
        path=write.path,
        fields=write.fields,
        transforms=write.transforms,
        precondition=Precondition(exists=False),
    )


def build_update(
    path: ResourcePath,
    data: Mapping[Union[str, FieldPath], Any],
    *,
    must_exist: bool = True,
    last_update_time: Optional[str] = None,
) -> PendingWrite:
    """Build a partial update.

    Keys are field paths: ``{"address.city": "Oslo"}`` changes one nested
    field and leaves the rest of ``address`` alone.

    Args:
        path: Document path
        data: Field path -> new value (or sentinel)
        must_exist: Fail with NotFoundError if the document is missing;
            when False a missing document is created
        last_update_time: Fail with PreconditionFailedError unless the
            document's update time equals this token
    """
    path.require_document()
    if not data:
        raise UsageError("update() requires at least one field")

    keyed = [(FieldPath.coerce(key), value) for key, value in data.items()]
    paths = [p for p, _ in keyed]
    for i, a in enumerate(paths):
        for b in paths[i + 1:]:
            if a.is_prefix_of(b) or b.is_prefix_of(a):
                raise UsageError(f"Field paths '{a}' and '{b}' overlap in update()")

    nested: Dict[str, Any] = {}
    mask: List[FieldPath] = []
    transforms: List[FieldTransform] = []
    for field_path, value in keyed:
        if value is DELETE_FIELD:
            mask.append(field_path)
        elif is_transform(value):
            transforms.append(FieldTransform(field_path, value))
        elif isinstance(value, Mapping):
            split = _Split()
            clean = _split_sentinels(value, field_path.segments, split, allow_delete=False)
            transforms.extend(split.transforms)
            _set_nested(nested, field_path, clean)
            mask.append(field_path)
        else:
            _set_nested(nested, field_path, value)
            mask.append(field_path)

    if last_update_time is not None:
        precondition: Optional[Precondition] = Precondition(update_time=last_update_time)
    elif must_exist:
        precondition = Precondition(exists=True)
    else:
        precondition = None

    return PendingWrite(
        kind=WriteKind.UPDATE,
        path=path,
        fields=encode_fields(nested),
        mask=tuple(mask),
        transforms=tuple(transforms),
        precondition=precondition,
    )


def build_delete(
    path: ResourcePath,
    *,
    must_exist: bool = False,
    last_update_time: Optional[str] = None,
) -> PendingWrite:
    """Build a delete. Deleting a missing document succeeds unless must_exist."""
    path.require_document()
    if last_update_time is not None:
        precondition: Optional[Precondition] = Precondition(update_time=last_update_time)
    elif must_exist:
        precondition = Precondition(exists=True)
    else:
        precondition = None
    return PendingWrite(kind=WriteKind.DELETE, path=path, precondition=precondition)


def commit_body(
    writes: List[PendingWrite],
    transaction: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"writes": [w.to_wire() for w in writes]}
    if transaction is not None:
        body["transaction"] = transaction
    return body
