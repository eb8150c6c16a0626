"""
Field-value sentinels for writes.

Sentinels stand in for values the server computes at commit time:
- DELETE_FIELD: remove the field (update / merge-set only)
- SERVER_TIMESTAMP: the commit time
- Increment, Maximum, Minimum: numeric transforms
- ArrayUnion, ArrayRemove: array membership transforms

They are never encoded as values; writes.py lifts them out of the field
map into the write's update mask or ``updateTransforms``.

Example:
    >>> txn.update(ref, {"score": Increment(10), "seen_at": SERVER_TIMESTAMP})
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Tuple, Union

Number = Union[int, float]


class Sentinel:
    """Singleton marker value."""

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return f"<{self._name}>"


DELETE_FIELD = Sentinel("DELETE_FIELD")
SERVER_TIMESTAMP = Sentinel("SERVER_TIMESTAMP")


@dataclass(frozen=True)
class Increment:
    value: Number


@dataclass(frozen=True)
class Maximum:
    value: Number


@dataclass(frozen=True)
class Minimum:
    value: Number


@dataclass(frozen=True, init=False)
class ArrayUnion:
    values: Tuple[Any, ...]

    def __init__(self, *values: Any) -> None:
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True, init=False)
class ArrayRemove:
    values: Tuple[Any, ...]

    def __init__(self, *values: Any) -> None:
        object.__setattr__(self, "values", tuple(values))


Transform = Union[Increment, Maximum, Minimum, ArrayUnion, ArrayRemove]


def is_transform(value: Any) -> bool:
    return value is SERVER_TIMESTAMP or isinstance(
        value, (Increment, Maximum, Minimum, ArrayUnion, ArrayRemove)
    )
