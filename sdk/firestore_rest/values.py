"""
Typed-value codec for the Firestore REST SDK.

Firestore's JSON wire format wraps every field value in a one-key envelope
naming its type (``{"integerValue": "42"}``). This module maps between:

- native Python values (None, bool, int, float, datetime, str, bytes,
  ResourcePath, GeoPoint, list, dict)
- TypedValue, a tagged union with exactly one ValueKind
- the JSON envelope sent over the wire

The three layers keep field maps typed inside the SDK: request bodies are
only built from TypedValues, and responses are parsed into TypedValues
before anything is decoded to native values.

Invariants:
    - decode_value(encode_value(v)) == v for every supported native value
      (NaN decodes to NaN)
    - int stays int: integers are never coerced to doubles in either direction
    - An absent key and a key holding None are distinct
    - Unknown envelope tags raise CodecError(UNKNOWN_VARIANT), never a default

How to change safely:
    - New server value kinds need a ValueKind member plus encode/decode/wire
      branches; until then they fail loudly on decode
    - Keep timestamp formatting fixed at microsecond precision in UTC

Example:
    >>> tv = encode_value({"score": 10, "ratio": 0.5})
    >>> to_wire(tv)
    {'mapValue': {'fields': {'score': {'integerValue': '10'}, 'ratio': {'doubleValue': 0.5}}}}
"""

from __future__ import annotations

import base64
import binascii
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Union

from .errors import CodecError, CodecErrorKind, PathError
from .paths import ResourcePath, parse
from .transforms import DELETE_FIELD, is_transform

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?([Zz]|[+-]\d{2}:\d{2})$"
)
_SPECIAL_DOUBLES = {
    "NaN": math.nan,
    "Infinity": math.inf,
    "-Infinity": -math.inf,
}


class ValueKind(Enum):
    """Value variants, named by their wire envelope key."""

    NULL = "nullValue"
    BOOLEAN = "booleanValue"
    INTEGER = "integerValue"
    DOUBLE = "doubleValue"
    TIMESTAMP = "timestampValue"
    STRING = "stringValue"
    BYTES = "bytesValue"
    REFERENCE = "referenceValue"
    GEO_POINT = "geoPointValue"
    ARRAY = "arrayValue"
    MAP = "mapValue"


_KIND_BY_TAG = {kind.value: kind for kind in ValueKind}


@dataclass(frozen=True)
class GeoPoint:
    """Latitude/longitude pair in degrees."""

    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude must be within [-90, 90], got {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude must be within [-180, 180], got {self.longitude}")


@dataclass(frozen=True)
class TypedValue:
    """One Firestore value: a kind plus its payload.

    Payload by kind:
        NULL: None
        BOOLEAN: bool
        INTEGER: int (signed 64-bit)
        DOUBLE: float
        TIMESTAMP: timezone-aware datetime in UTC
        STRING: str
        BYTES: bytes
        REFERENCE: ResourcePath to a document
        GEO_POINT: GeoPoint
        ARRAY: tuple of TypedValue
        MAP: dict of str -> TypedValue
    """

    kind: ValueKind
    value: Any = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TypedValue):
            return NotImplemented
        if self.kind != other.kind:
            return False
        if self.kind == ValueKind.DOUBLE and math.isnan(self.value):
            return math.isnan(other.value)
        return self.value == other.value


NULL = TypedValue(ValueKind.NULL)

NativeValue = Union[
    None,
    bool,
    int,
    float,
    datetime,
    str,
    bytes,
    ResourcePath,
    GeoPoint,
    List[Any],
    Dict[str, Any],
]


# =============================================================================
# Timestamps
# =============================================================================


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as RFC 3339 UTC with microseconds.

    Raises:
        CodecError: If the datetime is naive
    """
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise CodecError(
            f"Timestamp {value!r} has no timezone; attach one (e.g. timezone.utc)",
            CodecErrorKind.NAIVE_DATETIME,
        )
    utc = value.astimezone(timezone.utc)
    return (
        f"{utc.year:04d}-{utc.month:02d}-{utc.day:02d}"
        f"T{utc.hour:02d}:{utc.minute:02d}:{utc.second:02d}.{utc.microsecond:06d}Z"
    )


def parse_timestamp(text: Any) -> datetime:
    """Parse an RFC 3339 timestamp with any offset into an aware UTC datetime.

    Fractional seconds beyond microseconds are truncated.

    Raises:
        CodecError: If the text is not a valid timestamp
    """
    if not isinstance(text, str):
        raise CodecError(
            f"Timestamp must be a string, got {type(text).__name__}",
            CodecErrorKind.MALFORMED_TIMESTAMP,
        )
    match = _TIMESTAMP_RE.match(text)
    if match is None:
        raise CodecError(f"Malformed timestamp: '{text}'", CodecErrorKind.MALFORMED_TIMESTAMP)

    year, month, day, hour, minute, second = (int(match.group(i)) for i in range(1, 7))
    fraction = match.group(7) or ""
    microsecond = int(fraction[:6].ljust(6, "0")) if fraction else 0

    zone = match.group(8)
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        if hours > 23 or minutes > 59:
            raise CodecError(f"Malformed timestamp offset: '{text}'", CodecErrorKind.MALFORMED_TIMESTAMP)
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))

    try:
        parsed = datetime(year, month, day, hour, minute, second, microsecond, tzinfo=tz)
    except ValueError as e:
        raise CodecError(f"Malformed timestamp '{text}': {e}", CodecErrorKind.MALFORMED_TIMESTAMP) from e
    return parsed.astimezone(timezone.utc)


# =============================================================================
# Native <-> TypedValue
# =============================================================================


def _reference_path(value: Any) -> ResourcePath | None:
    if isinstance(value, ResourcePath):
        return value
    path = getattr(value, "resource_path", None)
    if isinstance(path, ResourcePath):
        return path
    return None


def encode_value(value: Any) -> TypedValue:
    """Encode a native value.

    Raises:
        CodecError: For unsupported types, out-of-range integers, naive
            datetimes, non-string map keys and write sentinels
    """
    if value is None:
        return NULL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return TypedValue(ValueKind.BOOLEAN, value)
    if isinstance(value, int):
        if not INT64_MIN <= value <= INT64_MAX:
            raise CodecError(
                f"Integer {value} does not fit in 64 bits",
                CodecErrorKind.INTEGER_OVERFLOW,
            )
        return TypedValue(ValueKind.INTEGER, int(value))
    if isinstance(value, float):
        return TypedValue(ValueKind.DOUBLE, value)
    if isinstance(value, datetime):
        format_timestamp(value)
        return TypedValue(ValueKind.TIMESTAMP, value.astimezone(timezone.utc))
    if isinstance(value, str):
        return TypedValue(ValueKind.STRING, value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return TypedValue(ValueKind.BYTES, bytes(value))
    if isinstance(value, GeoPoint):
        return TypedValue(ValueKind.GEO_POINT, value)

    path = _reference_path(value)
    if path is not None:
        if not path.is_document:
            raise CodecError(
                f"Reference values must point at a document, got '{path.relative_name}'",
                CodecErrorKind.UNSUPPORTED_TYPE,
            )
        return TypedValue(ValueKind.REFERENCE, path)

    if isinstance(value, (list, tuple)):
        return TypedValue(ValueKind.ARRAY, tuple(encode_value(item) for item in value))
    if isinstance(value, Mapping):
        return TypedValue(ValueKind.MAP, encode_fields(value))

    if value is DELETE_FIELD or is_transform(value):
        raise CodecError(
            f"{value!r} is only valid as a top-level value in set/update data",
            CodecErrorKind.UNSUPPORTED_TYPE,
        )
    raise CodecError(
        f"Cannot encode value of type {type(value).__name__}",
        CodecErrorKind.UNSUPPORTED_TYPE,
    )


def decode_value(value: TypedValue) -> Any:
    """Decode a TypedValue to its native form."""
    kind = value.kind
    if kind == ValueKind.ARRAY:
        return [decode_value(item) for item in value.value]
    if kind == ValueKind.MAP:
        return decode_fields(value.value)
    if kind == ValueKind.BYTES:
        return bytes(value.value)
    return value.value


def encode_fields(data: Mapping[str, Any]) -> Dict[str, TypedValue]:
    """Encode a string-keyed mapping into a typed field map.

    Only keys present in ``data`` appear in the result.
    """
    fields: Dict[str, TypedValue] = {}
    for key, item in data.items():
        if not isinstance(key, str) or not key:
            raise CodecError(
                f"Field names must be non-empty strings, got {key!r}",
                CodecErrorKind.INVALID_KEY,
            )
        fields[key] = encode_value(item)
    return fields


def decode_fields(fields: Mapping[str, TypedValue]) -> Dict[str, Any]:
    return {key: decode_value(item) for key, item in fields.items()}


# =============================================================================
# TypedValue <-> wire envelope
# =============================================================================


def _double_to_wire(value: float) -> Union[float, str]:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return value


def to_wire(value: TypedValue) -> Dict[str, Any]:
    """Build the JSON envelope for a TypedValue."""
    kind = value.kind
    if kind == ValueKind.NULL:
        return {"nullValue": None}
    if kind == ValueKind.BOOLEAN:
        return {"booleanValue": value.value}
    if kind == ValueKind.INTEGER:
        return {"integerValue": str(value.value)}
    if kind == ValueKind.DOUBLE:
        return {"doubleValue": _double_to_wire(value.value)}
    if kind == ValueKind.TIMESTAMP:
        return {"timestampValue": format_timestamp(value.value)}
    if kind == ValueKind.STRING:
        return {"stringValue": value.value}
    if kind == ValueKind.BYTES:
        return {"bytesValue": base64.b64encode(value.value).decode("ascii")}
    if kind == ValueKind.REFERENCE:
        return {"referenceValue": value.value.to_resource_name()}
    if kind == ValueKind.GEO_POINT:
        return {
            "geoPointValue": {
                "latitude": value.value.latitude,
                "longitude": value.value.longitude,
            }
        }
    if kind == ValueKind.ARRAY:
        if not value.value:
            return {"arrayValue": {}}
        return {"arrayValue": {"values": [to_wire(item) for item in value.value]}}
    if kind == ValueKind.MAP:
        if not value.value:
            return {"mapValue": {}}
        return {"mapValue": {"fields": fields_to_wire(value.value)}}
    raise CodecError(f"Unhandled value kind {kind}", CodecErrorKind.UNKNOWN_VARIANT)


def _integer_from_wire(raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise CodecError(f"integerValue must be a decimal string, got {raw!r}", CodecErrorKind.MALFORMED_NUMBER)
    try:
        number = int(raw)
    except ValueError as e:
        raise CodecError(f"integerValue is not an integer: {raw!r}", CodecErrorKind.MALFORMED_NUMBER) from e
    if not INT64_MIN <= number <= INT64_MAX:
        raise CodecError(f"integerValue {raw} does not fit in 64 bits", CodecErrorKind.INTEGER_OVERFLOW)
    return number


def _double_from_wire(raw: Any) -> float:
    if isinstance(raw, str):
        if raw in _SPECIAL_DOUBLES:
            return _SPECIAL_DOUBLES[raw]
        try:
            return float(raw)
        except ValueError as e:
            raise CodecError(f"doubleValue is not a number: {raw!r}", CodecErrorKind.MALFORMED_NUMBER) from e
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise CodecError(f"doubleValue must be a number, got {raw!r}", CodecErrorKind.MALFORMED_NUMBER)
    return float(raw)


def _bytes_from_wire(raw: Any) -> bytes:
    if not isinstance(raw, str):
        raise CodecError(f"bytesValue must be a base64 string, got {type(raw).__name__}", CodecErrorKind.MALFORMED_BYTES)
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CodecError(f"bytesValue is not valid base64: {e}", CodecErrorKind.MALFORMED_BYTES) from e


def _expect(raw: Any, expected: type, tag: str) -> Any:
    if not isinstance(raw, expected) or (expected is not bool and isinstance(raw, bool)):
        raise CodecError(
            f"{tag} must be {expected.__name__}, got {type(raw).__name__}",
            CodecErrorKind.MALFORMED_ENVELOPE,
        )
    return raw


def from_wire(envelope: Any) -> TypedValue:
    """Parse a JSON envelope into a TypedValue.

    Raises:
        CodecError: UNKNOWN_VARIANT for tags this SDK does not know,
            MALFORMED_* for envelopes that are not exactly one valid tag
    """
    if not isinstance(envelope, Mapping) or not envelope:
        raise CodecError(f"Value envelope must be a one-key object, got {envelope!r}", CodecErrorKind.MALFORMED_ENVELOPE)

    unknown = [tag for tag in envelope if tag not in _KIND_BY_TAG]
    if unknown:
        raise CodecError(
            f"Unknown value variant(s): {', '.join(sorted(unknown))}",
            CodecErrorKind.UNKNOWN_VARIANT,
        )
    if len(envelope) != 1:
        raise CodecError(
            f"Value envelope must carry exactly one tag, got {sorted(envelope)}",
            CodecErrorKind.MALFORMED_ENVELOPE,
        )

    tag, raw = next(iter(envelope.items()))
    kind = _KIND_BY_TAG[tag]

    if kind == ValueKind.NULL:
        if raw not in (None, "NULL_VALUE"):
            raise CodecError(f"nullValue must be null, got {raw!r}", CodecErrorKind.MALFORMED_ENVELOPE)
        return NULL
    if kind == ValueKind.BOOLEAN:
        return TypedValue(kind, _expect(raw, bool, tag))
    if kind == ValueKind.INTEGER:
        return TypedValue(kind, _integer_from_wire(raw))
    if kind == ValueKind.DOUBLE:
        return TypedValue(kind, _double_from_wire(raw))
    if kind == ValueKind.TIMESTAMP:
        return TypedValue(kind, parse_timestamp(raw))
    if kind == ValueKind.STRING:
        return TypedValue(kind, _expect(raw, str, tag))
    if kind == ValueKind.BYTES:
        return TypedValue(kind, _bytes_from_wire(raw))
    if kind == ValueKind.REFERENCE:
        try:
            path = parse(_expect(raw, str, tag))
        except PathError as e:
            raise CodecError(f"referenceValue is not a resource name: {raw!r}", CodecErrorKind.MALFORMED_ENVELOPE) from e
        if not path.is_document:
            raise CodecError(f"referenceValue must name a document: {raw!r}", CodecErrorKind.MALFORMED_ENVELOPE)
        return TypedValue(kind, path)
    if kind == ValueKind.GEO_POINT:
        # proto3 JSON omits zero-valued fields
        raw = _expect(raw, Mapping, tag)
        try:
            point = GeoPoint(
                _double_from_wire(raw.get("latitude", 0.0)),
                _double_from_wire(raw.get("longitude", 0.0)),
            )
        except ValueError as e:
            raise CodecError(f"geoPointValue out of range: {e}", CodecErrorKind.MALFORMED_ENVELOPE) from e
        return TypedValue(kind, point)
    if kind == ValueKind.ARRAY:
        raw = _expect(raw, Mapping, tag)
        values = _expect(raw.get("values", []), list, "arrayValue.values")
        return TypedValue(kind, tuple(from_wire(item) for item in values))
    # MAP
    raw = _expect(raw, Mapping, tag)
    return TypedValue(kind, fields_from_wire(raw.get("fields", {})))


def fields_to_wire(fields: Mapping[str, TypedValue]) -> Dict[str, Any]:
    return {key: to_wire(item) for key, item in fields.items()}


def fields_from_wire(fields: Any) -> Dict[str, TypedValue]:
    if not isinstance(fields, Mapping):
        raise CodecError(f"fields must be an object, got {type(fields).__name__}", CodecErrorKind.MALFORMED_ENVELOPE)
    return {key: from_wire(item) for key, item in fields.items()}


def encode_document_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Native field map -> wire ``fields`` object."""
    return fields_to_wire(encode_fields(data))


def decode_document_fields(fields: Any) -> Dict[str, Any]:
    """Wire ``fields`` object -> native field map."""
    return decode_fields(fields_from_wire(fields))

