"""Database value types.

A ``DatabaseValue`` is a tagged scalar: exactly one ``ValueKind`` is live at
a time. Conversions (``as_int``, ``as_double`` ...) never raise; when there is
no sensible conversion they return ``None``.
"""

from __future__ import annotations

import math
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import TypeMismatchError

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
FLOAT32_MAX = 3.4028234663852886e38

_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.?\d*([eE][+-]?\d+)?|\.\d+([eE][+-]?\d+)?|inf|infinity|nan)$", re.I)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ValueKind(Enum):
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    LONG = "long"
    FLOAT = "float"
    DOUBLE = "double"
    STRING = "string"
    BYTES = "bytes"
    TIMESTAMP = "timestamp"


def _to_f32(value: float) -> float:
    if math.isnan(value) or math.isinf(value):
        return value
    if abs(value) > FLOAT32_MAX:
        return math.copysign(math.inf, value)
    return struct.unpack("f", struct.pack("f", value))[0]


def _saturate(value: float, low: int, high: int) -> int:
    if math.isnan(value):
        return 0
    if value >= high:
        return high
    if value <= low:
        return low
    return int(value)


def _parse_int(text: str, low: int, high: int) -> Optional[int]:
    if not _INT_RE.match(text):
        return None
    parsed = int(text)
    if parsed < low or parsed > high:
        return None
    return parsed


def _parse_float(text: str) -> Optional[float]:
    if not _FLOAT_RE.match(text):
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    if value.is_integer():
        return str(int(value))
    return repr(value)


@dataclass(frozen=True)
class DatabaseValue:
    """A single typed scalar stored in or read from a database."""

    kind: ValueKind
    value: Any = None

    # Constructors

    @classmethod
    def null(cls) -> "DatabaseValue":
        return cls(ValueKind.NULL, None)

    @classmethod
    def boolean(cls, value: bool) -> "DatabaseValue":
        return cls(ValueKind.BOOL, bool(value))

    @classmethod
    def int32(cls, value: int) -> "DatabaseValue":
        if not INT32_MIN <= value <= INT32_MAX:
            raise TypeMismatchError("int", f"integer {value} out of 32-bit range")
        return cls(ValueKind.INT, int(value))

    @classmethod
    def int64(cls, value: int) -> "DatabaseValue":
        if not INT64_MIN <= value <= INT64_MAX:
            raise TypeMismatchError("long", f"integer {value} out of 64-bit range")
        return cls(ValueKind.LONG, int(value))

    @classmethod
    def float32(cls, value: float) -> "DatabaseValue":
        return cls(ValueKind.FLOAT, _to_f32(float(value)))

    @classmethod
    def float64(cls, value: float) -> "DatabaseValue":
        return cls(ValueKind.DOUBLE, float(value))

    @classmethod
    def string(cls, value: str) -> "DatabaseValue":
        return cls(ValueKind.STRING, str(value))

    @classmethod
    def blob(cls, value: bytes) -> "DatabaseValue":
        return cls(ValueKind.BYTES, bytes(value))

    @classmethod
    def timestamp(cls, micros: int) -> "DatabaseValue":
        """Timestamp as Unix time in microseconds."""
        return cls(ValueKind.TIMESTAMP, int(micros))

    @classmethod
    def from_datetime(cls, moment: datetime) -> "DatabaseValue":
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        delta = moment - _EPOCH
        micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
        return cls.timestamp(micros)

    @classmethod
    def from_python(cls, obj: Any) -> "DatabaseValue":
        """Map a native Python object to the closest value kind.

        Integers become LONG, floats become DOUBLE. ``DatabaseValue``
        instances are returned unchanged.
        """
        if isinstance(obj, DatabaseValue):
            return obj
        if obj is None:
            return cls.null()
        if isinstance(obj, bool):
            return cls.boolean(obj)
        if isinstance(obj, int):
            return cls.int64(obj)
        if isinstance(obj, float):
            return cls.float64(obj)
        if isinstance(obj, str):
            return cls.string(obj)
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return cls.blob(bytes(obj))
        if isinstance(obj, datetime):
            return cls.from_datetime(obj)
        raise TypeMismatchError("database value", type(obj).__name__)

    # Conversions

    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    @property
    def type_name(self) -> str:
        return self.kind.value

    def as_bool(self) -> Optional[bool]:
        kind = self.kind
        if kind is ValueKind.BOOL:
            return self.value
        if kind in (ValueKind.INT, ValueKind.LONG):
            return self.value != 0
        if kind is ValueKind.STRING:
            lowered = self.value.lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no"):
                return False
        return None

    def as_int(self) -> Optional[int]:
        kind = self.kind
        if kind is ValueKind.INT:
            return self.value
        if kind is ValueKind.LONG:
            return self.value if INT32_MIN <= self.value <= INT32_MAX else None
        if kind in (ValueKind.FLOAT, ValueKind.DOUBLE):
            return _saturate(self.value, INT32_MIN, INT32_MAX)
        if kind is ValueKind.STRING:
            return _parse_int(self.value, INT32_MIN, INT32_MAX)
        if kind is ValueKind.BOOL:
            return int(self.value)
        return None

    def as_long(self) -> Optional[int]:
        kind = self.kind
        if kind in (ValueKind.LONG, ValueKind.INT, ValueKind.TIMESTAMP):
            return self.value
        if kind in (ValueKind.FLOAT, ValueKind.DOUBLE):
            return _saturate(self.value, INT64_MIN, INT64_MAX)
        if kind is ValueKind.STRING:
            return _parse_int(self.value, INT64_MIN, INT64_MAX)
        if kind is ValueKind.BOOL:
            return int(self.value)
        return None

    def as_float(self) -> Optional[float]:
        kind = self.kind
        if kind in (ValueKind.FLOAT, ValueKind.DOUBLE, ValueKind.INT, ValueKind.LONG):
            return _to_f32(float(self.value))
        if kind is ValueKind.STRING:
            parsed = _parse_float(self.value)
            return None if parsed is None else _to_f32(parsed)
        return None

    def as_double(self) -> Optional[float]:
        kind = self.kind
        if kind in (ValueKind.DOUBLE, ValueKind.FLOAT, ValueKind.INT, ValueKind.LONG):
            return float(self.value)
        if kind is ValueKind.STRING:
            return _parse_float(self.value)
        return None

    def as_str(self) -> Optional[str]:
        """The string payload, only for STRING values."""
        if self.kind is ValueKind.STRING:
            return self.value
        return None

    def as_string(self) -> str:
        """Display form of any value."""
        kind = self.kind
        if kind is ValueKind.NULL:
            return "null"
        if kind is ValueKind.BOOL:
            return "true" if self.value else "false"
        if kind in (ValueKind.FLOAT, ValueKind.DOUBLE):
            return _format_float(self.value)
        if kind is ValueKind.BYTES:
            return f"<{len(self.value)} bytes>"
        return str(self.value)

    def as_bytes(self) -> Optional[bytes]:
        if self.kind is ValueKind.BYTES:
            return self.value
        if self.kind is ValueKind.STRING:
            return self.value.encode("utf-8")
        return None

    def as_datetime(self) -> Optional[datetime]:
        micros = self.as_long() if self.kind in (ValueKind.TIMESTAMP, ValueKind.LONG) else None
        if micros is None:
            return None
        try:
            return _EPOCH + timedelta(microseconds=micros)
        except OverflowError:
            return None

    def to_python(self) -> Any:
        """Unwrap to the plain Python payload (TIMESTAMP stays an int)."""
        return self.value

    def __str__(self) -> str:
        return self.as_string()


DatabaseRow = Dict[str, DatabaseValue]
DatabaseResult = List[DatabaseRow]


def coerce_params(params: Optional[Iterable[Any]]) -> Tuple[DatabaseValue, ...]:
    """Snapshot a parameter sequence into immutable ``DatabaseValue`` items."""
    if params is None:
        return ()
    return tuple(DatabaseValue.from_python(p) for p in params)


__all__ = [
    "ValueKind",
    "DatabaseValue",
    "DatabaseRow",
    "DatabaseResult",
    "coerce_params",
]
