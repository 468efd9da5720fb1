from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Final, Union


Binding = Union[None, bool, int, float, Decimal, str, bytes, date, datetime, time]
"""Closed set of values that may cross the executor boundary as a bound parameter."""

_SCALAR_TYPES: Final[tuple[type, ...]] = (
    bool,
    int,
    float,
    Decimal,
    str,
    bytes,
    date,  # covers datetime
    time,
)


def to_binding(value: Any) -> Binding:
    """Coerce *value* into a :data:`Binding`.

    Enum members are unwrapped to their value; ``bytearray``/``memoryview``
    become ``bytes``.  Anything else is rejected so that an unexpected object
    never reaches the driver.

    Raises:
        TypeError: If the value has no binding representation.
    """
    if value is None or isinstance(value, _SCALAR_TYPES):
        return value

    if isinstance(value, Enum):
        return to_binding(value.value)

    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)

    raise TypeError(
        f"Unsupported binding type {type(value).__name__!r}; "
        "serialize composite values before binding them"
    )


def to_bindings(values: Iterable[Any]) -> list[Binding]:
    """Coerce every element of *values*, preserving order."""
    return [to_binding(value) for value in values]
