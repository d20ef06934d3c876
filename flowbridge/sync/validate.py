"""
Inbound value validation.

Pure functions that classify and coerce raw flow values before they are
turned into protocol attribute writes. Out-of-range values fail instead of
being clamped.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import InvalidValue


class ValueKind(str, Enum):
    """Semantic value types understood by the validator."""
    NUMBER = "number"
    BOOLEAN = "boolean"
    ENUM = "enum"
    PERCENT = "percent"


_TRUE_STRINGS = {"true", "on", "1"}
_FALSE_STRINGS = {"false", "off", "0"}


def as_boolean(value: Any) -> bool:
    """Coerce a flow value to a boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise InvalidValue("boolean", value)


def as_number(
    value: Any,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
    expected: str = "number",
) -> float:
    """Coerce a flow value to a number within [minimum, maximum]."""
    if isinstance(value, bool):
        raise InvalidValue(expected, value)

    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise InvalidValue(expected, value) from None
        if number.is_integer():
            number = int(number)
    else:
        raise InvalidValue(expected, value)

    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        raise InvalidValue(expected, value)
    if minimum is not None and number < minimum:
        raise InvalidValue(expected, value, f"below minimum {minimum}")
    if maximum is not None and number > maximum:
        raise InvalidValue(expected, value, f"above maximum {maximum}")
    return number


def as_percent(value: Any) -> float:
    """Coerce a flow value to a percentage in [0, 100]."""
    return as_number(value, 0, 100, expected="percent")


def as_enum(value: Any, choices: Dict[str, int]) -> int:
    """
    Coerce a flow value to the code of an enumerated choice.

    Accepts either a choice name (case-insensitive) or one of the codes.
    """
    expected = "enum{" + ",".join(choices) + "}"
    if isinstance(value, str):
        key = value.strip().lower()
        for name, code in choices.items():
            if name.lower() == key:
                return code
    elif isinstance(value, int) and not isinstance(value, bool):
        if value in choices.values():
            return value
    raise InvalidValue(expected, value)


@dataclass(frozen=True)
class ValueType:
    """An expected semantic type with its constraints."""
    kind: ValueKind
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: Dict[str, int] = field(default_factory=dict)

    def describe(self) -> str:
        if self.kind == ValueKind.ENUM:
            return "enum{" + ",".join(self.choices) + "}"
        return self.kind.value


def validate(value: Any, expected: ValueType) -> Any:
    """Validate ``value`` against ``expected`` and return the normalized value."""
    if expected.kind == ValueKind.BOOLEAN:
        return as_boolean(value)
    if expected.kind == ValueKind.PERCENT:
        return as_percent(value)
    if expected.kind == ValueKind.ENUM:
        return as_enum(value, expected.choices)
    return as_number(value, expected.minimum, expected.maximum)
