"""
Commissioning parameters.

A bridge is paired with a setup passcode and a 12-bit discriminator. Both are
drawn fresh on every start unless pinned in configuration. The 11-digit
manual pairing code printed for users is derived from them.
"""

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from ..errors import InvalidValue

PASSCODE_MIN = 1
PASSCODE_MAX = 99999998
DISCRIMINATOR_MAX = 0xFFF

# Passcodes the Matter core specification forbids
INVALID_PASSCODES = frozenset(
    [int(str(d) * 8) for d in range(10)] + [12345678, 87654321]
)


# =============================================================================
# VERHOEFF CHECK DIGIT
# =============================================================================

_D = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8, 9),
    (1, 2, 3, 4, 0, 6, 7, 8, 9, 5),
    (2, 3, 4, 0, 1, 7, 8, 9, 5, 6),
    (3, 4, 0, 1, 2, 8, 9, 5, 6, 7),
    (4, 0, 1, 2, 3, 9, 5, 6, 7, 8),
    (5, 9, 8, 7, 6, 0, 4, 3, 2, 1),
    (6, 5, 9, 8, 7, 1, 0, 4, 3, 2),
    (7, 6, 5, 9, 8, 2, 1, 0, 4, 3),
    (8, 7, 6, 5, 9, 3, 2, 1, 0, 4),
    (9, 8, 7, 6, 5, 4, 3, 2, 1, 0),
)

_P = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8, 9),
    (1, 5, 7, 6, 2, 8, 3, 0, 9, 4),
    (5, 8, 0, 3, 7, 9, 6, 1, 4, 2),
    (8, 9, 1, 6, 0, 4, 3, 5, 2, 7),
    (9, 4, 5, 3, 1, 2, 6, 8, 7, 0),
    (4, 2, 8, 6, 5, 7, 3, 9, 0, 1),
    (2, 7, 9, 3, 8, 0, 6, 4, 1, 5),
    (7, 0, 4, 6, 9, 1, 3, 2, 5, 8),
)

_INV = (0, 4, 3, 2, 1, 5, 6, 7, 8, 9)


def _digits(number: str) -> Sequence[int]:
    return [int(c) for c in reversed(number)]


def verhoeff_digit(number: str) -> str:
    """Compute the Verhoeff check digit for a string of digits."""
    c = 0
    for i, digit in enumerate(_digits(number)):
        c = _D[c][_P[(i + 1) % 8][digit]]
    return str(_INV[c])


def verhoeff_valid(number: str) -> bool:
    """Check a string of digits whose last digit is a Verhoeff check digit."""
    c = 0
    for i, digit in enumerate(_digits(number)):
        c = _D[c][_P[i % 8][digit]]
    return c == 0


# =============================================================================
# PAIRING PARAMETERS
# =============================================================================

def validate_passcode(passcode: Any) -> int:
    if isinstance(passcode, bool) or not isinstance(passcode, int):
        raise InvalidValue("integer passcode", passcode)
    if not PASSCODE_MIN <= passcode <= PASSCODE_MAX:
        raise InvalidValue(f"passcode {PASSCODE_MIN}-{PASSCODE_MAX}", passcode)
    if passcode in INVALID_PASSCODES:
        raise InvalidValue("non-trivial passcode", passcode, "passcode is on the disallowed list")
    return passcode


def validate_discriminator(discriminator: Any) -> int:
    if isinstance(discriminator, bool) or not isinstance(discriminator, int):
        raise InvalidValue("integer discriminator", discriminator)
    if not 0 <= discriminator <= DISCRIMINATOR_MAX:
        raise InvalidValue(f"discriminator 0-{DISCRIMINATOR_MAX}", discriminator)
    return discriminator


def random_passcode() -> int:
    while True:
        passcode = PASSCODE_MIN + secrets.randbelow(PASSCODE_MAX)
        if passcode not in INVALID_PASSCODES:
            return passcode


def random_discriminator() -> int:
    return secrets.randbelow(DISCRIMINATOR_MAX + 1)


@dataclass(frozen=True)
class PairingParameters:
    """Setup passcode and discriminator for one bridge run."""
    passcode: int
    discriminator: int

    def __post_init__(self):
        validate_passcode(self.passcode)
        validate_discriminator(self.discriminator)

    @classmethod
    def generate(
        cls,
        passcode: Optional[int] = None,
        discriminator: Optional[int] = None,
    ) -> "PairingParameters":
        """Use the pinned values where given, random ones otherwise."""
        return cls(
            passcode=random_passcode() if passcode is None else passcode,
            discriminator=random_discriminator() if discriminator is None else discriminator,
        )

    @property
    def short_discriminator(self) -> int:
        """Upper 4 bits of the discriminator, as carried in the manual code."""
        return self.discriminator >> 8

    @property
    def manual_pairing_code(self) -> str:
        """
        11-digit manual pairing code.

        Layout: 1 digit (version/vid-pid flag + discriminator high bits),
        5 digits (discriminator low bits + passcode low 14 bits),
        4 digits (passcode high 13 bits), 1 Verhoeff check digit.
        """
        short = self.short_discriminator
        chunk1 = short >> 2
        chunk2 = ((short & 0x3) << 14) | (self.passcode & 0x3FFF)
        chunk3 = self.passcode >> 14
        code = f"{chunk1:01d}{chunk2:05d}{chunk3:04d}"
        return code + verhoeff_digit(code)

    @property
    def formatted_pairing_code(self) -> str:
        code = self.manual_pairing_code
        return f"{code[:4]}-{code[4:7]}-{code[7:]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passcode": self.passcode,
            "discriminator": self.discriminator,
            "manual_pairing_code": self.manual_pairing_code,
        }
