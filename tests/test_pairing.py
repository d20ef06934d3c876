"""
Tests for commissioning parameters.
"""

import pytest

from flowbridge.bridge.pairing import (
    DISCRIMINATOR_MAX,
    INVALID_PASSCODES,
    PASSCODE_MAX,
    PairingParameters,
    verhoeff_digit,
    verhoeff_valid,
)
from flowbridge.errors import InvalidValue


class TestVerhoeff:
    """Tests for the check digit."""

    def test_known_value(self):
        assert verhoeff_digit("236") == "3"
        assert verhoeff_valid("2363")
        assert not verhoeff_valid("2364")


class TestPairingParameters:
    """Tests for PairingParameters."""

    def test_manual_code(self):
        params = PairingParameters(passcode=20202021, discriminator=3840)
        assert params.manual_pairing_code == "34970112332"
        assert params.formatted_pairing_code == "3497-011-2332"
        assert verhoeff_valid(params.manual_pairing_code)

    def test_generate_is_valid(self):
        for _ in range(50):
            params = PairingParameters.generate()
            assert 1 <= params.passcode <= PASSCODE_MAX
            assert params.passcode not in INVALID_PASSCODES
            assert 0 <= params.discriminator <= DISCRIMINATOR_MAX
            assert len(params.manual_pairing_code) == 11

    def test_generate_keeps_pinned_values(self):
        params = PairingParameters.generate(passcode=20202021)
        assert params.passcode == 20202021

        params = PairingParameters.generate(discriminator=0)
        assert params.discriminator == 0

    @pytest.mark.parametrize("passcode", [0, 11111111, 12345678, 87654321, 100000000, True, "20202021"])
    def test_invalid_passcode(self, passcode):
        with pytest.raises(InvalidValue):
            PairingParameters(passcode=passcode, discriminator=1)

    @pytest.mark.parametrize("discriminator", [-1, 4096, None])
    def test_invalid_discriminator(self, discriminator):
        with pytest.raises(InvalidValue):
            PairingParameters(passcode=20202021, discriminator=discriminator)

    def test_to_dict(self):
        data = PairingParameters(20202021, 3840).to_dict()
        assert data == {"passcode": 20202021, "discriminator": 3840, "manual_pairing_code": "34970112332"}
