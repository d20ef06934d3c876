"""Bridge lifecycle and commissioning parameters."""

from .controller import BridgeController, BridgeState
from .pairing import PairingParameters

__all__ = ["BridgeController", "BridgeState", "PairingParameters"]
