"""
Error taxonomy for the bridge.

Device-scoped errors (InvalidValue, RegistrationFailed and its subclasses,
ProtocolWriteFailed) are reported to the owning device only.
EnvironmentFailure is bridge-scoped and fatal to every device.
"""

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class InvalidValue(BridgeError):
    """An inbound value does not match the expected semantic type."""

    def __init__(self, expected: str, received: Any, detail: Optional[str] = None):
        self.expected = expected
        self.received = received
        self.detail = detail
        message = f"expected {expected}, got {received!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RegistrationFailed(BridgeError):
    """A device could not be registered with the aggregator."""

    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"registration of {device_id!r} failed: {reason}")


class DuplicateId(RegistrationFailed):
    """A device with the same identifier is already registered."""

    def __init__(self, device_id: str):
        super().__init__(device_id, "identifier already registered")


class ConstructionFailed(RegistrationFailed):
    """The protocol endpoint could not be built for the device."""


class ProtocolWriteFailed(BridgeError):
    """The protocol layer rejected an attribute write."""

    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"write to {device_id!r} rejected: {reason}")


class EnvironmentFailure(BridgeError):
    """The protocol environment failed; the whole bridge is affected."""
