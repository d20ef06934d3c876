"""Device descriptors and the supported device kinds."""

from .kinds import DEVICE_KINDS, AttributeBinding, DeviceKind, get_kind
from .models import (
    BatteryLevel,
    BatteryStatus,
    BatteryType,
    DeviceDescriptor,
    MatterDeviceType,
    Origin,
    PendingWrite,
)

__all__ = [
    "DEVICE_KINDS",
    "AttributeBinding",
    "DeviceKind",
    "get_kind",
    "BatteryLevel",
    "BatteryStatus",
    "BatteryType",
    "DeviceDescriptor",
    "MatterDeviceType",
    "Origin",
    "PendingWrite",
]
