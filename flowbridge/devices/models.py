"""
Bridge device models and data structures.

Defines the descriptor a flow node registers with, the battery records
shared across device types, and the pending-write tuple that moves through
the synchronizer.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, Optional

from ..errors import InvalidValue
from ..sync.validate import as_boolean


# cluster name -> enabled feature names
Capabilities = Dict[str, FrozenSet[str]]


class MatterDeviceType(IntEnum):
    """
    Matter device type IDs for the virtual devices the bridge can expose.

    See: Matter Device Library Specification
    """
    # Lighting
    ON_OFF_LIGHT = 0x0100
    DIMMABLE_LIGHT = 0x0101
    COLOR_TEMP_LIGHT = 0x010C

    # Plugs & Outlets
    ON_OFF_PLUG = 0x010A

    # Sensors
    CONTACT_SENSOR = 0x0015
    OCCUPANCY_SENSOR = 0x0107
    LIGHT_SENSOR = 0x0106
    TEMPERATURE_SENSOR = 0x0302
    HUMIDITY_SENSOR = 0x0307
    PRESSURE_SENSOR = 0x0305

    # Security
    DOOR_LOCK = 0x000A

    # Bridges
    AGGREGATOR = 0x000E


class BatteryType(str, Enum):
    """Battery configuration of a device."""
    NONE = "none"
    REPLACEABLE = "replaceable"
    RECHARGEABLE = "rechargeable"


class BatteryLevel(IntEnum):
    """Battery charge level as reported on the flow side (0|1|2)."""
    OK = 0
    LOW = 1
    CRITICAL = 2


class Origin(str, Enum):
    """Which side a state change came from."""
    FLOW = "flow"
    PROTOCOL = "protocol"


@dataclass
class BatteryStatus:
    """Battery sub-record of a device's state."""
    level: BatteryLevel = BatteryLevel.OK
    percent: float = 100
    charging: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.name.capitalize(),
            "percent": self.percent,
            "charging": self.charging,
        }


@dataclass
class DeviceDescriptor:
    """
    What a flow node registers with the bridge.

    Wire form: {id, name, type, bat, batType} plus optional passthrough and
    bridge keys.
    """
    device_id: str
    name: str
    device_type: str
    battery: BatteryType = BatteryType.NONE
    passthrough: bool = False
    bridge: Optional[str] = None  # Owning bridge name

    @property
    def bat(self) -> bool:
        return self.battery != BatteryType.NONE

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.device_id,
            "name": self.name,
            "type": self.device_type,
            "bat": self.bat,
        }
        if self.bat:
            data["batType"] = self.battery.value
        data["passthrough"] = self.passthrough
        if self.bridge:
            data["bridge"] = self.bridge
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceDescriptor":
        device_id = data.get("id")
        if not isinstance(device_id, str) or not device_id:
            raise InvalidValue("non-empty string id", device_id)

        device_type = data.get("type")
        if not isinstance(device_type, str) or not device_type:
            raise InvalidValue("device type tag", device_type)

        battery = BatteryType.NONE
        if _flag(data, "bat"):
            bat_type = data.get("batType") or BatteryType.REPLACEABLE.value
            if bat_type not in (BatteryType.REPLACEABLE.value, BatteryType.RECHARGEABLE.value):
                raise InvalidValue("batType replaceable|rechargeable", bat_type)
            battery = BatteryType(bat_type)

        return cls(
            device_id=device_id,
            name=data.get("name") or device_id,
            device_type=device_type,
            battery=battery,
            passthrough=_flag(data, "passthrough"),
            bridge=data.get("bridge"),
        )


def _flag(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    try:
        return as_boolean(value)
    except InvalidValue:
        raise InvalidValue(f"boolean {key}", value) from None


@dataclass
class PendingWrite:
    """A candidate attribute change submitted to the change detector."""
    device_id: str
    cluster: str
    attribute: str
    value: Any
    origin: Origin = Origin.FLOW
    token: Optional[str] = None  # Shared by every write of one flow message

    def as_tree(self) -> Dict[str, Dict[str, Any]]:
        return {self.cluster: {self.attribute: self.value}}
