"""
Bridged device kinds.

Closed set of device-type variants the bridge can expose. Each kind maps a
flow payload onto Matter cluster attributes and back, and declares the
clusters and features its endpoint is constructed with.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..errors import InvalidValue
from ..sync.validate import ValueKind, ValueType, validate
from .models import Capabilities, MatterDeviceType


def _identity(value: Any) -> Any:
    return value


@dataclass(frozen=True)
class AttributeBinding:
    """One payload field bound to one cluster attribute."""
    cluster: str
    attribute: str
    value_type: ValueType
    default: Any  # In protocol units
    key: Optional[str] = None  # Payload key; None when the payload is the bare value
    prepare: Callable[[Any], Any] = _identity
    to_protocol: Callable[[Any], Any] = _identity
    from_protocol: Callable[[Any], Any] = _identity

    def encode(self, value: Any) -> Any:
        return self.to_protocol(validate(self.prepare(value), self.value_type))

    def decode(self, value: Any) -> Any:
        return self.from_protocol(value)


@dataclass(frozen=True)
class DeviceKind:
    """A bridged device type with its payload <-> attribute mapping."""
    tag: str
    device_type: MatterDeviceType
    bindings: Tuple[AttributeBinding, ...]
    description: str = ""
    features: Dict[str, frozenset] = field(default_factory=dict)

    @property
    def scalar(self) -> bool:
        """True if the flow payload is a bare value rather than an object."""
        return len(self.bindings) == 1 and self.bindings[0].key is None

    @property
    def payload_keys(self) -> List[str]:
        return [b.key for b in self.bindings if b.key]

    def capabilities(self) -> Capabilities:
        caps: Capabilities = {}
        for binding in self.bindings:
            caps[binding.cluster] = self.features.get(binding.cluster, frozenset())
        return caps

    def initial_attributes(self) -> Dict[str, Dict[str, Any]]:
        attributes: Dict[str, Dict[str, Any]] = {}
        for binding in self.bindings:
            attributes.setdefault(binding.cluster, {})[binding.attribute] = binding.default
        return attributes

    def binding_for(self, cluster: str, attribute: str) -> Optional[AttributeBinding]:
        for binding in self.bindings:
            if binding.cluster == cluster and binding.attribute == attribute:
                return binding
        return None

    def to_attributes(self, payload: Any) -> Dict[str, Dict[str, Any]]:
        """Validate a flow payload and convert it to a candidate attribute tree."""
        candidate: Dict[str, Dict[str, Any]] = {}

        if self.scalar:
            binding = self.bindings[0]
            candidate[binding.cluster] = {binding.attribute: binding.encode(payload)}
            return candidate

        expected = "object with " + "|".join(self.payload_keys)
        if not isinstance(payload, Mapping):
            raise InvalidValue(expected, payload)

        for binding in self.bindings:
            if binding.key in payload:
                try:
                    value = binding.encode(payload[binding.key])
                except InvalidValue as e:
                    raise InvalidValue(f"{binding.key}: {e.expected}", e.received, e.detail) from None
                candidate.setdefault(binding.cluster, {})[binding.attribute] = value

        if not candidate:
            raise InvalidValue(expected, payload)
        return candidate

    def to_payload(self, state: Mapping[str, Any]) -> Any:
        """Convert a device's attribute state to the flow payload."""
        values = {}
        for binding in self.bindings:
            raw = state.get(binding.cluster, {}).get(binding.attribute, binding.default)
            values[binding.key] = binding.decode(raw)
        if self.scalar:
            return values[None]
        return values


# =============================================================================
# CONVERSIONS
# =============================================================================

def _percent_to_level(percent: float) -> int:
    return max(1, min(254, int(round(percent * 254 / 100))))


def _level_to_percent(level: int) -> int:
    return int(round(level * 100 / 254))


def _lux_to_measured(lux: float) -> int:
    if lux <= 0:
        return 0
    return max(1, int(round(10000 * math.log10(lux) + 1)))


def _measured_to_lux(measured: int) -> float:
    if not measured:
        return 0
    return round(10 ** ((measured - 1) / 10000), 2)


def _hundredths(value: float) -> int:
    return int(round(value * 100))


def _from_hundredths(value: int) -> float:
    return value / 100


def _lock_alias(value: Any) -> Any:
    if isinstance(value, bool):
        return "locked" if value else "unlocked"
    return value


LOCK_STATES = {"locked": 1, "unlocked": 2, "lock": 1, "unlock": 2}
LOCK_NAMES = {1: "locked", 2: "unlocked"}

BOOLEAN = ValueType(ValueKind.BOOLEAN)
PERCENT = ValueType(ValueKind.PERCENT)


def _on_off(key: Optional[str] = None) -> AttributeBinding:
    return AttributeBinding("onOff", "onOff", BOOLEAN, False, key=key)


def _level(key: str = "level") -> AttributeBinding:
    return AttributeBinding(
        "levelControl", "currentLevel", PERCENT, 254, key=key,
        to_protocol=_percent_to_level, from_protocol=_level_to_percent,
    )


LIGHT_FEATURES = {
    "onOff": frozenset({"lighting"}),
    "levelControl": frozenset({"onOff", "lighting"}),
    "colorControl": frozenset({"colorTemperature"}),
}


# =============================================================================
# KIND TABLE
# =============================================================================

DEVICE_KINDS: Dict[str, DeviceKind] = {
    kind.tag: kind
    for kind in (
        DeviceKind(
            tag="onofflight",
            device_type=MatterDeviceType.ON_OFF_LIGHT,
            bindings=(_on_off(),),
            description="On/off light; payload true|false",
            features=LIGHT_FEATURES,
        ),
        DeviceKind(
            tag="onoffsocket",
            device_type=MatterDeviceType.ON_OFF_PLUG,
            bindings=(_on_off(),),
            description="On/off plug-in unit; payload true|false",
        ),
        DeviceKind(
            tag="dimmablelight",
            device_type=MatterDeviceType.DIMMABLE_LIGHT,
            bindings=(_on_off("state"), _level()),
            description="Dimmable light; payload {state, level 0-100}",
            features=LIGHT_FEATURES,
        ),
        DeviceKind(
            tag="colortemplight",
            device_type=MatterDeviceType.COLOR_TEMP_LIGHT,
            bindings=(
                _on_off("state"),
                _level(),
                AttributeBinding(
                    "colorControl", "colorTemperatureMireds",
                    ValueType(ValueKind.NUMBER, 147, 500), 250, key="temp",
                    to_protocol=lambda v: int(round(v)),
                ),
            ),
            description="Colour temperature light; payload {state, level 0-100, temp mireds}",
            features=LIGHT_FEATURES,
        ),
        DeviceKind(
            tag="contactsensor",
            device_type=MatterDeviceType.CONTACT_SENSOR,
            bindings=(AttributeBinding("booleanState", "stateValue", BOOLEAN, False),),
            description="Contact sensor; payload true (closed) | false (open)",
        ),
        DeviceKind(
            tag="occupancysensor",
            device_type=MatterDeviceType.OCCUPANCY_SENSOR,
            bindings=(
                AttributeBinding(
                    "occupancySensing", "occupancy", BOOLEAN, {"occupied": False},
                    to_protocol=lambda v: {"occupied": v},
                    from_protocol=lambda v: bool(v.get("occupied")) if isinstance(v, Mapping) else bool(v),
                ),
            ),
            description="Occupancy sensor; payload true|false",
        ),
        DeviceKind(
            tag="temperaturesensor",
            device_type=MatterDeviceType.TEMPERATURE_SENSOR,
            bindings=(
                AttributeBinding(
                    "temperatureMeasurement", "measuredValue",
                    ValueType(ValueKind.NUMBER, -273.15, 327.67), 0,
                    to_protocol=_hundredths, from_protocol=_from_hundredths,
                ),
            ),
            description="Temperature sensor; payload degrees Celsius",
        ),
        DeviceKind(
            tag="humiditysensor",
            device_type=MatterDeviceType.HUMIDITY_SENSOR,
            bindings=(
                AttributeBinding(
                    "relativeHumidityMeasurement", "measuredValue", PERCENT, 0,
                    to_protocol=_hundredths, from_protocol=_from_hundredths,
                ),
            ),
            description="Humidity sensor; payload relative humidity 0-100",
        ),
        DeviceKind(
            tag="lightsensor",
            device_type=MatterDeviceType.LIGHT_SENSOR,
            bindings=(
                AttributeBinding(
                    "illuminanceMeasurement", "measuredValue",
                    ValueType(ValueKind.NUMBER, 0, 3_500_000), 0,
                    to_protocol=_lux_to_measured, from_protocol=_measured_to_lux,
                ),
            ),
            description="Light sensor; payload lux",
        ),
        DeviceKind(
            tag="pressuresensor",
            device_type=MatterDeviceType.PRESSURE_SENSOR,
            bindings=(
                AttributeBinding(
                    "pressureMeasurement", "measuredValue",
                    ValueType(ValueKind.NUMBER, 0, 32767), 0,
                    to_protocol=lambda v: int(round(v)),
                ),
            ),
            description="Pressure sensor; payload hPa",
        ),
        DeviceKind(
            tag="doorlock",
            device_type=MatterDeviceType.DOOR_LOCK,
            bindings=(
                AttributeBinding(
                    "doorLock", "lockState",
                    ValueType(ValueKind.ENUM, choices=LOCK_STATES), 1,
                    prepare=_lock_alias,
                    from_protocol=lambda v: LOCK_NAMES.get(v, v),
                ),
            ),
            description="Door lock; payload locked|unlocked or true|false",
        ),
    )
}


def get_kind(tag: str) -> Optional[DeviceKind]:
    """Look up a device kind by its tag."""
    return DEVICE_KINDS.get(tag)
