"""
Battery / power-source augmentation shared by every device kind.

A device that opts into a battery gets the Matter PowerSource cluster with
the Battery feature plus Replaceable or Rechargeable. Inbound battery
messages look like::

    {"level": 0|1|2, "percent": 0-100, "charge": 0|1}

optionally wrapped as ``{"battery": {...}}``.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from ..devices.models import (
    BatteryLevel,
    BatteryStatus,
    BatteryType,
    Capabilities,
    Origin,
    PendingWrite,
)
from ..errors import InvalidValue
from .validate import as_enum, as_percent

logger = logging.getLogger(__name__)

POWER_SOURCE = "powerSource"

# PowerSource cluster enums
STATUS_ACTIVE = 1
REPLACEABILITY_NOT_REPLACEABLE = 1
REPLACEABILITY_USER_REPLACEABLE = 2
CHARGE_STATE_IS_CHARGING = 1
CHARGE_STATE_IS_NOT_CHARGING = 3

LEVEL_CHOICES = {"ok": BatteryLevel.OK, "low": BatteryLevel.LOW, "critical": BatteryLevel.CRITICAL}
CHARGE_CHOICES = {"notCharging": 0, "charging": 1}


def capabilities_for(config: BatteryType) -> Capabilities:
    """Extra protocol capability a battery configuration adds."""
    if config == BatteryType.NONE:
        return {}
    return {POWER_SOURCE: frozenset({"battery", config.value})}


def initial_attributes_for(config: BatteryType) -> Dict[str, Dict[str, Any]]:
    """PowerSource attribute payload an endpoint is constructed with."""
    if config == BatteryType.NONE:
        return {}

    attributes: Dict[str, Any] = {
        "status": STATUS_ACTIVE,
        "order": 0,
        "description": "Battery",
        "batChargeLevel": int(BatteryLevel.OK),
        "batPercentRemaining": 200,  # half-percent units
        "batReplacementNeeded": False,
    }
    if config == BatteryType.REPLACEABLE:
        attributes["batReplaceability"] = REPLACEABILITY_USER_REPLACEABLE
        attributes["batReplacementDescription"] = "Battery"
        attributes["batQuantity"] = 1
    else:
        attributes["batReplaceability"] = REPLACEABILITY_NOT_REPLACEABLE
        attributes["batChargeState"] = CHARGE_STATE_IS_NOT_CHARGING
        attributes["batFunctionalWhileCharging"] = True
    return {POWER_SOURCE: attributes}


def apply_battery_message(
    config: BatteryType,
    device_id: str,
    payload: Any,
    token: Optional[str] = None,
) -> List[PendingWrite]:
    """
    Turn a battery message into PowerSource attribute writes.

    Every field is validated before any write is produced, so a bad field
    leaves the existing battery state untouched.
    """
    if config == BatteryType.NONE:
        raise InvalidValue("battery-powered device", payload, "device has no battery configured")

    if isinstance(payload, Mapping) and isinstance(payload.get("battery"), Mapping):
        payload = payload["battery"]
    if not isinstance(payload, Mapping) or not any(k in payload for k in ("level", "percent", "charge")):
        raise InvalidValue("{level, percent, charge}", payload)

    values: Dict[str, Any] = {}
    if "level" in payload:
        values["batChargeLevel"] = int(as_enum(payload["level"], LEVEL_CHOICES))
    if "percent" in payload:
        values["batPercentRemaining"] = int(round(as_percent(payload["percent"]) * 2))
    if "charge" in payload:
        charging = as_enum(payload["charge"], CHARGE_CHOICES) == 1
        if config == BatteryType.RECHARGEABLE:
            values["batChargeState"] = (
                CHARGE_STATE_IS_CHARGING if charging else CHARGE_STATE_IS_NOT_CHARGING
            )
        elif charging:
            logger.debug(f"Device {device_id}: ignoring charge flag on replaceable battery")

    return [
        PendingWrite(
            device_id=device_id,
            cluster=POWER_SOURCE,
            attribute=name,
            value=value,
            origin=Origin.FLOW,
            token=token,
        )
        for name, value in values.items()
    ]


def battery_status(config: BatteryType, state: Mapping[str, Any]) -> Optional[BatteryStatus]:
    """Read the battery sub-record back out of a device's state."""
    if config == BatteryType.NONE:
        return None

    attributes = state.get(POWER_SOURCE) or {}
    remaining = attributes.get("batPercentRemaining", 200)
    percent = remaining / 2
    if percent.is_integer():
        percent = int(percent)
    return BatteryStatus(
        level=BatteryLevel(attributes.get("batChargeLevel", 0)),
        percent=percent,
        charging=attributes.get("batChargeState") == CHARGE_STATE_IS_CHARGING,
    )
