"""
Device Registry - binds virtual devices to the shared aggregator endpoint.

Tracks every registered device by identifier together with its live
protocol endpoint. Guarantees:
- identifiers are unique, so the aggregator never holds two endpoints
  for one identifier
- endpoint construction + aggregator attachment is all-or-nothing
- deregistration releases the endpoint and is a no-op for unknown ids

Endpoint numbers are remembered in <storage>/endpoints.json so a device keeps
its number across restarts.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from ..context import BridgeContext
from ..devices.kinds import DeviceKind, get_kind
from ..devices.models import DeviceDescriptor
from ..errors import ConstructionFailed, DuplicateId, EnvironmentFailure
from ..protocol.base import Endpoint
from ..sync import battery

logger = logging.getLogger(__name__)

BASIC_INFORMATION = "bridgedDeviceBasicInformation"


@dataclass
class RegisteredDevice:
    """A device attached to the aggregator."""
    descriptor: DeviceDescriptor
    kind: DeviceKind
    endpoint: Endpoint
    initial_attributes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    registered_at: float = field(default_factory=time.time)

    @property
    def device_id(self) -> str:
        return self.descriptor.device_id


class EndpointNumbers:
    """Persistent device id -> endpoint number assignments."""

    def __init__(self, storage_path: Optional[Path] = None):
        self.path = storage_path / "endpoints.json" if storage_path else None
        self._numbers: Dict[str, int] = {}
        self._load()

    def _load(self):
        """Load assignments from disk."""
        if self.path and self.path.exists():
            try:
                with open(self.path) as f:
                    data = json.load(f)
                self._numbers = {k: int(v) for k, v in data.get("endpoints", {}).items()}
                logger.debug(f"Loaded {len(self._numbers)} endpoint assignments")
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load endpoint assignments: {e}")

    def _save(self):
        """Save assignments to disk."""
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                json.dump({"version": 1, "endpoints": self._numbers}, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save endpoint assignments: {e}")

    def get(self, device_id: str) -> Optional[int]:
        return self._numbers.get(device_id)

    def assign(self, device_id: str, endpoint_id: int):
        if self._numbers.get(device_id) == endpoint_id:
            return
        # An endpoint number belongs to one device only
        for other, number in list(self._numbers.items()):
            if number == endpoint_id and other != device_id:
                del self._numbers[other]
        self._numbers[device_id] = endpoint_id
        self._save()


class DeviceRegistry:
    """
    Registry of devices attached to the bridge's aggregator.

    register() and deregister() are serialised by one lock; lookups are not.
    """

    def __init__(self, context: BridgeContext):
        self.context = context
        self._devices: Dict[str, RegisteredDevice] = {}
        self._numbers = EndpointNumbers(context.storage_path)
        self._lock = asyncio.Lock()

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def get(self, device_id: str) -> Optional[RegisteredDevice]:
        """Get a registered device by ID."""
        return self._devices.get(device_id)

    async def register(self, descriptor: DeviceDescriptor) -> RegisteredDevice:
        """
        Build the device's endpoint and attach it to the aggregator.

        Raises:
            DuplicateId: If the identifier is already registered
            ConstructionFailed: If the endpoint cannot be built or attached
            EnvironmentFailure: If the protocol environment is gone
        """
        device_id = descriptor.device_id
        stack = self.context.stack

        async with self._lock:
            if device_id in self._devices:
                raise DuplicateId(device_id)

            kind = get_kind(descriptor.device_type)
            if kind is None:
                raise ConstructionFailed(device_id, f"unknown device type {descriptor.device_type!r}")

            capabilities = dict(kind.capabilities())
            capabilities.update(battery.capabilities_for(descriptor.battery))
            capabilities[BASIC_INFORMATION] = frozenset()

            attributes = kind.initial_attributes()
            attributes.update(battery.initial_attributes_for(descriptor.battery))
            attributes[BASIC_INFORMATION] = {
                "nodeLabel": descriptor.name[:32],
                "uniqueId": device_id[:32],
                "reachable": True,
            }

            try:
                endpoint = await stack.construct_endpoint(
                    kind.device_type,
                    capabilities,
                    attributes,
                    unique_id=device_id,
                    name=descriptor.name,
                    endpoint_id=self._numbers.get(device_id),
                )
            except (ConstructionFailed, EnvironmentFailure):
                raise
            except Exception as e:
                raise ConstructionFailed(device_id, str(e)) from e

            try:
                await stack.attach_to_aggregator(endpoint)
            except Exception as e:
                await self._release(endpoint)
                if isinstance(e, (ConstructionFailed, EnvironmentFailure)):
                    raise
                raise ConstructionFailed(device_id, str(e)) from e

            self._numbers.assign(device_id, endpoint.endpoint_id)
            entry = RegisteredDevice(
                descriptor=descriptor,
                kind=kind,
                endpoint=endpoint,
                initial_attributes=attributes,
            )
            self._devices[device_id] = entry

            logger.info(
                f"Registered device {descriptor.name} ({device_id}) as "
                f"{kind.tag} on endpoint {endpoint.endpoint_id}"
            )
            return entry

    async def deregister(self, device_id: str) -> Optional[RegisteredDevice]:
        """Detach a device and release its endpoint. Unknown ids are ignored."""
        async with self._lock:
            entry = self._devices.pop(device_id, None)
            if entry is None:
                return None
            await self._release(entry.endpoint)
            logger.info(f"Deregistered device {device_id}")
            return entry

    async def _release(self, endpoint: Endpoint) -> None:
        try:
            await self.context.stack.detach(endpoint)
        except EnvironmentFailure as e:
            logger.warning(f"Endpoint {endpoint.endpoint_id} not released, environment is gone: {e}")
