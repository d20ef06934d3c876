"""
Flow-side device node.

Adapts one DeviceSynchronizer to a flow runtime's node lifecycle:

    configured()  -> register the device
    input(msg)    -> hand a message to the device, never blocking
    close()       -> deregister

Outputs and status changes are pushed to the callbacks the runtime supplies.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from ..bridge.controller import BridgeController
from ..devices.models import DeviceDescriptor
from ..errors import InvalidValue
from ..sync.synchronizer import DeviceStatus, DeviceSynchronizer, SyncState

logger = logging.getLogger(__name__)


@dataclass
class NodeStatus:
    """Node badge as shown in a flow editor."""
    fill: str
    shape: str
    text: str

    @classmethod
    def from_device(cls, status: DeviceStatus) -> "NodeStatus":
        if status.error:
            return cls("red", "ring", status.error)
        if status.state == SyncState.ACTIVE:
            return cls("green", "ring", "active")
        if status.state == SyncState.REGISTERING:
            return cls("yellow", "ring", "registering")
        return cls("grey", "ring", status.state.value)

    def to_dict(self) -> Dict[str, str]:
        return {"fill": self.fill, "shape": self.shape, "text": self.text}


SendCallback = Callable[[Dict[str, Any]], Awaitable[None]]
NodeStatusCallback = Callable[[NodeStatus], Awaitable[None]]


class DeviceNode:
    """One flow node bound to one bridged device."""

    def __init__(
        self,
        controller: BridgeController,
        config: Union[DeviceDescriptor, Mapping[str, Any]],
        send: Optional[SendCallback] = None,
        status: Optional[NodeStatusCallback] = None,
    ):
        self.controller = controller
        self.descriptor = (
            config if isinstance(config, DeviceDescriptor) else DeviceDescriptor.from_dict(dict(config))
        )
        self.send = send
        self.status_callback = status

        self.sync: Optional[DeviceSynchronizer] = None
        self.status = NodeStatus("grey", "ring", "unregistered")
        self.last_output: Optional[Dict[str, Any]] = None

    @property
    def device_id(self) -> str:
        return self.descriptor.device_id

    async def configured(self) -> None:
        """
        Register the device with the bridge.

        Raises:
            RegistrationFailed: If registration fails (also shown as status)
            EnvironmentFailure: If the bridge is not running
        """
        self.sync = await self.controller.add_device(
            self.descriptor,
            on_output=self._on_output,
            on_status=self._on_status,
        )

    def input(self, msg: Any, outcome: Optional[asyncio.Future] = None) -> bool:
        """
        Accept an inbound flow message.

        Returns as soon as the message is queued; processing errors are
        reported through status. Pass ``outcome`` to learn how this
        particular message was handled.

        Raises:
            InvalidValue: If the message is not {topic?: str, payload: any}
        """
        if not isinstance(msg, Mapping) or "payload" not in msg:
            raise InvalidValue("{topic?, payload}", msg)
        topic = msg.get("topic")
        if topic is not None and not isinstance(topic, str):
            raise InvalidValue("string topic", topic)

        if self.sync is None:
            logger.warning(f"Node {self.device_id} is not configured; dropping input")
            return False
        return self.sync.submit(msg, outcome)

    async def close(self) -> None:
        """Deregister the device. Safe to call repeatedly."""
        if self.sync is None:
            return
        await self.controller.remove_device(self.device_id)
        await self.sync.close()

    async def _on_output(self, device_id: str, msg: Dict[str, Any]) -> None:
        self.last_output = msg
        if self.send:
            await self.send(msg)

    async def _on_status(self, device_id: str, status: DeviceStatus) -> None:
        self.status = NodeStatus.from_device(status)
        if self.status_callback:
            await self.status_callback(self.status)

    def to_dict(self) -> Dict[str, Any]:
        data = self.descriptor.to_dict()
        data["status"] = self.status.to_dict()
        if self.sync:
            data["state"] = self.sync.state.value
            data["endpoint"] = self.sync.endpoint_id
            data["payload"] = self.sync.payload
            battery = self.sync.battery
            if battery:
                data["battery"] = battery.to_dict()
            data["stats"] = self.sync.stats()
        return data
