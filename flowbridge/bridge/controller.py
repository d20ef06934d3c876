"""
Bridge Controller.

Owns the protocol environment for one bridge process:
- pairing parameters (passcode, discriminator) for the current run
- the storage location and network interface handed to the stack
- the BridgeContext and DeviceRegistry shared by every device
- one DeviceSynchronizer per configured device

The controller stays thin; the protocol work is delegated to the stack.
"""

import logging
import socket
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import BridgeConfig
from ..context import BridgeContext
from ..devices.models import DeviceDescriptor
from ..errors import BridgeError, EnvironmentFailure
from ..protocol.base import ProtocolStack, StackOptions
from ..registry.devices import DeviceRegistry
from ..sync.synchronizer import DeviceSynchronizer, OutputCallback, StatusCallback
from .pairing import PairingParameters

logger = logging.getLogger(__name__)


class BridgeState(str, Enum):
    """State of the bridge."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


def host_interfaces() -> List[str]:
    """Names of the host's network interfaces, if the platform can list them."""
    try:
        return [name for _, name in socket.if_nameindex()]
    except (OSError, AttributeError):
        return []


class BridgeController:
    """
    Process-wide bridge lifecycle.

    Example:
        controller = BridgeController(MemoryStack(), BridgeConfig(name="Lab"))
        await controller.start()
        sync = await controller.add_device(descriptor)
        ...
        await controller.stop()
    """

    def __init__(
        self,
        stack: ProtocolStack,
        config: Optional[BridgeConfig] = None,
        storage_path: Optional[Path] = None,
    ):
        self.stack = stack
        self.config = config or BridgeConfig()
        self.storage_path = storage_path or (
            Path(self.config.storage_path).expanduser()
            if self.config.storage_path
            else Path.home() / ".flowbridge" / "storage"
        )

        self._state = BridgeState.STOPPED
        self.last_error: Optional[str] = None
        self.context: Optional[BridgeContext] = None
        self.registry: Optional[DeviceRegistry] = None
        self.pairing: Optional[PairingParameters] = None
        self.devices: Dict[str, DeviceSynchronizer] = {}

    @property
    def state(self) -> BridgeState:
        """Get current bridge state."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == BridgeState.RUNNING

    def _require_running(self) -> None:
        if not self.is_running:
            raise EnvironmentFailure(f"bridge is {self._state.value}")

    # === Lifecycle ===

    async def start(self) -> None:
        """
        Start the protocol environment and the aggregator.

        Raises:
            EnvironmentFailure: If the environment cannot be started
            InvalidValue: If pinned pairing parameters are invalid
        """
        if self._state in (BridgeState.RUNNING, BridgeState.STARTING):
            return

        self._state = BridgeState.STARTING
        logger.info(f"Starting bridge '{self.config.name}'...")

        try:
            self._check_interface()
            try:
                self.storage_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise EnvironmentFailure(f"cannot create storage at {self.storage_path}: {e}") from e

            self.pairing = PairingParameters.generate(self.config.passcode, self.config.discriminator)
            options = StackOptions(
                name=self.config.name,
                port=self.config.port,
                passcode=self.pairing.passcode,
                discriminator=self.pairing.discriminator,
                storage_path=self.storage_path,
                network_interface=self.config.network_interface,
            )

            self.stack.on_failure = self._on_environment_failure
            commissioning = await self.stack.start(options)
        except BridgeError as e:
            self._state = BridgeState.ERROR
            self.last_error = str(e)
            logger.error(f"Failed to start bridge: {e}")
            raise

        self.context = BridgeContext(
            name=self.config.name,
            stack=self.stack,
            storage_path=self.storage_path,
            commissioning=commissioning,
        )
        self.registry = DeviceRegistry(self.context)
        self.last_error = None
        self._state = BridgeState.RUNNING

        logger.info(
            f"Bridge '{self.config.name}' running on port {self.config.port} "
            f"(discriminator {self.pairing.discriminator}, "
            f"pairing code {self.pairing.formatted_pairing_code})"
        )

    def _check_interface(self) -> None:
        name = self.config.network_interface
        if not name:
            return
        available = host_interfaces()
        if available and name not in available:
            raise EnvironmentFailure(
                f"network interface {name!r} not found (available: {', '.join(available)})"
            )

    async def stop(self) -> None:
        """Close every device, then tear the environment down."""
        if self._state in (BridgeState.STOPPED, BridgeState.STOPPING):
            return

        self._state = BridgeState.STOPPING
        logger.info("Stopping bridge...")

        await self._close_devices("bridge stopping")

        try:
            await self.stack.stop()
        except EnvironmentFailure as e:
            logger.warning(f"Protocol environment did not stop cleanly: {e}")
        self.stack.on_failure = None

        self.context = None
        self.registry = None
        self.pairing = None
        self._state = BridgeState.STOPPED
        logger.info("Bridge stopped")

    async def _close_devices(self, reason: str) -> None:
        devices = list(self.devices.values())
        self.devices.clear()
        for sync in devices:
            await sync.close(reason)

    async def _on_environment_failure(self, error: Exception) -> None:
        if self._state not in (BridgeState.RUNNING, BridgeState.STARTING):
            return
        logger.error(f"Protocol environment failed: {error}")
        self._state = BridgeState.ERROR
        self.last_error = str(error)
        await self._close_devices("environment failure")

    # === Commissioning ===

    async def commission(self) -> Dict[str, Any]:
        """Pairing information for an external controller."""
        self._require_running()
        info = await self.stack.commissioning_info()
        self.context.commissioning = info
        return {
            "passcode": self.pairing.passcode,
            "discriminator": self.pairing.discriminator,
            "manual_pairing_code": info.manual_pairing_code or self.pairing.manual_pairing_code,
            "qr_pairing_code": info.qr_pairing_code,
            "commissioned": info.commissioned,
            "fabrics": info.fabrics,
        }

    # === Devices ===

    async def add_device(
        self,
        descriptor: DeviceDescriptor,
        on_output: Optional[OutputCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> DeviceSynchronizer:
        """
        Register a device and start synchronizing it.

        Raises:
            EnvironmentFailure: If the bridge is not running
            RegistrationFailed: If the device cannot be registered
        """
        self._require_running()
        sync = DeviceSynchronizer(
            descriptor,
            self.registry,
            on_output=on_output,
            on_status=on_status,
            echo_window_seconds=self.config.echo_window_seconds,
        )
        await sync.start()
        self.devices[descriptor.device_id] = sync
        return sync

    async def remove_device(self, device_id: str) -> bool:
        """Close a device; returns False if it was not running here."""
        sync = self.devices.pop(device_id, None)
        if sync is None:
            return False
        await sync.close("removed")
        return True

    def get_device(self, device_id: str) -> Optional[DeviceSynchronizer]:
        return self.devices.get(device_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.config.name,
            "state": self._state.value,
            "error": self.last_error,
            "port": self.config.port,
            "devices": len(self.devices),
        }
        if self.context:
            data["uptime_seconds"] = round(time.time() - self.context.started_at, 1)
            data["commissioned"] = self.context.commissioning.commissioned
        if self.pairing:
            data["pairing"] = self.pairing.to_dict()
        return data
