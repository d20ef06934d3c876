"""
flowbridge - Flow to Matter bridge

Exposes flow-defined virtual devices (lights, sockets, sensors, locks) as
bridged endpoints of a Matter aggregator, keeping flow messages and Matter
attributes in sync in both directions.

Example:
    >>> from flowbridge import BridgeController, MemoryStack, DeviceDescriptor
    >>> controller = BridgeController(MemoryStack())
    >>> await controller.start()
    >>> sync = await controller.add_device(
    ...     DeviceDescriptor("lamp-1", "Desk Lamp", "onofflight"))
    >>> sync.submit({"payload": True})
"""

__version__ = "1.0.0"

from .config import Config
from .bridge.controller import BridgeController, BridgeState
from .devices.models import DeviceDescriptor
from .protocol.memory import MemoryStack

__all__ = [
    "__version__",
    "Config",
    "BridgeController",
    "BridgeState",
    "DeviceDescriptor",
    "MemoryStack",
]
