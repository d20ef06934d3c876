"""
Protocol stack collaborator interface.

The bridge never talks to Matter directly. It builds endpoints, writes
attributes and subscribes to attribute changes through a ProtocolStack.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from ..devices.models import Capabilities, MatterDeviceType


@dataclass
class Endpoint:
    """Handle to an endpoint in the protocol tree."""
    endpoint_id: int
    device_type: MatterDeviceType
    unique_id: str
    name: str = ""
    capabilities: Capabilities = field(default_factory=dict)


@dataclass
class AttributeChange:
    """An attribute-change event raised by the protocol stack."""
    endpoint_id: int
    cluster: str
    attribute: str
    value: Any
    token: Optional[str] = None  # Correlation token of the write that caused it, if known


@dataclass
class Subscription:
    """Handle returned by ProtocolStack.subscribe()."""
    subscription_id: str
    endpoint_id: int


@dataclass
class StackOptions:
    """Everything the protocol environment needs to start."""
    name: str
    port: int
    passcode: int
    discriminator: int
    storage_path: Path
    network_interface: Optional[str] = None
    vendor_id: int = 0xFFF1
    product_id: int = 0x8000


@dataclass
class CommissioningInfo:
    """Pairing state reported by the stack."""
    commissioned: bool = False
    qr_pairing_code: Optional[str] = None
    manual_pairing_code: Optional[str] = None
    fabrics: int = 0


AttributeCallback = Callable[[AttributeChange], None]
FailureCallback = Callable[[Exception], Awaitable[None]]


class ProtocolStack(ABC):
    """
    Narrow interface onto a Matter stack.

    Implementations raise ConstructionFailed from construct_endpoint() and
    attach_to_aggregator(), ProtocolWriteFailed from write_attributes(), and
    EnvironmentFailure from start() or any call once the environment is gone.
    A fatal runtime failure is reported through ``on_failure``.
    """

    on_failure: Optional[FailureCallback] = None

    @abstractmethod
    async def start(self, options: StackOptions) -> CommissioningInfo:
        """Start the environment and its aggregator endpoint."""

    @abstractmethod
    async def stop(self) -> None:
        """Tear down the environment."""

    @abstractmethod
    async def construct_endpoint(
        self,
        device_type: MatterDeviceType,
        capabilities: Capabilities,
        initial_attributes: Dict[str, Dict[str, Any]],
        *,
        unique_id: str,
        name: str,
        endpoint_id: Optional[int] = None,
    ) -> Endpoint:
        """Build an endpoint, not yet reachable from the aggregator."""

    @abstractmethod
    async def attach_to_aggregator(self, endpoint: Endpoint) -> None:
        """Make an endpoint part of the aggregator."""

    @abstractmethod
    async def detach(self, endpoint: Endpoint) -> None:
        """Remove an endpoint from the aggregator and release it."""

    @abstractmethod
    async def write_attributes(
        self,
        endpoint: Endpoint,
        values: Dict[str, Dict[str, Any]],
        token: Optional[str] = None,
    ) -> None:
        """Write attributes (cluster -> attribute -> value) on an endpoint."""

    @abstractmethod
    async def subscribe(self, endpoint: Endpoint, callback: AttributeCallback) -> Subscription:
        """Deliver attribute changes on ``endpoint`` to ``callback``."""

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Cancel a subscription. Unknown subscriptions are ignored."""

    @abstractmethod
    async def commissioning_info(self) -> CommissioningInfo:
        """Current pairing state."""
