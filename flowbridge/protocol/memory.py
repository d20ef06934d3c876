"""
In-process protocol stack.

Keeps the endpoint tree and attribute values in memory and enforces the
cluster schema an endpoint was constructed with. Used by the test-suite and
by ``flowbridge run --simulate``; a controller can be simulated with
controller_write().
"""

import logging
import uuid
import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from ..devices.models import Capabilities, MatterDeviceType
from ..errors import ConstructionFailed, EnvironmentFailure, ProtocolWriteFailed
from .base import (
    AttributeCallback,
    AttributeChange,
    CommissioningInfo,
    Endpoint,
    ProtocolStack,
    StackOptions,
    Subscription,
)

logger = logging.getLogger(__name__)

AGGREGATOR_ENDPOINT_ID = 1


@dataclass
class _EndpointRecord:
    endpoint: Endpoint
    attributes: Dict[str, Dict[str, Any]]
    attached: bool = False


class MemoryStack(ProtocolStack):
    """Simulated Matter environment."""

    def __init__(
        self,
        reject_device_types: Optional[Set[MatterDeviceType]] = None,
        reject_writes: bool = False,
    ):
        self.reject_device_types = set(reject_device_types or ())
        self.reject_writes = reject_writes
        self.on_failure = None
        self.options: Optional[StackOptions] = None
        self.commissioned = False
        self.writes: List[Tuple[int, Dict[str, Dict[str, Any]], Optional[str]]] = []
        self._running = False
        self._endpoints: Dict[int, _EndpointRecord] = {}
        self._subscriptions: Dict[str, Tuple[int, AttributeCallback]] = {}
        self._next_endpoint_id = AGGREGATOR_ENDPOINT_ID + 1

    @property
    def is_running(self) -> bool:
        return self._running

    def _require_running(self) -> None:
        if not self._running:
            raise EnvironmentFailure("protocol environment is not running")

    # === Lifecycle ===

    async def start(self, options: StackOptions) -> CommissioningInfo:
        if self._running:
            return await self.commissioning_info()
        self.options = options
        self._running = True
        logger.info(
            f"Simulated Matter environment '{options.name}' started "
            f"(port {options.port}, discriminator {options.discriminator})"
        )
        return await self.commissioning_info()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._subscriptions.clear()
        self._endpoints.clear()
        logger.info("Simulated Matter environment stopped")

    async def commissioning_info(self) -> CommissioningInfo:
        return CommissioningInfo(commissioned=self.commissioned, fabrics=1 if self.commissioned else 0)

    # === Endpoint tree ===

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
        self._require_running()

        if device_type in self.reject_device_types:
            raise ConstructionFailed(unique_id, f"device type 0x{device_type:04X} not supported")

        unknown = set(initial_attributes) - set(capabilities)
        if unknown:
            raise ConstructionFailed(unique_id, f"attributes for undeclared clusters: {sorted(unknown)}")

        if endpoint_id is None or endpoint_id in self._endpoints or endpoint_id <= AGGREGATOR_ENDPOINT_ID:
            endpoint_id = self._allocate_endpoint_id()
        self._next_endpoint_id = max(self._next_endpoint_id, endpoint_id + 1)

        endpoint = Endpoint(
            endpoint_id=endpoint_id,
            device_type=device_type,
            unique_id=unique_id,
            name=name,
            capabilities=dict(capabilities),
        )
        self._endpoints[endpoint_id] = _EndpointRecord(
            endpoint=endpoint,
            attributes={cluster: dict(attrs) for cluster, attrs in initial_attributes.items()},
        )
        for cluster in capabilities:
            self._endpoints[endpoint_id].attributes.setdefault(cluster, {})
        return endpoint

    def _allocate_endpoint_id(self) -> int:
        while self._next_endpoint_id in self._endpoints:
            self._next_endpoint_id += 1
        return self._next_endpoint_id

    async def attach_to_aggregator(self, endpoint: Endpoint) -> None:
        self._require_running()
        record = self._endpoints.get(endpoint.endpoint_id)
        if record is None:
            raise ConstructionFailed(endpoint.unique_id, "endpoint was never constructed")
        for other in self._endpoints.values():
            if other.attached and other.endpoint.unique_id == endpoint.unique_id:
                raise ConstructionFailed(endpoint.unique_id, "aggregator already holds this identifier")
        record.attached = True
        logger.debug(f"Endpoint {endpoint.endpoint_id} attached to aggregator ({endpoint.unique_id})")

    async def detach(self, endpoint: Endpoint) -> None:
        record = self._endpoints.pop(endpoint.endpoint_id, None)
        if record is None:
            return
        for sub_id, (endpoint_id, _) in list(self._subscriptions.items()):
            if endpoint_id == endpoint.endpoint_id:
                del self._subscriptions[sub_id]
        logger.debug(f"Endpoint {endpoint.endpoint_id} detached ({endpoint.unique_id})")

    def aggregated(self) -> List[Endpoint]:
        """Endpoints currently attached to the aggregator."""
        return [r.endpoint for r in self._endpoints.values() if r.attached]

    def attributes(self, endpoint_id: int) -> Dict[str, Dict[str, Any]]:
        """Current attribute values of an endpoint."""
        return self._endpoints[endpoint_id].attributes

    # === Attributes ===

    async def write_attributes(
        self,
        endpoint: Endpoint,
        values: Dict[str, Dict[str, Any]],
        token: Optional[str] = None,
    ) -> None:
        self._require_running()
        record = self._endpoints.get(endpoint.endpoint_id)
        if record is None or not record.attached:
            raise ProtocolWriteFailed(endpoint.unique_id, f"endpoint {endpoint.endpoint_id} is not attached")
        if self.reject_writes:
            raise ProtocolWriteFailed(endpoint.unique_id, "write rejected by stack")
        for cluster, attributes in values.items():
            if cluster not in record.attributes:
                raise ProtocolWriteFailed(endpoint.unique_id, f"endpoint has no cluster {cluster!r}")
            for attribute in attributes:
                if attribute not in record.attributes[cluster]:
                    raise ProtocolWriteFailed(
                        endpoint.unique_id, f"cluster {cluster!r} has no attribute {attribute!r}"
                    )

        self.writes.append((endpoint.endpoint_id, copy.deepcopy(values), token))
        self._apply(record, values, token)

    async def controller_write(self, endpoint_id: int, cluster: str, attribute: str, value: Any) -> None:
        """Simulate a paired controller changing an attribute."""
        record = self._endpoints[endpoint_id]
        self._apply(record, {cluster: {attribute: value}}, None)

    def _apply(self, record: _EndpointRecord, values: Dict[str, Dict[str, Any]], token: Optional[str]) -> None:
        endpoint_id = record.endpoint.endpoint_id
        for cluster, attributes in values.items():
            for attribute, value in attributes.items():
                current = record.attributes[cluster]
                if attribute in current and current[attribute] == value:
                    continue
                record.attributes[cluster][attribute] = value
                change = AttributeChange(endpoint_id, cluster, attribute, value, token)
                for sub_endpoint, callback in list(self._subscriptions.values()):
                    if sub_endpoint == endpoint_id:
                        callback(change)

    async def subscribe(self, endpoint: Endpoint, callback: AttributeCallback) -> Subscription:
        self._require_running()
        subscription = Subscription(uuid.uuid4().hex[:16], endpoint.endpoint_id)
        self._subscriptions[subscription.subscription_id] = (endpoint.endpoint_id, callback)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)

    # === Simulation hooks ===

    def pair_controller(self) -> None:
        """Simulate a controller completing commissioning."""
        self.commissioned = True

    async def fail(self, error: Exception) -> None:
        """Simulate a fatal environment failure."""
        self._running = False
        if self.on_failure:
            await self.on_failure(error)
