"""
Protocol sidecar client.

Talks to a Matter stack running as a separate process (for example a
matter.js server) over WebSocket/JSON-RPC.

Architecture:
    flowbridge (Python) <--WebSocket/JSON-RPC--> Matter sidecar (Node.js)

The sidecar owns the Matter protocol implementation: commissioning, the
aggregator endpoint, the attribute store and persistence. This client only
forwards the narrow ProtocolStack operations and relays attribute-change
notifications back.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiohttp

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


@dataclass
class RpcStackConfig:
    """Configuration for the sidecar connection."""

    # WebSocket URL of the sidecar's JSON-RPC endpoint
    url: str = "ws://localhost:5580/rpc"

    # Connection timeout
    connect_timeout_seconds: float = 10.0

    # Request timeout
    request_timeout_seconds: float = 30.0


class JsonRpcError(Exception):
    """JSON-RPC error from the sidecar."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")


class RpcStack(ProtocolStack):
    """
    ProtocolStack backed by a sidecar process.

    Manages the WebSocket connection and the JSON-RPC request/response
    bookkeeping.
    """

    def __init__(self, config: Optional[RpcStackConfig] = None):
        self.config = config or RpcStackConfig()
        self.on_failure = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._request_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._callbacks: Dict[str, Tuple[int, AttributeCallback]] = {}
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._closing

    # === Lifecycle ===

    async def start(self, options: StackOptions) -> CommissioningInfo:
        if self.is_connected:
            return await self.commissioning_info()
        if self._ws is not None:
            # Left over from a failed environment
            await self.stop()

        self._closing = False
        logger.info(f"Connecting to Matter sidecar at {self.config.url}...")
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.config.url),
                timeout=self.config.connect_timeout_seconds,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._close_connection()
            raise EnvironmentFailure(f"cannot reach Matter sidecar at {self.config.url}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_messages())

        try:
            result = await self._send_request("start", {
                "name": options.name,
                "port": options.port,
                "passcode": options.passcode,
                "discriminator": options.discriminator,
                "storagePath": str(options.storage_path),
                "networkInterface": options.network_interface,
                "vendorId": options.vendor_id,
                "productId": options.product_id,
            })
        except (JsonRpcError, asyncio.TimeoutError) as e:
            await self.stop()
            raise EnvironmentFailure(f"Matter sidecar failed to start: {e}") from e

        logger.info("Matter sidecar environment started")
        return self._commissioning_from(result)

    async def stop(self) -> None:
        if self._ws is None:
            return

        if self.is_connected:
            try:
                await self._send_request("stop", timeout=5.0)
            except (JsonRpcError, asyncio.TimeoutError, EnvironmentFailure) as e:
                logger.warning(f"Matter sidecar did not stop cleanly: {e}")

        self._closing = True

        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        await self._close_connection()
        self._fail_pending(EnvironmentFailure("Matter sidecar connection closed"))
        self._callbacks.clear()
        logger.info("Matter sidecar connection closed")

    async def _close_connection(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # === Wire protocol ===

    async def _read_messages(self) -> None:
        """Background task reading WebSocket messages."""
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning(f"Ignoring malformed sidecar message: {msg.data[:80]!r}")
                        continue
                    await self._handle_message(message)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {self._ws.exception()}")
                    break
        finally:
            if not self._closing:
                self._closing = True
                await self._connection_lost(EnvironmentFailure("Matter sidecar connection lost"))

    async def _connection_lost(self, error: EnvironmentFailure) -> None:
        logger.error(str(error))
        self._fail_pending(error)
        if self.on_failure:
            await self.on_failure(error)

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        """Handle an incoming JSON-RPC message."""
        # Response to a request
        if "id" in message and message["id"] in self._pending:
            future = self._pending.pop(message["id"])
            if future.done():
                return

            if "error" in message:
                error = message["error"] or {}
                future.set_exception(JsonRpcError(
                    code=error.get("code", -1),
                    message=error.get("message", "Unknown error"),
                    data=error.get("data"),
                ))
            else:
                future.set_result(message.get("result"))

        # Event notification
        elif message.get("method") == "event":
            await self._handle_event(message.get("params") or {})

    async def _handle_event(self, params: Dict[str, Any]) -> None:
        """Handle an event from the sidecar."""
        event_type = params.get("type")

        if event_type == "attributeChanged":
            change = AttributeChange(
                endpoint_id=params.get("endpointId"),
                cluster=params.get("cluster", ""),
                attribute=params.get("attribute", ""),
                value=params.get("value"),
                token=params.get("token"),
            )
            for endpoint_id, callback in list(self._callbacks.values()):
                if endpoint_id == change.endpoint_id:
                    callback(change)

        elif event_type == "environmentFailure":
            # No more requests: their responses would have to come through this reader
            self._closing = True
            await self._connection_lost(
                EnvironmentFailure(params.get("message", "Matter sidecar reported a failure"))
            )

    async def _send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a JSON-RPC request to the sidecar.

        Raises:
            JsonRpcError: If the sidecar returns an error
            asyncio.TimeoutError: If the request times out
            EnvironmentFailure: If there is no connection
        """
        if not self.is_connected:
            raise EnvironmentFailure("not connected to Matter sidecar")

        timeout = timeout or self.config.request_timeout_seconds
        self._request_id += 1
        request_id = self._request_id

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        logger.debug(f"Sidecar request: {method}({params})")
        try:
            await self._ws.send_json({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params or {},
            })
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(request_id, None)

    @staticmethod
    def _commissioning_from(result: Optional[Dict[str, Any]]) -> CommissioningInfo:
        result = result or {}
        return CommissioningInfo(
            commissioned=bool(result.get("commissioned", False)),
            qr_pairing_code=result.get("qrPairingCode"),
            manual_pairing_code=result.get("manualPairingCode"),
            fabrics=int(result.get("fabrics", 0)),
        )

    # === ProtocolStack ===

    async def commissioning_info(self) -> CommissioningInfo:
        return self._commissioning_from(await self._send_request("commissioningInfo"))

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
        try:
            result = await self._send_request("createEndpoint", {
                "uniqueId": unique_id,
                "name": name,
                "deviceType": int(device_type),
                "endpointId": endpoint_id,
                "clusters": {c: sorted(f) for c, f in capabilities.items()},
                "attributes": initial_attributes,
            })
        except (JsonRpcError, asyncio.TimeoutError) as e:
            raise ConstructionFailed(unique_id, str(e) or "timed out") from e

        return Endpoint(
            endpoint_id=result["endpointId"],
            device_type=device_type,
            unique_id=unique_id,
            name=name,
            capabilities=dict(capabilities),
        )

    async def attach_to_aggregator(self, endpoint: Endpoint) -> None:
        try:
            await self._send_request("attach", {"endpointId": endpoint.endpoint_id})
        except (JsonRpcError, asyncio.TimeoutError) as e:
            raise ConstructionFailed(endpoint.unique_id, str(e) or "timed out") from e

    async def detach(self, endpoint: Endpoint) -> None:
        for sub_id, (endpoint_id, _) in list(self._callbacks.items()):
            if endpoint_id == endpoint.endpoint_id:
                del self._callbacks[sub_id]
        if not self.is_connected:
            return
        try:
            await self._send_request("detach", {"endpointId": endpoint.endpoint_id})
        except (JsonRpcError, asyncio.TimeoutError) as e:
            logger.warning(f"Detaching endpoint {endpoint.endpoint_id} failed: {e}")

    async def write_attributes(
        self,
        endpoint: Endpoint,
        values: Dict[str, Dict[str, Any]],
        token: Optional[str] = None,
    ) -> None:
        try:
            await self._send_request("writeAttributes", {
                "endpointId": endpoint.endpoint_id,
                "values": values,
                "token": token,
            })
        except JsonRpcError as e:
            raise ProtocolWriteFailed(endpoint.unique_id, e.message) from e
        except asyncio.TimeoutError as e:
            raise ProtocolWriteFailed(endpoint.unique_id, "timed out") from e

    async def subscribe(self, endpoint: Endpoint, callback: AttributeCallback) -> Subscription:
        try:
            result = await self._send_request("subscribe", {"endpointId": endpoint.endpoint_id})
        except (JsonRpcError, asyncio.TimeoutError) as e:
            raise ConstructionFailed(endpoint.unique_id, f"subscription failed: {e}") from e

        subscription = Subscription(str(result["subscriptionId"]), endpoint.endpoint_id)
        self._callbacks[subscription.subscription_id] = (endpoint.endpoint_id, callback)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if self._callbacks.pop(subscription.subscription_id, None) is None:
            return
        if not self.is_connected:
            return
        try:
            await self._send_request("unsubscribe", {"subscriptionId": subscription.subscription_id})
        except (JsonRpcError, asyncio.TimeoutError) as e:
            logger.warning(f"Unsubscribe {subscription.subscription_id} failed: {e}")
