"""
FastAPI server for flowbridge.

Acts as the flow runtime for HTTP and WebSocket clients: every device added
through the API becomes a DeviceNode whose outputs and status changes are
broadcast to connected WebSocket clients.
"""

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Dict, Iterable, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .. import __version__
from ..bridge.controller import BridgeController
from ..devices.models import DeviceDescriptor
from ..errors import BridgeError, DuplicateId, RegistrationFailed
from ..flow.node import DeviceNode, NodeStatus
from .websocket import ConnectionManager, emit_output, emit_status

logger = logging.getLogger(__name__)


class FlowBridgeServer:
    """
    flowbridge API server.

    Manages:
    - the bridge controller
    - one DeviceNode per device
    - WebSocket clients
    """

    def __init__(
        self,
        controller: BridgeController,
        devices: Iterable[DeviceDescriptor] = (),
        manager: Optional[ConnectionManager] = None,
    ):
        self.controller = controller
        self.configured_devices: List[DeviceDescriptor] = list(devices)
        self.manager = manager or ConnectionManager()
        self.nodes: Dict[str, DeviceNode] = {}

    async def start(self) -> None:
        """Start the bridge and register the configured devices."""
        logger.info("Starting flowbridge server...")
        await self.controller.start()

        for descriptor in self.configured_devices:
            try:
                await self.add_node(descriptor)
            except RegistrationFailed as e:
                # The node stays listed with its error status
                logger.error(f"Configured device {descriptor.device_id} not registered: {e}")

        logger.info(f"flowbridge server started with {len(self.nodes)} device(s)")

    async def stop(self) -> None:
        """Close every node and stop the bridge."""
        logger.info("Stopping flowbridge server...")
        for node in list(self.nodes.values()):
            await node.close()
        self.nodes.clear()
        await self.controller.stop()
        await self.manager.flush()
        await self.manager.close()

    async def add_node(self, descriptor: DeviceDescriptor, keep_on_failure: bool = True) -> DeviceNode:
        """
        Create and configure a node for a device.

        With keep_on_failure, a node whose registration fails stays listed
        showing its error, the way a misconfigured flow node does.
        """
        if descriptor.device_id in self.nodes:
            raise DuplicateId(descriptor.device_id)

        node = DeviceNode(
            self.controller,
            descriptor,
            send=partial(emit_output, self.manager, descriptor.device_id),
            status=partial(self._emit_status, descriptor.device_id),
        )
        self.nodes[descriptor.device_id] = node
        try:
            await node.configured()
        except BridgeError:
            if not keep_on_failure:
                self.nodes.pop(descriptor.device_id, None)
            raise
        return node

    async def remove_node(self, device_id: str) -> bool:
        node = self.nodes.pop(device_id, None)
        if node is None:
            return False
        await node.close()
        return True

    async def _emit_status(self, device_id: str, status: NodeStatus) -> None:
        await emit_status(self.manager, device_id, status.to_dict())

    def status(self) -> Dict[str, Any]:
        return {
            "bridge": self.controller.to_dict(),
            "devices": len(self.nodes),
            "websocket_clients": len(self.manager.active_connections),
        }


def create_app(server: FlowBridgeServer) -> FastAPI:
    """Create the FastAPI application."""
    from .routes import router

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        try:
            await server.start()
        except Exception as e:
            logger.error(f"Failed to start server: {e}")
            raise
        yield
        await server.stop()

    app = FastAPI(
        title="flowbridge",
        description="Flow to Matter bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.server = server

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")

    # Health check
    @app.get("/health")
    async def health():
        return {"status": "ok", "bridge": server.controller.state.value}

    return app


def run_server(server: FlowBridgeServer, host: str = "127.0.0.1", port: int = 8540, log_level: str = "info"):
    """Run the server with uvicorn."""
    app = create_app(server)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=log_level.lower(),
    )
