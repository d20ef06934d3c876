"""
API routes for flowbridge.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from ..devices.kinds import DEVICE_KINDS
from ..devices.models import DeviceDescriptor
from ..errors import (
    BridgeError,
    ConstructionFailed,
    DuplicateId,
    EnvironmentFailure,
    InvalidValue,
    ProtocolWriteFailed,
    RegistrationFailed,
)
from .server import FlowBridgeServer

logger = logging.getLogger(__name__)

router = APIRouter()


# ============ Request/Response Models ============

class DeviceRequest(BaseModel):
    """Request to add a device."""
    id: str = Field(..., description="Unique device identifier")
    name: str = Field(..., description="Display name")
    type: str = Field(..., description="Device type tag, e.g. onofflight")
    bat: bool = False
    batType: Optional[str] = Field(default=None, description="replaceable or rechargeable")
    passthrough: bool = False


class InputRequest(BaseModel):
    """A flow message for a device."""
    topic: Optional[str] = None
    payload: Any = Field(default=None, description="Message payload")


class InputResponse(BaseModel):
    """Response to an input message."""
    queued: bool
    device: str
    state: Optional[str] = None
    payload: Any = None


class DeviceType(BaseModel):
    """A supported device type."""
    type: str
    device_type: int
    payload: List[str] = []
    description: str = ""


# ============ Helpers ============

def _server(request: Request) -> FlowBridgeServer:
    return request.app.state.server


def _http_error(error: BridgeError) -> HTTPException:
    """Map a bridge error onto an HTTP status."""
    if isinstance(error, InvalidValue):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, DuplicateId):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (ConstructionFailed, RegistrationFailed)):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, ProtocolWriteFailed):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, EnvironmentFailure):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


# ============ Routes ============

@router.get("/bridge")
async def get_bridge(request: Request) -> Dict[str, Any]:
    """Bridge state and pairing information."""
    server = _server(request)
    data = server.status()
    if server.controller.is_running:
        data["commissioning"] = await server.controller.commission()
    return data


@router.get("/types", response_model=List[DeviceType])
async def list_types() -> List[DeviceType]:
    """Supported device types."""
    return [
        DeviceType(
            type=kind.tag,
            device_type=int(kind.device_type),
            payload=kind.payload_keys,
            description=kind.description,
        )
        for kind in DEVICE_KINDS.values()
    ]


@router.get("/devices")
async def list_devices(request: Request) -> List[Dict[str, Any]]:
    """All device nodes."""
    return [node.to_dict() for node in _server(request).nodes.values()]


@router.get("/devices/{device_id}")
async def get_device(device_id: str, request: Request) -> Dict[str, Any]:
    """One device node."""
    node = _server(request).nodes.get(device_id)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
    return node.to_dict()


@router.post("/devices", status_code=201)
async def add_device(body: DeviceRequest, request: Request) -> Dict[str, Any]:
    """Add a device and register it with the bridge."""
    server = _server(request)
    try:
        descriptor = DeviceDescriptor.from_dict(body.model_dump(exclude_none=True))
        node = await server.add_node(descriptor, keep_on_failure=False)
    except BridgeError as e:
        raise _http_error(e)
    return node.to_dict()


@router.delete("/devices/{device_id}")
async def remove_device(device_id: str, request: Request) -> Dict[str, Any]:
    """Close a device and detach it from the bridge."""
    if not await _server(request).remove_node(device_id):
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
    return {"removed": device_id}


@router.post("/devices/{device_id}/input", status_code=202, response_model=InputResponse)
async def device_input(
    device_id: str,
    body: InputRequest,
    request: Request,
    wait: bool = Query(default=False, description="Wait until the device has handled the message"),
) -> InputResponse:
    """Send a flow message to a device."""
    server = _server(request)
    node = server.nodes.get(device_id)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")

    msg = body.model_dump(exclude_unset=True)
    outcome = asyncio.get_running_loop().create_future() if wait else None
    try:
        queued = node.input(msg, outcome)
    except BridgeError as e:
        raise _http_error(e)
    if not queued:
        raise HTTPException(status_code=503, detail=f"Device {device_id} is not active")

    response = InputResponse(queued=True, device=device_id)
    if outcome is not None:
        error = await outcome
        if isinstance(error, BridgeError):
            raise _http_error(error)
        if error is not None:
            raise HTTPException(status_code=500, detail=str(error))
        response.state = node.sync.state.value
        response.payload = node.sync.payload
    return response


# ============ WebSocket ============

@router.websocket("/ws")
async def events_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for device events.

    Server -> client:
    - output: {"type": "output", "device", "msg"}
    - status: {"type": "status", "device", "status"}

    Client -> server:
    - input: {"type": "input", "device", "msg"}
    - ping: {"type": "ping"}
    - subscribe: {"type": "subscribe", "devices": [...] | null}
    """
    server: FlowBridgeServer = websocket.app.state.server
    manager = server.manager
    await manager.connect(websocket)

    await manager.send_personal(websocket, {
        "type": "connected",
        "bridge": server.controller.state.value,
        "devices": list(server.nodes),
    })

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send_personal(websocket, {"type": "error", "error": "invalid JSON"})
                continue

            if message.get("type") == "ping":
                await manager.send_personal(websocket, {"type": "pong"})

            elif message.get("type") == "subscribe":
                devices = message.get("devices")
                if devices is not None and not isinstance(devices, list):
                    await manager.send_personal(websocket, {"type": "error", "error": "devices must be a list"})
                    continue
                await manager.subscribe(websocket, devices)
                await manager.send_personal(websocket, {"type": "subscribed", "devices": devices})

            elif message.get("type") == "input":
                device_id = message.get("device")
                node = server.nodes.get(device_id)
                if node is None:
                    await manager.send_personal(websocket, {
                        "type": "error", "device": device_id, "error": "unknown device",
                    })
                    continue
                try:
                    node.input(message.get("msg"))
                except InvalidValue as e:
                    await manager.send_personal(websocket, {
                        "type": "error", "device": device_id, "error": str(e),
                    })

    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await manager.disconnect(websocket)
