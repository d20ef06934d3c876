"""
API server for flowbridge.

Provides REST and WebSocket endpoints for:
- Bridge state and pairing information
- Adding and removing devices
- Sending flow messages to devices
- Streaming device outputs and status
"""

from .server import create_app, FlowBridgeServer
from .routes import router

__all__ = [
    "create_app",
    "FlowBridgeServer",
    "router",
]
