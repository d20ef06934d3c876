"""
Protocol stack collaborators.

- base: the ProtocolStack interface and its event/handle types
- memory: in-process simulated stack
- rpc: WebSocket/JSON-RPC client for an external Matter sidecar
"""

from .base import (
    AttributeChange,
    CommissioningInfo,
    Endpoint,
    ProtocolStack,
    StackOptions,
    Subscription,
)
from .memory import MemoryStack
from .rpc import JsonRpcError, RpcStack, RpcStackConfig

__all__ = [
    "AttributeChange",
    "CommissioningInfo",
    "Endpoint",
    "ProtocolStack",
    "StackOptions",
    "Subscription",
    "MemoryStack",
    "JsonRpcError",
    "RpcStack",
    "RpcStackConfig",
]
