"""Flow runtime adapters."""

from .node import DeviceNode, NodeStatus

__all__ = ["DeviceNode", "NodeStatus"]
