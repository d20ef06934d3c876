"""Registry of devices attached to the bridge aggregator."""

from .devices import DeviceRegistry, EndpointNumbers, RegisteredDevice

__all__ = ["DeviceRegistry", "EndpointNumbers", "RegisteredDevice"]
