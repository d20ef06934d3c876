"""
Shared fixtures for the flowbridge test-suite.
"""

import pytest

from flowbridge.bridge.controller import BridgeController
from flowbridge.config import BridgeConfig
from flowbridge.devices.models import BatteryType, DeviceDescriptor
from flowbridge.protocol.memory import MemoryStack


@pytest.fixture
def make_descriptor():
    """Build a DeviceDescriptor with sensible defaults."""

    def _make(device_id="dev-1", device_type="onofflight", battery=BatteryType.NONE, passthrough=False, name=None):
        return DeviceDescriptor(
            device_id=device_id,
            name=name or f"Device {device_id}",
            device_type=device_type,
            battery=battery,
            passthrough=passthrough,
        )

    return _make


@pytest.fixture
def make_controller(tmp_path):
    """Build a (not yet started) controller on a MemoryStack."""

    def _make(stack=None, **config):
        config.setdefault("echo_window_seconds", 0.5)
        return BridgeController(
            stack or MemoryStack(),
            BridgeConfig(**config),
            storage_path=tmp_path / "storage",
        )

    return _make
