"""
Configuration management for flowbridge.

Handles:
- Bridge identity and pairing parameters
- Protocol stack selection
- HTTP server settings
- Configured devices
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from .devices.models import DeviceDescriptor

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".flowbridge"

# Matter operational port, and the flow-side HTTP API
DEFAULT_MATTER_PORT = 5540
DEFAULT_API_PORT = 8540


def _known(cls, data: dict) -> dict:
    # Filter to only known fields to handle config evolution
    known_fields = set(cls.__dataclass_fields__)
    return {k: v for k, v in data.items() if k in known_fields}


@dataclass
class BridgeConfig:
    """Configuration for the bridge's protocol environment."""
    name: str = "Flow Bridge"
    port: int = DEFAULT_MATTER_PORT
    passcode: Optional[int] = None       # None = random per start
    discriminator: Optional[int] = None  # None = random per start
    network_interface: Optional[str] = None
    storage_path: Optional[str] = None   # None = <data_dir>/storage
    echo_window_seconds: float = 2.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "port": self.port,
            "passcode": self.passcode,
            "discriminator": self.discriminator,
            "network_interface": self.network_interface,
            "storage_path": self.storage_path,
            "echo_window_seconds": self.echo_window_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BridgeConfig":
        return cls(**_known(cls, data))


@dataclass
class StackConfig:
    """Which protocol stack to drive, and how to reach it."""
    type: str = "memory"  # memory, rpc
    url: str = "ws://localhost:5580/rpc"
    connect_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 30.0

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "url": self.url,
            "connect_timeout_seconds": self.connect_timeout_seconds,
            "request_timeout_seconds": self.request_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StackConfig":
        return cls(**_known(cls, data))


@dataclass
class ServerConfig:
    """Configuration for the API server."""
    host: str = "127.0.0.1"
    port: int = DEFAULT_API_PORT
    debug: bool = False

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        return cls(**_known(cls, data))


@dataclass
class Config:
    """
    Main flowbridge configuration.

    Stored at ~/.flowbridge/config.json
    """
    # Paths
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    # Components
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    stack: StackConfig = field(default_factory=StackConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # Devices registered on startup
    devices: List[DeviceDescriptor] = field(default_factory=list)

    log_level: str = "INFO"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def storage_path(self) -> Path:
        if self.bridge.storage_path:
            return Path(self.bridge.storage_path).expanduser()
        return self.data_dir / "storage"

    def ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def get_device(self, device_id: str) -> Optional[DeviceDescriptor]:
        for descriptor in self.devices:
            if descriptor.device_id == device_id:
                return descriptor
        return None

    def add_device(self, descriptor: DeviceDescriptor) -> bool:
        """Add a device; returns False if the id is already configured."""
        if self.get_device(descriptor.device_id):
            return False
        self.devices.append(descriptor)
        return True

    def remove_device(self, device_id: str) -> bool:
        before = len(self.devices)
        self.devices = [d for d in self.devices if d.device_id != device_id]
        return len(self.devices) != before

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bridge": self.bridge.to_dict(),
            "stack": self.stack.to_dict(),
            "server": self.server.to_dict(),
            "devices": [d.to_dict() for d in self.devices],
            "log_level": self.log_level,
        }

    def save(self) -> None:
        """Save configuration to disk."""
        self.ensure_data_dir()

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def from_dict(cls, data: dict, data_dir: Optional[Path] = None) -> "Config":
        config = cls(
            data_dir=data_dir or DEFAULT_DATA_DIR,
            log_level=data.get("log_level", "INFO"),
        )

        if "bridge" in data:
            config.bridge = BridgeConfig.from_dict(data["bridge"])
        if "stack" in data:
            config.stack = StackConfig.from_dict(data["stack"])
        if "server" in data:
            config.server = ServerConfig.from_dict(data["server"])

        for device_data in data.get("devices", []):
            config.devices.append(DeviceDescriptor.from_dict(device_data))

        return config

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from disk."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        if not config_path.exists():
            return cls(data_dir=data_dir)

        with open(config_path, 'r') as f:
            data = json.load(f)

        return cls.from_dict(data, data_dir)

    @classmethod
    def exists(cls, data_dir: Optional[Path] = None) -> bool:
        """Check if configuration exists."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        return (data_dir / "config.json").exists()
