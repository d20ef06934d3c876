"""
Process-scoped bridge context.

Created by the BridgeController on start() and handed explicitly to the
DeviceRegistry; there is no module-level bridge singleton.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .protocol.base import CommissioningInfo, ProtocolStack


@dataclass
class BridgeContext:
    """The running protocol environment and where it keeps its state."""
    name: str
    stack: ProtocolStack
    storage_path: Optional[Path] = None
    commissioning: CommissioningInfo = field(default_factory=CommissioningInfo)
    started_at: float = field(default_factory=time.time)
