"""
Agent Bridge Relay

Moves USDC across chains over Circle CCTP on behalf of marketplace agents:
burns on the source chain, waits for Circle's attestation and mints on the
destination chain, persisting every step so progress can be polled.

Usage:
    # Run the HTTP API
    bridge-relay serve

    # Inspect a bridge record
    bridge-relay status 1718000000000-abc123

    # Retry the mint for a bridge that failed after the burn
    bridge-relay retry-mint 1718000000000-abc123
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .models import BridgeRecord, BridgeStatus
from .orchestrator import BridgeOrchestrator
from .service import BridgeService

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "BridgeRecord",
    "BridgeStatus",
    "BridgeOrchestrator",
    "BridgeService",
]
