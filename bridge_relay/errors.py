"""
Error types raised by the bridge relay.
"""


class BridgeError(Exception):
    """Base class for bridge relay errors."""


class ValidationError(BridgeError):
    """Bad or missing request fields."""


class ConfigurationError(BridgeError):
    """Store or relay key not configured."""


class ExecutionError(BridgeError):
    """Chain call or log decoding failed inside a bridge run."""


class AttestationTimeout(BridgeError, TimeoutError):
    """Attestation service did not return a signature before the deadline."""

    def __init__(self, message_hash: str, timeout: float):
        self.message_hash = message_hash
        self.timeout = timeout
        super().__init__(f"No attestation for {message_hash} after {timeout:.0f}s")


class ConflictError(BridgeError):
    """Record key already exists, or the record is in the wrong state."""


class RecordNotFound(BridgeError):
    """Bridge record absent or expired."""
