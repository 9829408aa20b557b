"""
Bridge record and API request/response models.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class BridgeStatus(str, Enum):
    """State of a bridge run, in the order a run moves through them."""

    INITIATED = "initiated"
    APPROVED = "approved"
    DEPOSITED = "deposited"
    MESSAGE_SENT = "message_sent"
    POLLING_ATTESTATION = "polling_attestation"
    ATTESTATION_RECEIVED = "attestation_received"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BridgeStatus.COMPLETED, BridgeStatus.FAILED)

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    def can_advance_to(self, new: "BridgeStatus") -> bool:
        """Whether moving to `new` is a forward step (or a failure)."""
        if self.is_terminal:
            return False
        if new is BridgeStatus.FAILED:
            return True
        return new.rank > self.rank


_ORDER = [
    BridgeStatus.INITIATED,
    BridgeStatus.APPROVED,
    BridgeStatus.DEPOSITED,
    BridgeStatus.MESSAGE_SENT,
    BridgeStatus.POLLING_ATTESTATION,
    BridgeStatus.ATTESTATION_RECEIVED,
    BridgeStatus.COMPLETED,
    BridgeStatus.FAILED,
]


# Store key namespaces
RECORD_PREFIX = "bridge:"
PAYMENT_PREFIX = "payment:"
RETRY_PREFIX = "retry:"


def record_key(bridge_id: str) -> str:
    return f"{RECORD_PREFIX}{bridge_id}"


def payment_key(payment_tx_hash: str) -> str:
    return f"{PAYMENT_PREFIX}{payment_tx_hash.lower()}"


def retry_key(bridge_id: str) -> str:
    return f"{RETRY_PREFIX}{bridge_id}"


# Python attribute -> persisted field name
FIELD_NAMES = {
    "id": "id",
    "source_chain": "sourceChain",
    "payment_tx_hash": "paymentTxHash",
    "amount": "amount",
    "final_recipient": "finalRecipient",
    "purpose": "purpose",
    "status": "status",
    "deposit_for_burn_tx": "depositForBurnTx",
    "message_bytes": "messageBytes",
    "message_hash": "messageHash",
    "attestation": "attestation",
    "receive_message_tx": "receiveMessageTx",
    "error": "error",
    "created_at": "createdAt",
    "completed_at": "completedAt",
}


@dataclass
class BridgeRecord:
    """A bridge as persisted in the store (flat map of string fields)."""

    id: str
    status: BridgeStatus
    source_chain: Optional[str] = None
    payment_tx_hash: Optional[str] = None
    amount: Optional[str] = None
    final_recipient: Optional[str] = None
    purpose: Optional[str] = None
    deposit_for_burn_tx: Optional[str] = None
    message_bytes: Optional[str] = None
    message_hash: Optional[str] = None
    attestation: Optional[str] = None
    receive_message_tx: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_fields(cls, bridge_id: str, data: dict[str, str]) -> "BridgeRecord":
        """Build a record from stored fields. Unknown fields are ignored."""
        values = {}
        for attr, name in FIELD_NAMES.items():
            if attr == "id":
                continue
            value = data.get(name)
            if value not in (None, ""):
                values[attr] = value
        status = BridgeStatus(values.pop("status", BridgeStatus.INITIATED.value))
        return cls(id=bridge_id, status=status, **values)

    def to_fields(self) -> dict[str, str]:
        """Flat field map with absent fields omitted."""
        out: dict[str, str] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, BridgeStatus):
                value = value.value
            out[FIELD_NAMES[f.name]] = str(value)
        return out


# ============================================================================
# Initiate
# ============================================================================

class InitiateRequest(BaseModel):
    """Request to start a bridge after the payment settled on the source chain."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "sourceChain": "sepolia",
                    "paymentTxHash": "0xabc123...",
                    "amount": "25.00",
                    "finalRecipient": "0x1111111111111111111111111111111111111111",
                    "purpose": "hire-fee",
                }
            ]
        },
    )

    # Presence is checked by the service so missing fields map to 400
    source_chain: Optional[str] = Field(None, alias="sourceChain")
    payment_tx_hash: Optional[str] = Field(None, alias="paymentTxHash")
    amount: Optional[Union[str, int, float]] = Field(None, description="USDC amount (decimal)")
    final_recipient: Optional[str] = Field(None, alias="finalRecipient")
    purpose: Optional[str] = None


class InitiateResponse(BaseModel):
    """Bridge accepted; poll /bridge/status/{id} for progress."""

    id: str = Field(..., description="Bridge identifier")
    status: BridgeStatus = Field(..., description="Always 'initiated' on creation")


# ============================================================================
# Status
# ============================================================================

class BridgeRecordResponse(BaseModel):
    """Point-in-time view of a bridge record."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: BridgeStatus
    source_chain: Optional[str] = Field(None, alias="sourceChain")
    payment_tx_hash: Optional[str] = Field(None, alias="paymentTxHash")
    amount: Optional[str] = None
    final_recipient: Optional[str] = Field(None, alias="finalRecipient")
    purpose: Optional[str] = None
    deposit_for_burn_tx: Optional[str] = Field(None, alias="depositForBurnTx")
    message_bytes: Optional[str] = Field(None, alias="messageBytes")
    message_hash: Optional[str] = Field(None, alias="messageHash")
    attestation: Optional[str] = None
    receive_message_tx: Optional[str] = Field(None, alias="receiveMessageTx")
    error: Optional[str] = None
    created_at: Optional[str] = Field(None, alias="createdAt")
    completed_at: Optional[str] = Field(None, alias="completedAt")

    @classmethod
    def from_record(cls, record: BridgeRecord) -> "BridgeRecordResponse":
        return cls(**{FIELD_NAMES[k]: v for k, v in record.__dict__.items()})


class RetryResponse(BaseModel):
    """Manual retry accepted."""

    id: str
    status: BridgeStatus
    retrying: bool = True


# ============================================================================
# Health Check
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")
    store: bool = Field(..., description="State store connectivity")
    relayer_configured: bool = Field(..., description="Relay signer configured")
    rpc: dict[str, bool] = Field(..., description="RPC connectivity per network")
