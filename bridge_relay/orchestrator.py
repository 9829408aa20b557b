"""
Bridge orchestrator - drives one bridge from burn to mint.

    initiated -> approved -> deposited -> message_sent
        -> polling_attestation -> attestation_received -> completed

Any step may end in `failed`. Each transition is written to the store
before the next step starts, so the last written status is the checkpoint
an operator resumes from.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from web3 import Web3

from .attestation import AttestationPoller
from .chain import message_hash, pad_address, to_base_units, tx_hash_hex
from .errors import AttestationTimeout, ConflictError, ExecutionError, RecordNotFound
from .models import BridgeRecord, BridgeStatus, FIELD_NAMES, record_key, retry_key
from .networks import (
    ERC20_ABI,
    MESSAGE_TRANSMITTER_ABI,
    TOKEN_MESSENGER_ABI,
    get_network,
    is_supported_source,
)
from .store import AsyncFieldStore

logger = structlog.get_logger()

MISSING_PARAMS_ERROR = "Missing bridge params"
MISSING_MESSAGE_SENT_ERROR = "Could not find MessageSent event in burn receipt"

# Upper bound on a retry claim left behind by a crashed process
RETRY_CLAIM_TTL_SECONDS = 60 * 60


def attestation_timeout_error(timeout_seconds: float) -> str:
    minutes = round(timeout_seconds / 60)
    return (
        f"Attestation timeout ({minutes} min). "
        "You can retry receiveMessage later with same messageHash."
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BridgeOrchestrator:
    """
    Runs the CCTP state machine for bridge records.

    Exactly one run per bridge id is expected; the service guarantees that
    by launching a run only for records it has just created.
    """

    def __init__(
        self,
        store: AsyncFieldStore,
        chains: Any,
        poller: AttestationPoller,
        destination_chain: str = "fuji",
    ):
        self.store = store
        # Anything with .get(network_key) -> ChainClient
        self.chains = chains
        self.poller = poller
        self.destination_chain = destination_chain

    # ------------------------------------------------------------------
    # Record I/O
    # ------------------------------------------------------------------

    async def load(self, bridge_id: str) -> Optional[BridgeRecord]:
        data = await self.store.get(record_key(bridge_id))
        if not data:
            return None
        return BridgeRecord.from_fields(bridge_id, data)

    async def _write(self, record: BridgeRecord, **changes: Any) -> None:
        """Persist changed fields (merge) and mirror them on the record."""
        fields = {}
        for attr, value in changes.items():
            setattr(record, attr, value)
            if isinstance(value, BridgeStatus):
                value = value.value
            fields[FIELD_NAMES[attr]] = str(value)
        await self.store.create_or_update(record_key(record.id), fields)

    async def _stored_status(self, bridge_id: str) -> Optional[BridgeStatus]:
        data = await self.store.get(record_key(bridge_id))
        if not data or not data.get("status"):
            return None
        return BridgeStatus(data["status"])

    async def _advance(self, record: BridgeRecord, status: BridgeStatus, **changes: Any) -> None:
        if not record.status.can_advance_to(status):
            raise ExecutionError(
                f"Illegal transition {record.status.value} -> {status.value}"
            )
        stored = await self._stored_status(record.id)
        if stored is not None and stored is not record.status:
            raise ConflictError(
                f"Bridge {record.id} is {stored.value} in the store, expected {record.status.value}"
            )
        previous = record.status
        await self._write(record, status=status, **changes)
        logger.info(
            "bridge_status",
            bridge_id=record.id,
            status=status.value,
            previous=previous.value,
        )

    async def _reopen(self, record: BridgeRecord, status: BridgeStatus) -> None:
        """
        Move a failed record back to a mid-pipeline status.

        The only status write that leaves a terminal state; callers must
        hold the retry claim.
        """
        previous = record.status
        await self._write(record, status=status)
        logger.info(
            "bridge_reopened",
            bridge_id=record.id,
            status=status.value,
            previous=previous.value,
        )

    async def _fail(self, record: BridgeRecord, error: str) -> None:
        logger.error("bridge_failed", bridge_id=record.id, status=record.status.value, error=error)
        try:
            # completed is final even if a late step of some other run errors
            if await self._stored_status(record.id) is BridgeStatus.COMPLETED:
                logger.warning("bridge_fail_skipped", bridge_id=record.id, error=error)
                return
            await self._write(record, status=BridgeStatus.FAILED, error=error)
        except Exception as e:
            logger.error("bridge_fail_write_error", bridge_id=record.id, error=str(e))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, bridge_id: str) -> None:
        """
        Drive a freshly initiated bridge to a terminal state.

        Never raises: every failure ends up in the record as `failed`.
        Terminal records are left alone, and so are records another run
        has already moved past `initiated`.
        """
        try:
            record = await self.load(bridge_id)
        except Exception as e:
            logger.error("bridge_load_error", bridge_id=bridge_id, error=str(e))
            return

        if record is None:
            logger.error("bridge_not_found", bridge_id=bridge_id)
            return

        if record.status.is_terminal:
            logger.info("bridge_already_terminal", bridge_id=bridge_id, status=record.status.value)
            return

        if record.status is not BridgeStatus.INITIATED:
            logger.warning(
                "bridge_run_skipped",
                bridge_id=bridge_id,
                status=record.status.value,
                reason="record already past initiated",
            )
            return

        logger.info("bridge_run_started", bridge_id=bridge_id, source_chain=record.source_chain)

        try:
            await self._execute(record)
        except AttestationTimeout as e:
            await self._fail(record, attestation_timeout_error(e.timeout))
        except Exception as e:
            await self._fail(record, str(e) or e.__class__.__name__)

    async def _execute(self, record: BridgeRecord) -> None:
        # initiated -> approved
        if not record.source_chain or not record.amount or not record.final_recipient:
            raise ExecutionError(MISSING_PARAMS_ERROR)
        if not is_supported_source(record.source_chain):
            raise ExecutionError(f"Unsupported source chain: {record.source_chain}")

        amount = to_base_units(record.amount)
        mint_recipient = pad_address(record.final_recipient)
        source = get_network(record.source_chain)
        destination = get_network(self.destination_chain)
        await self._advance(record, BridgeStatus.APPROVED)

        # approved -> deposited
        client = self.chains.get(source.key)
        token_messenger = Web3.to_checksum_address(source.token_messenger)
        usdc = Web3.to_checksum_address(source.usdc)

        balance = await client.read(usdc, ERC20_ABI, "balanceOf", [client.address])
        if balance < amount:
            raise ExecutionError(
                f"Insufficient relayer USDC balance on {source.key}: have {balance}, need {amount}"
            )

        allowance = await client.read(usdc, ERC20_ABI, "allowance", [client.address, token_messenger])
        if allowance < amount:
            await client.call(usdc, ERC20_ABI, "approve", [token_messenger, amount])
        else:
            logger.info("approve_skipped", bridge_id=record.id, allowance=allowance)
        await self._advance(record, BridgeStatus.DEPOSITED)

        # deposited -> message_sent
        burn_receipt = await client.call(
            token_messenger,
            TOKEN_MESSENGER_ABI,
            "depositForBurn",
            [amount, destination.domain, mint_recipient, usdc],
        )
        await self._write(record, deposit_for_burn_tx=tx_hash_hex(burn_receipt))

        events = client.read_logs(
            burn_receipt,
            source.message_transmitter,
            MESSAGE_TRANSMITTER_ABI,
            "MessageSent",
        )
        if not events:
            raise ExecutionError(MISSING_MESSAGE_SENT_ERROR)

        message = bytes(events[0]["args"]["message"])
        await self._advance(
            record,
            BridgeStatus.MESSAGE_SENT,
            message_bytes=Web3.to_hex(message),
            message_hash=message_hash(message),
        )

        # message_sent -> polling_attestation -> attestation_received
        await self._advance(record, BridgeStatus.POLLING_ATTESTATION)
        attestation = await self.poller.poll(record.message_hash)
        await self._advance(record, BridgeStatus.ATTESTATION_RECEIVED, attestation=attestation)

        # attestation_received -> completed
        await self._mint(record)

    async def _mint(self, record: BridgeRecord) -> None:
        destination = get_network(self.destination_chain)
        client = self.chains.get(destination.key)

        receipt = await client.call(
            Web3.to_checksum_address(destination.message_transmitter),
            MESSAGE_TRANSMITTER_ABI,
            "receiveMessage",
            [
                Web3.to_bytes(hexstr=record.message_bytes),
                Web3.to_bytes(hexstr=record.attestation),
            ],
        )
        await self._advance(
            record,
            BridgeStatus.COMPLETED,
            receive_message_tx=tx_hash_hex(receipt),
            completed_at=_now_iso(),
        )
        logger.info("bridge_completed", bridge_id=record.id, receive_message_tx=record.receive_message_tx)

    # ------------------------------------------------------------------
    # Operator retry
    # ------------------------------------------------------------------

    async def check_retryable(self, bridge_id: str) -> BridgeRecord:
        """
        Load a record that retry_mint can pick up.

        Raises:
            RecordNotFound: if the record is absent or expired
            ConflictError: if it is not a failed bridge that got past the burn
        """
        record = await self.load(bridge_id)
        if record is None:
            raise RecordNotFound(f"Bridge not found: {bridge_id}")
        if record.status is not BridgeStatus.FAILED or not record.message_bytes:
            raise ConflictError(
                f"Bridge {bridge_id} is {record.status.value}; only failed bridges "
                "with messageBytes can be retried"
            )
        return record

    async def claim_retry(self, bridge_id: str) -> BridgeRecord:
        """
        Take the retry claim for a bridge and check it can be retried.

        At most one retry holds the claim at a time; it is released when
        that retry finishes.

        Raises:
            ConflictError: if another retry holds the claim, or the record
                is not retryable
            RecordNotFound: if the record is absent or expired
        """
        try:
            await self.store.create(
                retry_key(bridge_id), {"claimedAt": _now_iso()}, RETRY_CLAIM_TTL_SECONDS
            )
        except ConflictError as e:
            raise ConflictError(f"Retry already in progress for bridge {bridge_id}") from e

        try:
            return await self.check_retryable(bridge_id)
        except Exception:
            await self.release_retry(bridge_id)
            raise

    async def release_retry(self, bridge_id: str) -> None:
        await self.store.delete(retry_key(bridge_id))

    async def retry_mint(self, bridge_id: str, claimed: bool = False) -> BridgeRecord:
        """
        Operator-triggered retry of the mint for a failed bridge.

        Reopens the record at polling_attestation (or attestation_received
        when the attestation is already stored) and finishes the mint. This
        is the only path that moves a terminal record. Pass `claimed=True`
        when the caller already took the claim with `claim_retry`.
        """
        if not claimed:
            await self.claim_retry(bridge_id)

        try:
            record = await self.check_retryable(bridge_id)
            logger.info("bridge_retry_started", bridge_id=bridge_id, message_hash=record.message_hash)

            try:
                await self.store.delete_fields(record_key(bridge_id), [FIELD_NAMES["error"]])
                record.error = None

                if not record.attestation:
                    await self._reopen(record, BridgeStatus.POLLING_ATTESTATION)
                    hash_ = record.message_hash or message_hash(Web3.to_bytes(hexstr=record.message_bytes))
                    attestation = await self.poller.poll(hash_)
                    await self._advance(record, BridgeStatus.ATTESTATION_RECEIVED, attestation=attestation)
                else:
                    await self._reopen(record, BridgeStatus.ATTESTATION_RECEIVED)

                await self._mint(record)
            except AttestationTimeout as e:
                await self._fail(record, attestation_timeout_error(e.timeout))
            except Exception as e:
                await self._fail(record, str(e) or e.__class__.__name__)
        finally:
            await self.release_retry(bridge_id)

        return record
