"""
Bridge intake and status.

Validates transfer requests, creates the initial record and launches the
orchestrator as a detached task. Callers get the bridge id right away and
poll status; nothing here waits on a chain.
"""

import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Any, Coroutine, Optional

import structlog
from web3 import Web3

from .attestation import AttestationPoller, RetryPolicy
from .chain import ChainClientPool, to_base_units
from .config import Settings
from .errors import ConfigurationError, ConflictError, ExecutionError, RecordNotFound, ValidationError
from .models import (
    BridgeRecord,
    BridgeStatus,
    InitiateRequest,
    InitiateResponse,
    payment_key,
    record_key,
)
from .networks import NETWORKS, is_supported_source
from .orchestrator import BridgeOrchestrator
from .store import AsyncFieldStore, FieldStore

logger = structlog.get_logger()

BRIDGE_ID_RE = re.compile(r"^\d+-[0-9a-f]{1,16}$")
TX_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_bridge_id(payment_tx_hash: str, now_ms: Optional[int] = None) -> str:
    """`<epoch ms>-<first 16 hex chars of the payment tx hash>`."""
    if now_ms is None:
        now_ms = _now_ms()
    prefix = payment_tx_hash.lower().removeprefix("0x")[:16]
    return f"{now_ms}-{prefix}"


def is_valid_bridge_id(bridge_id: str) -> bool:
    return bool(BRIDGE_ID_RE.match(bridge_id or ""))


def validate_initiate(request: InitiateRequest) -> dict[str, str]:
    """
    Check an initiate request.

    Returns the normalized fields; raises ValidationError otherwise.
    """
    if (
        not request.source_chain
        or not request.payment_tx_hash
        or request.amount is None
        or str(request.amount).strip() == ""
        or not request.final_recipient
        or not request.purpose
    ):
        raise ValidationError(
            "sourceChain, paymentTxHash, amount, finalRecipient, purpose required"
        )

    if not is_supported_source(request.source_chain):
        if request.source_chain in NETWORKS:
            raise ValidationError(f"Unsupported source chain: {request.source_chain}")
        raise ValidationError(f"Unknown source chain: {request.source_chain}")

    if not Web3.is_address(request.final_recipient):
        raise ValidationError("finalRecipient must be a valid address")

    if not TX_HASH_RE.match(request.payment_tx_hash):
        raise ValidationError("paymentTxHash must be a hex transaction hash")

    amount = str(request.amount).strip()
    try:
        to_base_units(amount)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    return {
        "source_chain": request.source_chain,
        "payment_tx_hash": request.payment_tx_hash,
        "amount": amount,
        "final_recipient": request.final_recipient,
        "purpose": request.purpose,
    }


class BridgeService:
    """
    Owns the store, the orchestrator and the set of running bridge tasks.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[AsyncFieldStore] = None,
        orchestrator: Optional[BridgeOrchestrator] = None,
        chains: Optional[ChainClientPool] = None,
    ):
        self.settings = settings
        self.store = store
        self.orchestrator = orchestrator
        self.chains = chains
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "BridgeService":
        """Wire the service from configuration; missing parts stay None."""
        store = None
        if settings.database_url:
            store = AsyncFieldStore(FieldStore(settings.database_url))
        else:
            logger.warning("store_not_configured", message="DATABASE_URL not set; bridge disabled")

        chains = None
        orchestrator = None
        if settings.relayer_private_key:
            chains = ChainClientPool(settings)
        else:
            logger.warning("relayer_not_configured", message="RELAYER_PRIVATE_KEY not set; bridge disabled")

        if store is not None and chains is not None:
            poller = AttestationPoller(
                settings.attestation_api_url,
                RetryPolicy(
                    interval=settings.attestation_poll_interval_seconds,
                    timeout=settings.attestation_timeout_seconds,
                ),
            )
            orchestrator = BridgeOrchestrator(
                store,
                chains,
                poller,
                destination_chain=settings.destination_chain,
            )

        return cls(settings, store=store, orchestrator=orchestrator, chains=chains)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _require_store(self) -> AsyncFieldStore:
        if self.store is None:
            raise ConfigurationError("Bridge not configured (DATABASE_URL required)")
        return self.store

    def _require_orchestrator(self) -> BridgeOrchestrator:
        self._require_store()
        if self.orchestrator is None:
            raise ConfigurationError("Relayer not configured (RELAYER_PRIVATE_KEY required)")
        return self.orchestrator

    # ------------------------------------------------------------------
    # Detached tasks
    # ------------------------------------------------------------------

    def launch(self, coro: Coroutine[Any, Any, Any], bridge_id: str) -> asyncio.Task:
        """Run a coroutine detached from the caller; its errors are only logged."""
        task = asyncio.create_task(coro, name=f"bridge:{bridge_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("bridge_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("bridge_task_unhandled", task=task.get_name(), error=str(exc))

    @property
    def running(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every running bridge task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running tasks and release clients."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.orchestrator is not None:
            await self.orchestrator.poller.aclose()
        if self.store is not None:
            self.store.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def initiate(self, request: InitiateRequest) -> InitiateResponse:
        """
        Accept a bridge request and start it in the background.

        A repeated request for the same payment returns the bridge that
        payment already started instead of starting a second one.

        Raises:
            ConfigurationError: store or relay key missing
            ValidationError: bad or missing fields
            ExecutionError: no unique bridge id could be allocated
        """
        orchestrator = self._require_orchestrator()
        store = self._require_store()
        values = validate_initiate(request)
        ttl = self.settings.bridge_ttl_seconds

        now_ms = _now_ms()
        bridge_id = make_bridge_id(values["payment_tx_hash"], now_ms)
        claim_key = payment_key(values["payment_tx_hash"])

        try:
            await store.create(claim_key, {"bridgeId": bridge_id}, ttl)
        except ConflictError:
            return await self._existing_for_payment(claim_key, values["payment_tx_hash"])

        try:
            record = await self._create_record(bridge_id, values, ttl)
        except ConflictError:
            # Another payment sharing the hash prefix got the same millisecond
            bridge_id = make_bridge_id(values["payment_tx_hash"], now_ms + 1)
            logger.warning("bridge_id_collision", payment_tx_hash=values["payment_tx_hash"], bridge_id=bridge_id)
            try:
                await store.create_or_update(claim_key, {"bridgeId": bridge_id})
                record = await self._create_record(bridge_id, values, ttl)
            except ConflictError as e:
                await store.delete(claim_key)
                raise ExecutionError("Could not allocate a unique bridge id; retry the request") from e
            except Exception:
                await store.delete(claim_key)
                raise
        except Exception:
            await store.delete(claim_key)
            raise

        logger.info(
            "bridge_initiated",
            bridge_id=bridge_id,
            source_chain=record.source_chain,
            amount=record.amount,
            final_recipient=record.final_recipient,
            purpose=record.purpose,
        )

        self.launch(orchestrator.run(bridge_id), bridge_id)
        return InitiateResponse(id=bridge_id, status=BridgeStatus.INITIATED)

    async def _create_record(self, bridge_id: str, values: dict[str, str], ttl: int) -> BridgeRecord:
        record = BridgeRecord(
            id=bridge_id,
            status=BridgeStatus.INITIATED,
            created_at=datetime.now(timezone.utc).isoformat(),
            **values,
        )
        await self._require_store().create(record_key(bridge_id), record.to_fields(), ttl)
        return record

    async def _existing_for_payment(self, claim_key: str, payment_tx_hash: str) -> InitiateResponse:
        claim = await self._require_store().get(claim_key) or {}
        existing_id = claim.get("bridgeId")
        record = await self._load(existing_id) if existing_id else None
        if record is None:
            raise ConflictError(f"Payment {payment_tx_hash} was already used for a bridge")

        logger.info("bridge_initiate_duplicate", bridge_id=existing_id, payment_tx_hash=payment_tx_hash)
        return InitiateResponse(id=record.id, status=record.status)

    async def _load(self, bridge_id: str) -> Optional[BridgeRecord]:
        data = await self._require_store().get(record_key(bridge_id))
        if not data:
            return None
        return BridgeRecord.from_fields(bridge_id, data)

    async def status(self, bridge_id: str) -> BridgeRecord:
        """
        Current record of a bridge.

        Raises:
            ValidationError: malformed id
            RecordNotFound: absent or expired
        """
        self._require_store()
        if not is_valid_bridge_id(bridge_id):
            raise ValidationError("Invalid bridge id")
        record = await self._load(bridge_id)
        if record is None:
            raise RecordNotFound(f"Bridge not found: {bridge_id}")
        return record

    async def retry(self, bridge_id: str) -> BridgeRecord:
        """
        Operator retry of the mint for a failed bridge, in the background.

        Raises:
            ValidationError: malformed id
            RecordNotFound: absent or expired
            ConflictError: record not retryable, or a retry is already running
        """
        orchestrator = self._require_orchestrator()
        if not is_valid_bridge_id(bridge_id):
            raise ValidationError("Invalid bridge id")

        record = await orchestrator.claim_retry(bridge_id)
        self.launch(orchestrator.retry_mint(bridge_id, claimed=True), bridge_id)
        logger.info("bridge_retry_scheduled", bridge_id=bridge_id)
        return record

    async def health(self) -> dict[str, Any]:
        """Store and RPC connectivity."""
        store_ok = await self.store.check_connectivity() if self.store else False
        rpc: dict[str, bool] = {}
        if self.chains is not None:
            for key in NETWORKS:
                rpc[key] = await self.chains.get(key).check_connectivity()
        return {
            "store": store_ok,
            "relayer_configured": self.chains is not None,
            "rpc": rpc,
        }
