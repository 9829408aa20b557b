"""
Shared fixtures: SQLite-backed store and in-process fakes for the chains
and the attestation service.
"""

from typing import Any, Optional

import pytest
from eth_abi import encode
from web3 import Web3

from bridge_relay.chain import DEFAULT_GAS_LIMIT, ChainClient
from bridge_relay.config import Settings
from bridge_relay.errors import AttestationTimeout, ExecutionError
from bridge_relay.networks import get_network
from bridge_relay.orchestrator import BridgeOrchestrator
from bridge_relay.service import BridgeService
from bridge_relay.store import AsyncFieldStore, FieldStore

TEST_PRIVATE_KEY = "0x" + "11" * 32
RECIPIENT = "0x1111111111111111111111111111111111111111"
PAYMENT_TX = "0xabc1230000000000000000000000000000000000000000000000000000000def"
CCTP_MESSAGE = bytes.fromhex("00000000" + "00000001" + "ab" * 64)
ATTESTATION = "0x" + "cd" * 65


def message_sent_log(client: ChainClient, emitter: str, message: bytes) -> dict[str, Any]:
    """A raw MessageSent(bytes) log as it appears in a receipt."""
    return {
        "address": emitter,
        "topics": [Web3.keccak(text="MessageSent(bytes)")],
        "data": encode(["bytes"], [message]),
        "blockHash": Web3.keccak(text="block"),
        "blockNumber": 1,
        "transactionHash": Web3.keccak(text="burn"),
        "transactionIndex": 0,
        "logIndex": 0,
        "removed": False,
    }


class FakeChainClient(ChainClient):
    """ChainClient with canned reads and receipts; log decoding is real."""

    def __init__(
        self,
        network_key: str,
        balance: int = 10**12,
        allowance: int = 0,
        emit_message: bool = True,
        revert: Optional[set[str]] = None,
    ):
        super().__init__(
            network=get_network(network_key),
            rpc_url="http://localhost:8545",
            private_key=TEST_PRIVATE_KEY,
        )
        self.balance = balance
        self.allowance_value = allowance
        self.emit_message = emit_message
        self.revert = revert or set()
        self.calls: list[tuple[str, str, list]] = []

    async def check_connectivity(self) -> bool:
        return True

    async def read(self, address: str, abi: list[dict], method: str, args: list) -> Any:
        if method == "balanceOf":
            return self.balance
        if method == "allowance":
            return self.allowance_value
        raise AssertionError(f"unexpected read: {method}")

    async def call(
        self,
        address: str,
        abi: list[dict],
        method: str,
        args: list,
        gas_limit: int = DEFAULT_GAS_LIMIT,
    ) -> dict[str, Any]:
        self.calls.append((method, address, args))
        tx_hash = Web3.keccak(text=f"{self.network.key}:{method}:{len(self.calls)}")
        if method in self.revert:
            raise ExecutionError(f"{method} transaction reverted: {Web3.to_hex(tx_hash)}")

        logs = []
        if method == "depositForBurn" and self.emit_message:
            logs.append(message_sent_log(self, self.network.message_transmitter, CCTP_MESSAGE))
        return {"transactionHash": tx_hash, "status": 1, "gasUsed": 60_000, "logs": logs}

    @property
    def methods(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakePool:
    """Stands in for ChainClientPool."""

    def __init__(self, **clients: FakeChainClient):
        self.clients = clients

    def get(self, network_key: str) -> FakeChainClient:
        if network_key not in self.clients:
            self.clients[network_key] = FakeChainClient(network_key)
        return self.clients[network_key]


class FakePoller:
    """Stands in for AttestationPoller."""

    def __init__(self, attestation: Optional[str] = ATTESTATION, timeout: float = 900):
        self.attestation = attestation
        self.timeout = timeout
        self.polled: list[str] = []
        self.closed = False

    async def poll(self, message_hash: str) -> str:
        self.polled.append(message_hash)
        if self.attestation is None:
            raise AttestationTimeout(message_hash, self.timeout)
        return self.attestation

    async def aclose(self) -> None:
        self.closed = True


class RecordingStore(AsyncFieldStore):
    """AsyncFieldStore that remembers every status it was asked to write."""

    def __init__(self, store: FieldStore):
        super().__init__(store)
        self.statuses: list[str] = []

    async def create_or_update(self, key: str, fields: dict[str, str]) -> None:
        if "status" in fields:
            self.statuses.append(fields["status"])
        await super().create_or_update(key, fields)


@pytest.fixture
def field_store(tmp_path) -> FieldStore:
    store = FieldStore(f"sqlite:///{tmp_path}/bridge.db")
    yield store
    store.close()


@pytest.fixture
def store(field_store: FieldStore) -> RecordingStore:
    return RecordingStore(field_store)


@pytest.fixture
def source_client() -> FakeChainClient:
    return FakeChainClient("sepolia")


@pytest.fixture
def destination_client() -> FakeChainClient:
    return FakeChainClient("fuji")


@pytest.fixture
def pool(source_client: FakeChainClient, destination_client: FakeChainClient) -> FakePool:
    return FakePool(sepolia=source_client, fuji=destination_client)


@pytest.fixture
def poller() -> FakePoller:
    return FakePoller()


@pytest.fixture
def orchestrator(store: RecordingStore, pool: FakePool, poller: FakePoller) -> BridgeOrchestrator:
    return BridgeOrchestrator(store, pool, poller, destination_chain="fuji")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path}/bridge.db",
        relayer_private_key=TEST_PRIVATE_KEY,
    )


@pytest.fixture
def service(
    settings: Settings,
    store: RecordingStore,
    orchestrator: BridgeOrchestrator,
    pool: FakePool,
) -> BridgeService:
    return BridgeService(settings, store=store, orchestrator=orchestrator, chains=pool)
