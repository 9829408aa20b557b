"""
EVM client for CCTP contract interactions.

One ChainClient is bound to one network and the relay signer. Transactions
from the same signer on the same chain go through a shared TransactionQueue
so concurrent bridge runs never race on nonce assignment.
"""

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted
from web3.types import TxReceipt

from .config import Settings
from .errors import ConfigurationError, ExecutionError
from .networks import Network, get_network

logger = structlog.get_logger()

USDC_DECIMALS = 6
DEFAULT_GAS_LIMIT = 500_000


def to_base_units(amount: Union[str, int, float, Decimal], decimals: int = USDC_DECIMALS) -> int:
    """
    Convert a human decimal amount to integer base units.

    Uses Decimal arithmetic so "0.1" is exactly 100000 for 6 decimals.

    Raises:
        ValueError: if the amount is not a positive number with at most
            `decimals` fractional digits
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}") from None

    if not value.is_finite() or value <= 0:
        raise ValueError(f"Amount must be positive: {amount!r}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount has more than {decimals} decimals: {amount!r}")
    return int(scaled)


def pad_address(address: str) -> bytes:
    """Left-pad a 20-byte address into a 32-byte slot."""
    if not Web3.is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    raw = Web3.to_bytes(hexstr=address)
    return raw.rjust(32, b"\x00")


def message_hash(message: bytes) -> str:
    """keccak256 of a CCTP message as 0x-prefixed hex."""
    return Web3.to_hex(Web3.keccak(message))


def tx_hash_hex(receipt: TxReceipt) -> str:
    """Transaction hash of a receipt as 0x-prefixed hex."""
    return Web3.to_hex(receipt["transactionHash"])


class TransactionQueue:
    """
    Serializes nonce allocation and broadcast for one (chain, signer) pair.

    The nonce is the larger of the node's pending count and the last nonce
    this process handed out + 1, so a lagging node never causes reuse.
    After `reset()` the node's pending count alone decides again, which
    fills the gap left by a dropped transaction.
    """

    def __init__(self, chain_id: int, address: str):
        self.chain_id = chain_id
        self.address = address
        self._lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None

    @property
    def next_nonce(self) -> Optional[int]:
        """Local floor for the next nonce, or None when the node decides."""
        return self._next_nonce

    def reset(self) -> None:
        """Forget the local nonce floor."""
        if self._next_nonce is not None:
            logger.warning(
                "nonce_reset",
                chain_id=self.chain_id,
                address=self.address,
                dropped_floor=self._next_nonce,
            )
        self._next_nonce = None

    async def send(self, w3: AsyncWeb3, account: Any, build_tx) -> bytes:
        """
        Allocate a nonce, build, sign and broadcast a transaction.

        Args:
            build_tx: coroutine function taking the nonce and returning the
                transaction dict to sign
        """
        async with self._lock:
            pending = await w3.eth.get_transaction_count(self.address, "pending")
            nonce = pending if self._next_nonce is None else max(pending, self._next_nonce)

            tx = await build_tx(nonce)
            signed = account.sign_transaction(tx)
            try:
                tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as e:
                # "nonce too low/high": the local floor is out of step with the node
                if "nonce" in str(e).lower():
                    self.reset()
                raise

            self._next_nonce = nonce + 1
            return tx_hash


class ChainClient:
    """
    Async EVM client bound to one network and the relay signer.
    """

    def __init__(
        self,
        network: Network,
        rpc_url: str,
        private_key: str,
        queue: Optional[TransactionQueue] = None,
        receipt_timeout: float = 120,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.network = network
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.queue = queue or TransactionQueue(network.chain_id, self.account.address)
        self.receipt_timeout = receipt_timeout

    @property
    def address(self) -> str:
        """Relay signer address."""
        return self.account.address

    async def check_connectivity(self) -> bool:
        """Check if the RPC is reachable."""
        try:
            await self.w3.eth.block_number
            return True
        except Exception:
            return False

    def contract(self, address: str, abi: list[dict]) -> Any:
        """Contract instance at `address`."""
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def read(self, address: str, abi: list[dict], method: str, args: list) -> Any:
        """Call a view function."""
        fn = getattr(self.contract(address, abi).functions, method)(*args)
        return await fn.call()

    async def call(
        self,
        address: str,
        abi: list[dict],
        method: str,
        args: list,
        gas_limit: int = DEFAULT_GAS_LIMIT,
    ) -> TxReceipt:
        """
        Send a contract transaction and wait for one confirmation.

        Raises:
            ExecutionError: if the transaction reverted
            TimeExhausted: if no receipt arrives within the receipt timeout;
                the nonce queue is reset first
        """
        fn = getattr(self.contract(address, abi).functions, method)(*args)

        async def build_tx(nonce: int) -> dict:
            gas_price = await self.w3.eth.gas_price
            return await fn.build_transaction(
                {
                    "from": self.address,
                    "chainId": self.network.chain_id,
                    "nonce": nonce,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                }
            )

        tx_hash = await self.queue.send(self.w3, self.account, build_tx)

        logger.info(
            "tx_sent",
            chain=self.network.key,
            method=method,
            to=address,
            tx_hash=Web3.to_hex(tx_hash),
        )

        # No orchestrator-level deadline beyond web3's receipt timeout
        try:
            receipt: TxReceipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted:
            # Possibly dropped; later sends must not stack on top of its nonce
            self.queue.reset()
            logger.error(
                "tx_receipt_timeout",
                chain=self.network.key,
                method=method,
                tx_hash=Web3.to_hex(tx_hash),
                timeout=self.receipt_timeout,
            )
            raise

        if receipt["status"] != 1:
            logger.error("tx_reverted", chain=self.network.key, method=method, tx_hash=Web3.to_hex(tx_hash))
            raise ExecutionError(f"{method} transaction reverted: {Web3.to_hex(tx_hash)}")

        logger.info(
            "tx_confirmed",
            chain=self.network.key,
            method=method,
            tx_hash=Web3.to_hex(tx_hash),
            gas_used=receipt["gasUsed"],
        )
        return receipt

    def read_logs(
        self,
        receipt: TxReceipt,
        address: str,
        abi: list[dict],
        event_name: str,
    ) -> list[Any]:
        """
        Decode `event_name` logs emitted by `address` in a receipt.

        The emitter match is case-insensitive. Logs from the contract that do
        not decode as the event are skipped.
        """
        event = getattr(self.contract(address, abi).events, event_name)()
        wanted = address.lower()
        decoded = []
        for log in receipt["logs"]:
            if str(log["address"]).lower() != wanted:
                continue
            try:
                decoded.append(event.process_log(log))
            except Exception as e:
                logger.debug("log_skipped", event=event_name, reason=str(e))
        return decoded


class ChainClientPool:
    """
    Lazily builds one ChainClient per network.

    Clients from the same pool share one TransactionQueue per
    (chain, signer), so every run in the process goes through it.
    """

    def __init__(self, settings: Settings):
        if not settings.relayer_private_key:
            raise ConfigurationError("Relayer private key not configured")
        self.settings = settings
        self._clients: dict[str, ChainClient] = {}
        self._queues: dict[tuple[int, str], TransactionQueue] = {}

    def get(self, network_key: str) -> ChainClient:
        """Client for a network key (e.g. 'sepolia')."""
        if network_key not in self._clients:
            network = get_network(network_key)
            address = Account.from_key(self.settings.relayer_private_key).address
            queue_key = (network.chain_id, address)
            if queue_key not in self._queues:
                self._queues[queue_key] = TransactionQueue(network.chain_id, address)

            self._clients[network_key] = ChainClient(
                network=network,
                rpc_url=self.settings.rpc_url_for(network_key),
                private_key=self.settings.relayer_private_key,
                queue=self._queues[queue_key],
                receipt_timeout=self.settings.tx_receipt_timeout_seconds,
            )
            logger.info(
                "chain_client_initialized",
                chain=network_key,
                chain_id=network.chain_id,
                sender=address,
            )
        return self._clients[network_key]

    async def check_connectivity(self) -> dict[str, bool]:
        """RPC connectivity of every client built so far."""
        return {key: await client.check_connectivity() for key, client in self._clients.items()}
