"""
CCTP network registry and contract ABIs.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Network:
    """A CCTP-capable EVM network."""

    key: str
    name: str
    chain_id: int
    domain: int
    usdc: str
    token_messenger: str
    message_transmitter: str


# CCTP testnet deployments
NETWORKS: dict[str, Network] = {
    "sepolia": Network(
        key="sepolia",
        name="Ethereum Sepolia",
        chain_id=11155111,
        domain=0,
        usdc="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        token_messenger="0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5",
        message_transmitter="0x7865fAfC2db2093669d92c0F33AeEF291086BEFD",
    ),
    "baseSepolia": Network(
        key="baseSepolia",
        name="Base Sepolia",
        chain_id=84532,
        domain=6,
        usdc="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        token_messenger="0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5",
        message_transmitter="0x7865fAfC2db2093669d92c0F33AeEF291086BEFD",
    ),
    "fuji": Network(
        key="fuji",
        name="Avalanche Fuji",
        chain_id=43113,
        domain=1,
        usdc="0x5425890298aed601595a70AB815c96711a31Bc65",
        token_messenger="0xeb08f243E5d3FCFF26A9E38Ae5520A669f4019d0",
        message_transmitter="0xa9fB1b3009DCb79E2fe346c16a604B8Fa8aE0a79",
    ),
}

# USDC is minted on the destination only; it is never a bridge source.
DESTINATION_ONLY = frozenset({"fuji"})


def get_network(key: str) -> Network:
    """Look up a network by key."""
    try:
        return NETWORKS[key]
    except KeyError:
        raise KeyError(f"Unknown network: {key}") from None


def is_supported_source(key: str) -> bool:
    """Whether USDC can be bridged out of this network."""
    return key in NETWORKS and key not in DESTINATION_ONLY


# Contract ABIs (minimal)
ERC20_ABI = [
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

TOKEN_MESSENGER_ABI = [
    {
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "destinationDomain", "type": "uint32"},
            {"name": "mintRecipient", "type": "bytes32"},
            {"name": "burnToken", "type": "address"},
        ],
        "name": "depositForBurn",
        "outputs": [{"name": "_nonce", "type": "uint64"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

MESSAGE_TRANSMITTER_ABI = [
    {
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "name": "receiveMessage",
        "outputs": [{"name": "success", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": False, "name": "message", "type": "bytes"}],
        "name": "MessageSent",
        "type": "event",
    },
]
