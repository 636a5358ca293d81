"""
Minimal ABIs for the launch factory, AMM pools, token locker and ERC20 tokens.
"""

from web3 import Web3


def _event(name, inputs):
    return {
        "anonymous": False,
        "inputs": [
            {"indexed": indexed, "name": arg, "type": typ} for arg, typ, indexed in inputs
        ],
        "name": name,
        "type": "event",
    }


def _view(name, inputs, outputs):
    return {
        "inputs": [{"name": arg, "type": typ} for arg, typ in inputs],
        "name": name,
        "outputs": [{"name": arg, "type": typ} for arg, typ in outputs],
        "stateMutability": "view",
        "type": "function",
    }


TOKEN_LAUNCHED_EVENT = _event(
    "TokenLaunched",
    [
        ("tokenAddress", "address", True),
        ("ammAddress", "address", True),
        ("name", "string", False),
        ("symbol", "string", False),
        ("creator", "address", True),
        ("liquidityPercent", "uint256", False),
        ("initialLiquidityETH", "uint256", False),
    ],
)

SWAP_EVENT = _event(
    "Swap",
    [
        ("user", "address", True),
        ("ethIn", "uint256", False),
        ("tokenIn", "uint256", False),
        ("ethOut", "uint256", False),
        ("tokenOut", "uint256", False),
    ],
)

TOKENS_LOCKED_EVENT = _event(
    "TokensLocked",
    [
        ("lockId", "uint256", True),
        ("owner", "address", True),
        ("tokenAddress", "address", True),
        ("amount", "uint256", False),
        ("unlockTime", "uint256", False),
    ],
)

TOKENS_UNLOCKED_EVENT = _event(
    "TokensUnlocked",
    [
        ("lockId", "uint256", True),
        ("owner", "address", True),
        ("tokenAddress", "address", True),
        ("amount", "uint256", False),
    ],
)

TRANSFER_EVENT = _event(
    "Transfer",
    [
        ("from", "address", True),
        ("to", "address", True),
        ("value", "uint256", False),
    ],
)

FACTORY_ABI = [TOKEN_LAUNCHED_EVENT]

AMM_ABI = [
    SWAP_EVENT,
    _view("reserveToken", [], [("", "uint256")]),
    _view("reserveETH", [], [("", "uint256")]),
    _view("getPrice", [], [("", "uint256")]),
]

LOCKER_ABI = [
    TOKENS_LOCKED_EVENT,
    TOKENS_UNLOCKED_EVENT,
    _view(
        "getLock",
        [("lockId", "uint256")],
        [
            ("owner", "address"),
            ("tokenAddress", "address"),
            ("amount", "uint256"),
            ("unlockTime", "uint256"),
            ("withdrawn", "bool"),
        ],
    ),
]

ERC20_ABI = [
    TRANSFER_EVENT,
    _view("name", [], [("", "string")]),
    _view("symbol", [], [("", "string")]),
    _view("decimals", [], [("", "uint8")]),
]


def event_signature(event_abi: dict) -> str:
    types = ",".join(arg["type"] for arg in event_abi["inputs"])
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: dict) -> bytes:
    """keccak256 of the canonical event signature (topic0)."""
    return bytes(Web3.keccak(text=event_signature(event_abi)))


TOKEN_LAUNCHED_TOPIC = event_topic(TOKEN_LAUNCHED_EVENT)
SWAP_TOPIC = event_topic(SWAP_EVENT)
TOKENS_LOCKED_TOPIC = event_topic(TOKENS_LOCKED_EVENT)
TOKENS_UNLOCKED_TOPIC = event_topic(TOKENS_UNLOCKED_EVENT)
TRANSFER_TOPIC = event_topic(TRANSFER_EVENT)


def address_topic(address: str) -> bytes:
    """Left-pad an address to a 32-byte indexed topic."""
    return b"\x00" * 12 + bytes(Web3.to_bytes(hexstr=address))
