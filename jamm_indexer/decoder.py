"""
Decode raw logs into typed event records.

Addresses come out lowercase; amounts stay in raw integer units.
"""

from dataclasses import dataclass
from typing import Any, Dict

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from jamm_indexer.abis import (
    SWAP_EVENT,
    SWAP_TOPIC,
    TOKEN_LAUNCHED_EVENT,
    TOKEN_LAUNCHED_TOPIC,
    TOKENS_LOCKED_EVENT,
    TOKENS_LOCKED_TOPIC,
    TOKENS_UNLOCKED_EVENT,
    TOKENS_UNLOCKED_TOPIC,
    TRANSFER_EVENT,
    TRANSFER_TOPIC,
)
from jamm_indexer.errors import DecodeError
from jamm_indexer.node_pool import LogEntry


@dataclass(frozen=True)
class LaunchEvent:
    token_address: str
    amm_address: str
    creator: str
    name: str
    symbol: str
    liquidity_percent: int
    initial_liquidity_wei: int


@dataclass(frozen=True)
class SwapEvent:
    user: str
    eth_in_wei: int
    token_in_wei: int
    eth_out_wei: int
    token_out_wei: int


@dataclass(frozen=True)
class LockEvent:
    lock_id: int
    owner: str
    token_address: str
    amount_wei: int
    unlock_time: int


@dataclass(frozen=True)
class UnlockEvent:
    lock_id: int
    owner: str
    token_address: str
    amount_wei: int


@dataclass(frozen=True)
class TransferEvent:
    from_address: str
    to_address: str
    value_wei: int


def _topic_value(topic: bytes, typ: str) -> Any:
    if len(topic) != 32:
        raise DecodeError(f"Indexed topic has {len(topic)} bytes, expected 32")
    if typ == "address":
        return "0x" + topic[-20:].hex()
    if typ.startswith("uint"):
        return int.from_bytes(topic, "big")
    return topic


def decode_event(log: LogEntry, event_abi: dict, topic0: bytes) -> Dict[str, Any]:
    """
    Decode a log against an event ABI.

    Args:
        log: Raw log
        event_abi: Event ABI entry
        topic0: Expected event signature topic

    Returns:
        Argument name -> value

    Raises:
        DecodeError: Wrong event, missing topics or malformed data
    """
    if not log.topics or log.topics[0] != topic0:
        raise DecodeError(f"Log {log.tx_hash}:{log.log_index} is not a {event_abi['name']} event")

    indexed = [arg for arg in event_abi["inputs"] if arg["indexed"]]
    plain = [arg for arg in event_abi["inputs"] if not arg["indexed"]]
    if len(log.topics) != len(indexed) + 1:
        raise DecodeError(
            f"{event_abi['name']} log {log.tx_hash}:{log.log_index} has "
            f"{len(log.topics) - 1} indexed topics, expected {len(indexed)}"
        )

    values: Dict[str, Any] = {}
    for arg, topic in zip(indexed, log.topics[1:]):
        values[arg["name"]] = _topic_value(topic, arg["type"])

    try:
        decoded = decode([arg["type"] for arg in plain], log.data)
    except (DecodingError, ValueError, TypeError) as e:
        raise DecodeError(
            f"Could not decode {event_abi['name']} data in {log.tx_hash}:{log.log_index}: {e}"
        ) from e

    for arg, value in zip(plain, decoded):
        if arg["type"] == "address":
            value = value.lower()
        values[arg["name"]] = value
    return values


def decode_launch(log: LogEntry) -> LaunchEvent:
    args = decode_event(log, TOKEN_LAUNCHED_EVENT, TOKEN_LAUNCHED_TOPIC)
    return LaunchEvent(
        token_address=args["tokenAddress"],
        amm_address=args["ammAddress"],
        creator=args["creator"],
        name=args["name"],
        symbol=args["symbol"],
        liquidity_percent=int(args["liquidityPercent"]),
        initial_liquidity_wei=int(args["initialLiquidityETH"]),
    )


def decode_swap(log: LogEntry) -> SwapEvent:
    args = decode_event(log, SWAP_EVENT, SWAP_TOPIC)
    return SwapEvent(
        user=args["user"],
        eth_in_wei=int(args["ethIn"]),
        token_in_wei=int(args["tokenIn"]),
        eth_out_wei=int(args["ethOut"]),
        token_out_wei=int(args["tokenOut"]),
    )


def decode_lock(log: LogEntry) -> LockEvent:
    args = decode_event(log, TOKENS_LOCKED_EVENT, TOKENS_LOCKED_TOPIC)
    return LockEvent(
        lock_id=int(args["lockId"]),
        owner=args["owner"],
        token_address=args["tokenAddress"],
        amount_wei=int(args["amount"]),
        unlock_time=int(args["unlockTime"]),
    )


def decode_unlock(log: LogEntry) -> UnlockEvent:
    args = decode_event(log, TOKENS_UNLOCKED_EVENT, TOKENS_UNLOCKED_TOPIC)
    return UnlockEvent(
        lock_id=int(args["lockId"]),
        owner=args["owner"],
        token_address=args["tokenAddress"],
        amount_wei=int(args["amount"]),
    )


def decode_transfer(log: LogEntry) -> TransferEvent:
    args = decode_event(log, TRANSFER_EVENT, TRANSFER_TOPIC)
    return TransferEvent(
        from_address=args["from"],
        to_address=args["to"],
        value_wei=int(args["value"]),
    )
