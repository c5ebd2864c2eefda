from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_hex

from rolu_rewards_api.domain.chain import LogEntry

BATCH_TRANSFER_SIGNATURE = "batchTransfer(address[],uint256[])"
CLAIM_REWARDS_SIGNATURE = "claimRewards(uint256,uint256,bytes)"
TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"


def function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


BATCH_TRANSFER_SELECTOR = function_selector(BATCH_TRANSFER_SIGNATURE)
CLAIM_REWARDS_SELECTOR = function_selector(CLAIM_REWARDS_SIGNATURE)
TRANSFER_EVENT_TOPIC = to_hex(keccak(text=TRANSFER_EVENT_SIGNATURE))


@dataclass(frozen=True)
class ClaimRewardsCall:
    amount_wei: int
    nonce: int
    signature: bytes


@dataclass(frozen=True)
class TokenTransfer:
    token_address: str
    from_address: str
    to_address: str
    amount_wei: int


def _strip_hex(data: str) -> bytes | None:
    raw = data[2:] if data.startswith(("0x", "0X")) else data
    try:
        return bytes.fromhex(raw)
    except ValueError:
        return None


def _split_call(input_data: str, selector: bytes) -> bytes | None:
    payload = _strip_hex(input_data)
    if payload is None or len(payload) < 4 or payload[:4] != selector:
        return None
    return payload[4:]


def encode_batch_transfer(recipients: Sequence[str], amounts: Sequence[int]) -> str:
    if len(recipients) != len(amounts):
        raise ValueError("recipients and amounts must have the same length")
    body = encode(["address[]", "uint256[]"], [list(recipients), list(amounts)])
    return to_hex(BATCH_TRANSFER_SELECTOR + body)


def decode_batch_transfer(input_data: str) -> list[tuple[str, int]] | None:
    """Return the (recipient, amount) pairs of a batchTransfer call, or None if it is not one."""
    body = _split_call(input_data, BATCH_TRANSFER_SELECTOR)
    if body is None:
        return None
    try:
        recipients, amounts = decode(["address[]", "uint256[]"], body)
    except (DecodingError, ValueError):
        return None
    if len(recipients) != len(amounts):
        return None
    return [(recipient.lower(), int(amount)) for recipient, amount in zip(recipients, amounts)]


def encode_claim_rewards(amount_wei: int, nonce: int, signature: bytes) -> str:
    body = encode(["uint256", "uint256", "bytes"], [amount_wei, nonce, signature])
    return to_hex(CLAIM_REWARDS_SELECTOR + body)


def decode_claim_rewards(input_data: str) -> ClaimRewardsCall | None:
    body = _split_call(input_data, CLAIM_REWARDS_SELECTOR)
    if body is None:
        return None
    try:
        amount_wei, nonce, signature = decode(["uint256", "uint256", "bytes"], body)
    except (DecodingError, ValueError):
        return None
    return ClaimRewardsCall(amount_wei=int(amount_wei), nonce=int(nonce), signature=bytes(signature))


def _topic_to_address(topic: str) -> str | None:
    raw = _strip_hex(topic)
    if raw is None or len(raw) != 32:
        return None
    return "0x" + raw[-20:].hex()


def decode_transfer_log(log: LogEntry) -> TokenTransfer | None:
    if len(log.topics) != 3 or log.topics[0] != TRANSFER_EVENT_TOPIC:
        return None
    from_address = _topic_to_address(log.topics[1])
    to_address = _topic_to_address(log.topics[2])
    data = _strip_hex(log.data)
    if from_address is None or to_address is None or data is None or len(data) != 32:
        return None
    return TokenTransfer(
        token_address=log.address.lower(),
        from_address=from_address,
        to_address=to_address,
        amount_wei=int.from_bytes(data, "big"),
    )
