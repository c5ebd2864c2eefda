from __future__ import annotations

from eth_abi import encode
from eth_utils import keccak, to_hex

from rolu_rewards_api.domain.chain import LogEntry
from rolu_rewards_api.domain.contracts import (
    BATCH_TRANSFER_SELECTOR,
    TRANSFER_EVENT_TOPIC,
    decode_batch_transfer,
    decode_claim_rewards,
    decode_transfer_log,
    encode_batch_transfer,
    encode_claim_rewards,
)

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
TOKEN = "0x" + "70" * 20


def _topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:]


def test_batch_transfer_calldata_starts_with_the_function_selector() -> None:
    data = encode_batch_transfer([ALICE, BOB], [1, 2])

    assert BATCH_TRANSFER_SELECTOR == keccak(text="batchTransfer(address[],uint256[])")[:4]
    assert data.startswith(to_hex(BATCH_TRANSFER_SELECTOR))
    assert decode_batch_transfer(data) == [(ALICE, 1), (BOB, 2)]


def test_decode_batch_transfer_ignores_other_calls() -> None:
    assert decode_batch_transfer("0x") is None
    assert decode_batch_transfer("0xdeadbeef") is None
    assert decode_batch_transfer(encode_claim_rewards(1, 2, b"\x01")) is None
    assert decode_batch_transfer(to_hex(BATCH_TRANSFER_SELECTOR) + "00") is None


def test_claim_rewards_calldata_exposes_amount_and_nonce() -> None:
    signature = bytes(range(65))
    data = encode_claim_rewards(42 * 10**18, 7, signature)

    call = decode_claim_rewards(data)

    assert call is not None
    assert call.amount_wei == 42 * 10**18
    assert call.nonce == 7
    assert call.signature == signature
    assert decode_claim_rewards(encode_batch_transfer([ALICE], [1])) is None


def test_decode_transfer_log_reads_erc20_transfer() -> None:
    log = LogEntry(
        address=TOKEN,
        topics=(TRANSFER_EVENT_TOPIC, _topic(BOB), _topic(ALICE)),
        data=to_hex(encode(["uint256"], [5 * 10**18])),
    )

    transfer = decode_transfer_log(log)

    assert transfer is not None
    assert transfer.token_address == TOKEN
    assert transfer.from_address == BOB
    assert transfer.to_address == ALICE
    assert transfer.amount_wei == 5 * 10**18


def test_decode_transfer_log_skips_other_events() -> None:
    approval_topic = to_hex(keccak(text="Approval(address,address,uint256)"))
    log = LogEntry(
        address=TOKEN,
        topics=(approval_topic, _topic(BOB), _topic(ALICE)),
        data=to_hex(encode(["uint256"], [1])),
    )

    assert decode_transfer_log(log) is None
    assert decode_transfer_log(LogEntry(address=TOKEN, topics=(TRANSFER_EVENT_TOPIC,), data="0x")) is None
