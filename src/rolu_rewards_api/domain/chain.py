from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Annotated, Any, Protocol

import httpx
from fastapi import Depends

from rolu_rewards_api.settings import Settings, get_settings

_NONCE_CONFLICT_MARKERS = (
    "nonce too low",
    "nonce has already been used",
    "already known",
    "replacement transaction underpriced",
    "invalid nonce",
)
_INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficient balance for transfer",
)


class ChainRpcError(Exception):
    """Transport failure or error object returned by the JSON-RPC node."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ChainTransportError(ChainRpcError):
    """The request never produced a node answer; a submission may or may not have landed."""


class NonceConflictError(ChainRpcError):
    """The node rejected a transaction because its sequence number is stale or consumed."""


class InsufficientFundsError(ChainRpcError):
    """The sending wallet cannot cover value plus gas."""


def classify_rpc_error(message: str, *, code: int | None = None) -> ChainRpcError:
    lowered = message.lower()
    if any(marker in lowered for marker in _NONCE_CONFLICT_MARKERS):
        return NonceConflictError(message, code=code)
    if any(marker in lowered for marker in _INSUFFICIENT_FUNDS_MARKERS):
        return InsufficientFundsError(message, code=code)
    return ChainRpcError(message, code=code)


def _hex_to_int(value: Any) -> int | None:
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return None
    try:
        return int(value, 16)
    except ValueError:
        return None


def _lower_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value.lower()
    return None


@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: tuple[str, ...]
    data: str


@dataclass(frozen=True)
class TransactionReceipt:
    transaction_hash: str
    status: int
    block_number: int | None
    from_address: str | None = None
    to_address: str | None = None
    logs: tuple[LogEntry, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class ChainTransaction:
    transaction_hash: str
    from_address: str | None
    to_address: str | None
    input: str
    nonce: int | None
    block_number: int | None


def parse_receipt(result: dict[str, Any]) -> TransactionReceipt:
    logs: list[LogEntry] = []
    for raw_log in result.get("logs") or []:
        if not isinstance(raw_log, dict):
            continue
        address = _lower_or_none(raw_log.get("address"))
        if address is None:
            continue
        topics = tuple(
            topic.lower() for topic in raw_log.get("topics") or [] if isinstance(topic, str)
        )
        logs.append(LogEntry(address=address, topics=topics, data=str(raw_log.get("data") or "0x")))
    return TransactionReceipt(
        transaction_hash=str(result.get("transactionHash", "")).lower(),
        status=_hex_to_int(result.get("status")) or 0,
        block_number=_hex_to_int(result.get("blockNumber")),
        from_address=_lower_or_none(result.get("from")),
        to_address=_lower_or_none(result.get("to")),
        logs=tuple(logs),
    )


def parse_transaction(result: dict[str, Any]) -> ChainTransaction:
    return ChainTransaction(
        transaction_hash=str(result.get("hash", "")).lower(),
        from_address=_lower_or_none(result.get("from")),
        to_address=_lower_or_none(result.get("to")),
        input=str(result.get("input") or "0x"),
        nonce=_hex_to_int(result.get("nonce")),
        block_number=_hex_to_int(result.get("blockNumber")),
    )


class ChainClient(Protocol):
    async def get_balance(self, address: str) -> int:
        ...

    async def get_transaction_count(self, address: str, *, block: str = "pending") -> int:
        ...

    async def get_gas_price(self) -> int:
        ...

    async def estimate_gas(self, transaction: dict[str, Any]) -> int:
        ...

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        ...

    async def get_transaction_receipt(self, transaction_hash: str) -> TransactionReceipt | None:
        ...

    async def get_transaction(self, transaction_hash: str) -> ChainTransaction | None:
        ...

    async def get_block_number(self) -> int:
        ...

    async def get_block_transactions(self, block_number: int) -> list[ChainTransaction]:
        ...


class JsonRpcChainClient:
    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._transport = transport
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChainTransportError(f"{method} failed: {exc}") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error is not None:
            message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise classify_rpc_error(message, code=code if isinstance(code, int) else None)
        if not isinstance(body, dict) or "result" not in body:
            raise ChainRpcError(f"{method} returned a malformed response")
        return body["result"]

    async def _call_int(self, method: str, params: list[Any]) -> int:
        result = await self._call(method, params)
        parsed = _hex_to_int(result)
        if parsed is None:
            raise ChainRpcError(f"{method} returned a non-numeric result: {result!r}")
        return parsed

    async def get_balance(self, address: str) -> int:
        return await self._call_int("eth_getBalance", [address, "latest"])

    async def get_transaction_count(self, address: str, *, block: str = "pending") -> int:
        return await self._call_int("eth_getTransactionCount", [address, block])

    async def get_gas_price(self) -> int:
        return await self._call_int("eth_gasPrice", [])

    async def estimate_gas(self, transaction: dict[str, Any]) -> int:
        return await self._call_int("eth_estimateGas", [transaction])

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        result = await self._call("eth_sendRawTransaction", [raw_transaction])
        return str(result).lower()

    async def get_transaction_receipt(self, transaction_hash: str) -> TransactionReceipt | None:
        result = await self._call("eth_getTransactionReceipt", [transaction_hash])
        if not isinstance(result, dict):
            return None
        return parse_receipt(result)

    async def get_transaction(self, transaction_hash: str) -> ChainTransaction | None:
        result = await self._call("eth_getTransactionByHash", [transaction_hash])
        if not isinstance(result, dict):
            return None
        return parse_transaction(result)

    async def get_block_number(self) -> int:
        return await self._call_int("eth_blockNumber", [])

    async def get_block_transactions(self, block_number: int) -> list[ChainTransaction]:
        result = await self._call("eth_getBlockByNumber", [hex(block_number), True])
        if not isinstance(result, dict):
            return []
        transactions = []
        for raw in result.get("transactions") or []:
            if isinstance(raw, dict):
                transactions.append(parse_transaction(raw))
        return transactions


def get_chain_client(
    settings: Settings = Depends(get_settings),
) -> ChainClient:
    return JsonRpcChainClient(
        str(settings.chain_rpc_url),
        timeout=settings.chain_rpc_timeout_seconds,
    )


ChainClientDep = Annotated[ChainClient, Depends(get_chain_client)]
