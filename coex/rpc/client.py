"""
Coex JSON-RPC Client

Thin asynchronous Ethereum JSON-RPC 2.0 client over ``httpx.AsyncClient``.
Responses are converted into Python types at this boundary: quantities
become ``int``, byte strings become ``bytes`` and logs become ``LogEntry``.

Error mapping:
    - transport failures, non-2xx responses and non-JSON bodies raise
      ``TransientRPCError`` (retry on the next block / cycle)
    - a JSON-RPC ``error`` object raises ``RPCError`` with the node's code
      and message (reverted ``eth_call``, underpriced transactions, ...)
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from eth_utils import decode_hex, encode_hex, to_checksum_address

from ..exceptions import DecodeError, RPCError, TransientRPCError
from ..logger import get_logger

logger = get_logger(__name__)

BlockIdentifier = Union[int, str]


def _block_param(block: BlockIdentifier) -> str:
    if isinstance(block, int):
        return hex(block)
    return block


@dataclass
class LogEntry:
    """A decoded ``eth_getLogs`` entry."""
    address: str
    topics: List[bytes]
    data: bytes
    block_number: int
    log_index: int = 0
    transaction_hash: str = ""
    removed: bool = False

    @property
    def topic0(self) -> Optional[bytes]:
        return self.topics[0] if self.topics else None

    @classmethod
    def from_rpc(cls, raw: Dict[str, Any]) -> "LogEntry":
        try:
            return cls(
                address=to_checksum_address(raw["address"]),
                topics=[decode_hex(t) for t in raw.get("topics", [])],
                data=decode_hex(raw.get("data") or "0x"),
                block_number=int(raw["blockNumber"], 16),
                log_index=int(raw.get("logIndex") or "0x0", 16),
                transaction_hash=raw.get("transactionHash") or "",
                removed=bool(raw.get("removed", False)),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed log entry: {exc}") from exc


class JsonRpcClient:
    """
    Ethereum JSON-RPC client.

    One instance is shared by every component; httpx pools the underlying
    connections so concurrent calls from venue-log tasks do not serialize.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._request_id = 0

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        """
        Send a JSON-RPC 2.0 request and return its ``result`` member.

        Raises:
            TransientRPCError: network failure, HTTP error status or a body
                that is not JSON
            RPCError: the node answered with an ``error`` object
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "id": self._next_id(),
            "params": list(params) if params is not None else [],
        }

        start_time = time.time()
        try:
            response = await self.client.post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            elapsed = time.time() - start_time
            logger.debug(f"RPC {method} [{response.status_code}] ({elapsed:.3f}s)")
            response.raise_for_status()
            body = response.json()
        except httpx.RequestError as exc:
            elapsed = time.time() - start_time
            logger.warning(f"RPC {method} → {self.url} NETWORK_ERROR ({elapsed:.3f}s)")
            raise TransientRPCError(f"{method}: {exc}") from exc
        except (json.JSONDecodeError, httpx.HTTPStatusError) as exc:
            elapsed = time.time() - start_time
            logger.warning(f"RPC {method} → {self.url} ERROR ({elapsed:.3f}s): {exc}")
            raise TransientRPCError(f"{method}: {exc}") from exc

        if not isinstance(body, dict):
            raise TransientRPCError(f"{method}: unexpected response body")
        if body.get("error"):
            error = body["error"]
            raise RPCError(
                method,
                error.get("code", 0),
                error.get("message", ""),
                error.get("data"),
            )
        return body.get("result")

    # ------------------------------------------------------------------
    # Chain state
    # ------------------------------------------------------------------

    async def chain_id(self) -> int:
        return int(await self.request("eth_chainId"), 16)

    async def block_number(self) -> int:
        return int(await self.request("eth_blockNumber"), 16)

    async def get_balance(self, address: str, block: BlockIdentifier = "latest") -> int:
        return int(await self.request("eth_getBalance", [address, _block_param(block)]), 16)

    async def get_transaction_count(self, address: str, block: BlockIdentifier = "pending") -> int:
        return int(await self.request("eth_getTransactionCount", [address, _block_param(block)]), 16)

    async def gas_price(self) -> int:
        return int(await self.request("eth_gasPrice"), 16)

    async def get_logs(
        self,
        from_block: BlockIdentifier,
        to_block: BlockIdentifier,
        address: Optional[Union[str, List[str]]] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[LogEntry]:
        """
        Fetch logs in ``[from_block, to_block]``.

        ``topics`` follows the node's filter semantics: a list entry that is
        itself a list matches any of its members.
        """
        log_filter: Dict[str, Any] = {
            "fromBlock": _block_param(from_block),
            "toBlock": _block_param(to_block),
        }
        if address:
            log_filter["address"] = address
        if topics:
            log_filter["topics"] = [
                [encode_hex(t) for t in topic] if isinstance(topic, (list, tuple))
                else (encode_hex(topic) if isinstance(topic, bytes) else topic)
                for topic in topics
            ]
        raw_logs = await self.request("eth_getLogs", [log_filter])
        logs = []
        for raw in raw_logs or []:
            try:
                logs.append(LogEntry.from_rpc(raw))
            except DecodeError as exc:
                logger.warning(f"Dropping undecodable log entry: {exc}")
        return logs

    # ------------------------------------------------------------------
    # Calls and transactions
    # ------------------------------------------------------------------

    async def call(self, to: str, data: bytes, block: BlockIdentifier = "latest", sender: Optional[str] = None) -> bytes:
        """``eth_call`` returning the raw ABI-encoded result."""
        tx = {"to": to, "data": encode_hex(data)}
        if sender:
            tx["from"] = sender
        result = await self.request("eth_call", [tx, _block_param(block)])
        return decode_hex(result or "0x")

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(await self.request("eth_estimateGas", [tx]), 16)

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        return await self.request("eth_sendRawTransaction", [encode_hex(raw_tx)])

    async def get_transaction_by_hash(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.request("eth_getTransactionByHash", [tx_hash])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.request("eth_getTransactionReceipt", [tx_hash])
