"""
Coex Local Signer

Signs and submits EIP-155 legacy transactions from a single hot wallet.

Nonce discipline:
  - the nonce is read once from the node (pending tag) and then incremented
    under a lock as each transaction is signed
  - a send that definitely failed hands its nonce back, provided no later
    nonce was reserved in the meantime; otherwise, and whenever the outcome
    is unknown, the next reservation re-reads the nonce from the node

Gas:
  - gas limit = eth_estimateGas padded by 150/100
  - "transaction underpriced" bumps the gas price by 150/100 and re-sends
  - "insufficient funds" fails immediately with InsufficientFundsError
"""

import asyncio
from typing import Optional

import rlp
from eth_keys import keys
from eth_keys.exceptions import ValidationError
from eth_utils import decode_hex, encode_hex, keccak, to_canonical_address

from ..constants import GAS_LIMIT_MULTIPLIER, GAS_PRICE_BUMP, MAX_UNDERPRICED_RETRIES
from ..exceptions import (
    ConfigurationError,
    DispatchError,
    InsufficientFundsError,
    RPCError,
    TransientRPCError,
)
from ..logger import get_logger

logger = get_logger(__name__)


class LocalSigner:

    def __init__(self, rpc, private_key: str, chain_id: int, address: Optional[str] = None):
        try:
            self._key = keys.PrivateKey(decode_hex(private_key))
        except (ValidationError, ValueError, TypeError) as exc:
            raise ConfigurationError("Invalid wallet private key") from exc
        self.rpc = rpc
        self.chain_id = chain_id
        self.address = self._key.public_key.to_checksum_address()
        if address and address != self.address:
            raise ConfigurationError(f"Private key does not belong to wallet {address}")
        self._nonce: Optional[int] = None
        self._nonce_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Nonce management
    # ------------------------------------------------------------------

    async def sync_nonce(self) -> int:
        async with self._nonce_lock:
            self._nonce = await self.rpc.get_transaction_count(self.address, "pending")
            return self._nonce

    async def reserve_nonce(self) -> int:
        async with self._nonce_lock:
            if self._nonce is None:
                try:
                    self._nonce = await self.rpc.get_transaction_count(self.address, "pending")
                except (TransientRPCError, RPCError) as exc:
                    raise DispatchError(f"Nonce resync failed: {exc}") from exc
            nonce = self._nonce
            self._nonce += 1
            return nonce

    async def release_nonce(self, nonce: int, resync: bool = False) -> None:
        """Compensate a reservation whose transaction was not accepted."""
        async with self._nonce_lock:
            if not resync and self._nonce == nonce + 1:
                self._nonce = nonce
            else:
                self._nonce = None

    @property
    def next_nonce(self) -> Optional[int]:
        return self._nonce

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign_transaction(self, nonce: int, gas_price: int, gas: int, to: str, value: int, data: bytes) -> bytes:
        """RLP-encoded signed legacy transaction with EIP-155 replay protection."""
        to_bytes = to_canonical_address(to)
        unsigned = [nonce, gas_price, gas, to_bytes, value, data, self.chain_id, 0, 0]
        signature = self._key.sign_msg_hash(keccak(rlp.encode(unsigned)))
        v = signature.v + 35 + 2 * self.chain_id
        return rlp.encode([nonce, gas_price, gas, to_bytes, value, data, v, signature.r, signature.s])

    async def _estimate(self, to: str, data: bytes, value: int):
        tx = {"from": self.address, "to": to, "data": encode_hex(data), "value": hex(value)}
        try:
            gas = await self.rpc.estimate_gas(tx)
            gas_price = await self.rpc.gas_price()
        except (TransientRPCError, RPCError) as exc:
            raise DispatchError(f"Gas estimation failed: {exc}") from exc
        numerator, denominator = GAS_LIMIT_MULTIPLIER
        return gas * numerator // denominator, gas_price

    async def sign_and_send(self, to: str, data: bytes, value: int = 0) -> str:
        """
        Estimate, sign and submit a transaction. Returns the transaction hash.

        Raises:
            InsufficientFundsError: the wallet cannot pay for gas
            DispatchError: estimation, signing or submission failed
        """
        gas, gas_price = await self._estimate(to, data, value)
        nonce = await self.reserve_nonce()

        sent = False
        resync = False
        try:
            for attempt in range(MAX_UNDERPRICED_RETRIES + 1):
                raw = self.sign_transaction(nonce, gas_price, gas, to, value, data)
                try:
                    tx_hash = await self.rpc.send_raw_transaction(raw)
                except TransientRPCError as exc:
                    resync = True
                    raise DispatchError(f"Submission outcome unknown: {exc}") from exc
                except RPCError as exc:
                    message = exc.message.lower()
                    if "insufficient funds" in message:
                        raise InsufficientFundsError(exc.message) from exc
                    if "underpriced" in message and attempt < MAX_UNDERPRICED_RETRIES:
                        numerator, denominator = GAS_PRICE_BUMP
                        gas_price = gas_price * numerator // denominator
                        logger.info(f"Transaction underpriced, bumping gas price to {gas_price}")
                        continue
                    if "nonce too low" in message or "already known" in message:
                        resync = True
                    raise DispatchError(exc.message) from exc
                sent = True
                logger.debug(f"Sent transaction {tx_hash} with nonce {nonce}")
                return tx_hash
            raise DispatchError("Gas price bump limit reached")
        finally:
            if not sent:
                await self.release_nonce(nonce, resync=resync)
