"""
Coex Execution Dispatcher

Packs ready batches into a single ``executeOrderGroups`` call and hands it
to the signer. Order ids are marked pending before signing so a later cycle
cannot re-batch an order already in flight; the mark is released when the
transaction's receipt arrives, when the wait times out, or immediately when
submission fails after its bounded retries.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

from ..abi import codec
from ..exceptions import DispatchError, InsufficientFundsError, RPCError, TransientRPCError
from .orderbook import GasCreditLedger, OrderBook

logger = logging.getLogger(__name__)


class PendingExecutionSet:
    """Order ids included in an in-flight transaction."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Set[bytes] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, order_id: bytes) -> bool:
        with self._lock:
            return order_id in self._pending

    def mark(self, order_ids: Iterable[bytes]) -> List[bytes]:
        """Mark ids pending. Returns only the ids this call marked."""
        marked = []
        with self._lock:
            for order_id in order_ids:
                if order_id not in self._pending:
                    self._pending.add(order_id)
                    marked.append(order_id)
        return marked

    def release(self, order_ids: Iterable[bytes]) -> None:
        with self._lock:
            for order_id in order_ids:
                self._pending.discard(order_id)


class PendingTransactionMonitor:
    """Polls receipts of submitted transactions and releases their order ids."""

    def __init__(self, rpc, pending: PendingExecutionSet, poll_interval: float = 2.0, timeout: float = 600.0):
        self.rpc = rpc
        self.pending = pending
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> List[str]:
        return list(self._tasks)

    def track(self, tx_hash: str, order_ids: List[bytes]) -> asyncio.Task:
        task = asyncio.create_task(self.wait_for_receipt(tx_hash, order_ids))
        self._tasks[tx_hash] = task
        task.add_done_callback(lambda _: self._tasks.pop(tx_hash, None))
        return task

    async def _dropped(self, tx_hash: str) -> bool:
        """True when the node no longer knows the transaction at all."""
        try:
            return await self.rpc.get_transaction_by_hash(tx_hash) is None
        except (TransientRPCError, RPCError) as exc:
            logger.debug("Lookup of %s failed: %s", tx_hash, exc)
            return False

    async def wait_for_receipt(self, tx_hash: str, order_ids: List[bytes]) -> Optional[dict]:
        """
        Poll until the receipt arrives, the node drops the transaction, or
        ``timeout`` elapses. The order ids are released in every case.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        try:
            while True:
                receipt = None
                try:
                    receipt = await self.rpc.get_transaction_receipt(tx_hash)
                except (TransientRPCError, RPCError) as exc:
                    logger.debug("Receipt poll for %s failed: %s", tx_hash, exc)
                else:
                    if not receipt and await self._dropped(tx_hash):
                        logger.warning("Transaction %s was dropped by the node, releasing orders", tx_hash)
                        return None
                if receipt:
                    if int(receipt.get("status", "0x1"), 16) == 1:
                        logger.info("Transaction %s confirmed in block %d", tx_hash, int(receipt["blockNumber"], 16))
                    else:
                        logger.warning("Transaction %s reverted", tx_hash)
                    return receipt

                if loop.time() >= deadline:
                    logger.warning("Transaction %s not mined after %.0fs, releasing orders", tx_hash, self.timeout)
                    return None
                await asyncio.sleep(self.poll_interval)
        finally:
            self.pending.release(order_ids)


class ExecutionDispatcher:
    """
    Submits batches through the signer.

    The signer contract is ``sign_and_send(to, data, value=0) -> tx hash``;
    nonce handling and gas pricing live behind it.
    """

    def __init__(
        self,
        signer,
        router: str,
        pending: PendingExecutionSet,
        monitor: Optional[PendingTransactionMonitor] = None,
        order_book: Optional[OrderBook] = None,
        ledger: Optional[GasCreditLedger] = None,
        require_gas_credit: bool = False,
        retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.signer = signer
        self.router = router
        self.pending = pending
        self.monitor = monitor
        self.order_book = order_book
        self.ledger = ledger
        self.require_gas_credit = require_gas_credit
        self.retries = retries
        self.retry_delay = retry_delay
        self._background: Set[asyncio.Task] = set()

    def _has_gas_credit(self, order_id: bytes) -> bool:
        if not self.require_gas_credit or self.ledger is None or self.order_book is None:
            return True
        order = self.order_book.get_order(order_id)
        return order is not None and self.ledger.has_credit(order.owner)

    def _reserve(self, batches: List[List[bytes]]) -> List[List[bytes]]:
        reserved = []
        for batch in batches:
            eligible = [i for i in batch if self._has_gas_credit(i)]
            marked = self.pending.mark(eligible)
            if marked:
                reserved.append(marked)
        return reserved

    async def _send(self, data: bytes) -> str:
        for attempt in range(1, self.retries + 1):
            try:
                return await self.signer.sign_and_send(self.router, data)
            except InsufficientFundsError:
                raise
            except (DispatchError, TransientRPCError, RPCError) as exc:
                if attempt == self.retries:
                    raise
                logger.warning("Dispatch attempt %d/%d failed: %s", attempt, self.retries, exc)
                await asyncio.sleep(self.retry_delay)
        raise DispatchError("No dispatch attempts configured")

    async def dispatch(self, batches: List[List[bytes]]) -> Optional[str]:
        """
        Submit batches as one transaction. Returns the tx hash, or None when
        nothing was sent.
        """
        groups = self._reserve(batches)
        if not groups:
            return None
        order_ids = [i for group in groups for i in group]

        submitted = False
        try:
            tx_hash = await self._send(codec.encode_execute_order_groups(groups))
            submitted = True
        except (DispatchError, TransientRPCError, RPCError) as exc:
            logger.error("Dispatch of %d order(s) failed, releasing: %s", len(order_ids), exc)
            return None
        finally:
            if not submitted:
                self.pending.release(order_ids)

        logger.info("Submitted %d group(s), %d order(s): %s", len(groups), len(order_ids), tx_hash)
        if self.monitor is not None:
            self.monitor.track(tx_hash, order_ids)
        return tx_hash

    def dispatch_detached(self, batches: List[List[bytes]]) -> asyncio.Task:
        """Run ``dispatch`` without blocking the caller."""
        task = asyncio.create_task(self.dispatch(batches))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for detached dispatches to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Let detached dispatches finish and report transactions still unconfirmed."""
        await self.drain()
        if self.monitor is not None and self.monitor.in_flight:
            logger.warning(
                "Stopping with %d unconfirmed transaction(s): %s",
                len(self.monitor.in_flight), ", ".join(self.monitor.in_flight),
            )
