"""
Order maintenance: refresh stale orders and cancel invalid ones.

Orders on the router must be refreshed once per refresh interval or they can
no longer be executed; orders that expired, or whose owner no longer holds
the quantity of tokenIn they committed, are cancelled so the executor
collects the cancellation reward and the book stays small.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from ..abi import codec
from ..exceptions import CoexException, DecodeError, DispatchError, RPCError, TransientRPCError
from .orderbook import Order, OrderBook

logger = logging.getLogger(__name__)


class OrderMaintenance:

    def __init__(self, order_book: OrderBook, reader, signer, router: str, refresh_interval: int):
        self.order_book = order_book
        self.reader = reader
        self.signer = signer
        self.router = router
        self.refresh_interval = refresh_interval

    def orders_due_for_refresh(self, now: Optional[float] = None) -> List[Order]:
        return [
            o for o in self.order_book.all_orders()
            if not o.is_expired(now) and o.needs_refresh(self.refresh_interval, now)
        ]

    async def orders_to_cancel(self, now: Optional[float] = None) -> List[Order]:
        """Expired orders and orders the owner can no longer fund."""
        balances: Dict[Tuple[str, str], int] = {}
        cancellable = []
        for order in self.order_book.all_orders():
            if order.is_expired(now):
                cancellable.append(order)
                continue
            key = (order.token_in, order.owner)
            if key not in balances:
                try:
                    balances[key] = await self.reader.balance_of(order.token_in, order.owner)
                except (TransientRPCError, RPCError, DecodeError) as exc:
                    logger.debug("Balance check for %s failed: %s", order.owner, exc)
                    continue
            if balances[key] < order.quantity:
                cancellable.append(order)
        return cancellable

    async def refresh(self, orders: List[Order]) -> Optional[str]:
        if not orders:
            return None
        data = codec.encode_refresh_order([o.order_id for o in orders])
        try:
            tx_hash = await self.signer.sign_and_send(self.router, data)
        except (DispatchError, TransientRPCError, RPCError) as exc:
            logger.warning("Refresh of %d order(s) failed: %s", len(orders), exc)
            return None
        logger.info("Refreshing %d order(s): %s", len(orders), tx_hash)
        return tx_hash

    async def cancel(self, orders: List[Order]) -> List[str]:
        tx_hashes = []
        for order in orders:
            try:
                tx_hash = await self.signer.sign_and_send(
                    self.router, codec.encode_validate_and_cancel_order(order.order_id)
                )
            except (DispatchError, TransientRPCError, RPCError) as exc:
                logger.warning("Cancellation of %s failed: %s", order.hex_id, exc)
                continue
            logger.info("Cancelling order %s: %s", order.hex_id, tx_hash)
            tx_hashes.append(tx_hash)
        return tx_hashes

    async def run_once(self, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        to_cancel = await self.orders_to_cancel(now)
        cancelled_ids = {o.order_id for o in to_cancel}
        await self.cancel(to_cancel)
        await self.refresh([o for o in self.orders_due_for_refresh(now) if o.order_id not in cancelled_ids])

    async def run(self, interval: float) -> None:
        while True:
            try:
                await self.run_once()
            except CoexException as exc:
                logger.error("Maintenance pass aborted, retrying in %ss: %s", interval, exc)
            await asyncio.sleep(interval)
