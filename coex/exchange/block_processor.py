"""
Coex Block Processor  (chain-event synchronizer)

Turns new block headers into object-level state updates and triggers
matching for the tokens whose price moved.

Per block:
  1. Fetch every log matching the router and venue topics
  2. Classify and decode; malformed payloads are dropped with a warning
  3. Apply router events sequentially, in log order (placed / updated /
     refreshed re-fetch the order, cancelled / filled remove it, gas credit
     overwrites the ledger entry)
  4. Apply venue events concurrently, one task per log, reference pool
     first; each task reports its token into the block's affected set
  5. Barrier, then resolve the orders indexed under affected tokens into
     batches and dispatch them without blocking the next block

A failed log fetch (or order fetch) aborts only that block; the block is
retried from the top on the next header. Every update is idempotent, so
re-applying a partially processed block is safe.

Startup backfill replays router events from the router's creation block in
fixed-size chunks before the header loop starts.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Iterable, List, Optional, Set, Tuple

from ..abi import codec, topics
from ..exceptions import DecodeError, RPCError, TransientRPCError
from ..logger import reset_block_context, set_block_context
from ..rpc.client import LogEntry
from .batching import BatchingEngine
from .dispatcher import ExecutionDispatcher, PendingExecutionSet
from .events import (
    ChainEvent,
    EventHandler,
    GasCredit,
    OrderCancelled,
    OrderFilled,
    OrderPlaced,
    OrderRefreshed,
    OrderUpdated,
    ReserveSyncV2,
    ReserveSyncV3,
    classify,
    decode_event,
    dispatch,
)
from .markets import MarketCache
from .orderbook import GasCreditLedger, Order, OrderBook

logger = logging.getLogger(__name__)

BLOCK_TOPICS = [list(topics.ROUTER_TOPICS) + list(topics.VENUE_TOPICS)]
BACKFILL_TOPICS = [list(topics.ROUTER_TOPICS)]


class BlockSynchronizer(EventHandler):
    """Owns the block loop and is the only writer of the order book."""

    def __init__(
        self,
        rpc,
        router: str,
        order_book: OrderBook,
        ledger: GasCreditLedger,
        markets: MarketCache,
        engine: Optional[BatchingEngine] = None,
        dispatcher: Optional[ExecutionDispatcher] = None,
        pending: Optional[PendingExecutionSet] = None,
        taxed_token_support: bool = False,
        backfill_chunk_size: int = 100_000,
        backfill_attempts: int = 5,
        retry_delay: float = 2.0,
    ):
        self.rpc = rpc
        self.router = router
        self.order_book = order_book
        self.ledger = ledger
        self.markets = markets
        self.engine = engine
        self.dispatcher = dispatcher
        self.pending = pending
        self.taxed_token_support = taxed_token_support
        self.backfill_chunk_size = backfill_chunk_size
        self.backfill_attempts = backfill_attempts
        self.retry_delay = retry_delay

        self.next_block: Optional[int] = None
        self._affected: Set[str] = set()
        self._affected_lock = threading.Lock()
        self._unresolved_markets: Set[Tuple[str, int]] = set()

    # ------------------------------------------------------------------
    # Order fetching
    # ------------------------------------------------------------------

    async def fetch_order(self, order_id: bytes) -> Optional[Order]:
        """
        Read an order from the router.

        Returns None when the router rejects the read or the result cannot be
        decoded (including orders no longer on the router). Transport errors
        propagate.
        """
        try:
            result = await self.rpc.call(self.router, codec.encode_get_order_by_id(order_id))
            return codec.decode_order(result)
        except (RPCError, DecodeError) as exc:
            logger.warning("Skipping order 0x%s: %s", order_id.hex(), exc)
            return None

    async def _ensure_markets(self, order: Order) -> None:
        for key in ((order.token_in, order.fee_in), (order.token_out, order.fee_out)):
            try:
                await self.markets.ensure_market(*key)
                self._unresolved_markets.discard(key)
            except (TransientRPCError, RPCError, DecodeError) as exc:
                logger.warning("Market %s (fee %d) unavailable, will retry: %s", key[0], key[1], exc)
                self._unresolved_markets.add(key)

    async def retry_unresolved_markets(self) -> None:
        for token, fee in list(self._unresolved_markets):
            try:
                await self.markets.ensure_market(token, fee)
                self._unresolved_markets.discard((token, fee))
            except (TransientRPCError, RPCError, DecodeError) as exc:
                logger.debug("Market %s (fee %d) still unavailable: %s", token, fee, exc)

    async def upsert_order_ids(self, order_ids: Iterable[bytes]) -> int:
        """Fetch each order independently and upsert it. Returns the number inserted."""
        inserted = 0
        for order_id in order_ids:
            order = await self.fetch_order(order_id)
            if order is None:
                continue
            if order.taxed and not self.taxed_token_support:
                logger.debug("Ignoring taxed order %s, taxed token support disabled", order.hex_id)
                continue
            self.order_book.upsert_orders([order])
            inserted += 1
            await self._ensure_markets(order)
        return inserted

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def on_order_placed(self, event: OrderPlaced) -> None:
        await self.upsert_order_ids(event.order_ids)

    async def on_order_updated(self, event: OrderUpdated) -> None:
        await self.upsert_order_ids(event.order_ids)

    async def on_order_refreshed(self, event: OrderRefreshed) -> None:
        await self.upsert_order_ids([event.order_id])

    async def on_order_cancelled(self, event: OrderCancelled) -> None:
        self.order_book.remove_orders(event.order_ids)

    async def on_order_filled(self, event: OrderFilled) -> None:
        self.order_book.remove_orders(event.order_ids)
        if self.pending is not None:
            self.pending.release(event.order_ids)

    async def on_gas_credit(self, event: GasCredit) -> None:
        self.ledger.set_balance(event.owner, event.balance)

    def _report_affected(self, token: Optional[str]) -> None:
        if token is None:
            return
        with self._affected_lock:
            self._affected.add(token)

    async def on_reserve_sync_v2(self, event: ReserveSyncV2) -> None:
        self.markets.update_reference_from_sync(event.pool, event.reserve0, event.reserve1)
        self._report_affected(self.markets.update_from_sync(event.pool, event.reserve0, event.reserve1))

    async def on_reserve_sync_v3(self, event: ReserveSyncV3) -> None:
        self.markets.update_reference_from_v3_swap(event.pool, event.liquidity, event.sqrt_price_x96)
        self._report_affected(self.markets.update_from_v3_swap(event.pool, event.liquidity, event.sqrt_price_x96))

    # ------------------------------------------------------------------
    # Log processing
    # ------------------------------------------------------------------

    def decode_logs(self, logs: Iterable[LogEntry]) -> Tuple[List[ChainEvent], List[ChainEvent]]:
        """Split logs into (router events, venue events), dropping malformed ones."""
        router_events, venue_events = [], []
        for log in sorted(logs, key=lambda l: (l.block_number, l.log_index)):
            if log.removed:
                continue
            kind = classify(log, self.router)
            if kind is None:
                continue
            try:
                event = decode_event(log, kind)
            except DecodeError as exc:
                logger.warning("Dropping malformed %s log %s:%d: %s", kind.value, log.transaction_hash, log.log_index, exc)
                continue
            (router_events if kind.is_router_event else venue_events).append(event)
        return router_events, venue_events

    async def apply_logs(self, logs: Iterable[LogEntry]) -> Set[str]:
        """Apply one block's logs. Returns the tokens whose pools changed."""
        router_events, venue_events = self.decode_logs(logs)

        for event in router_events:
            await dispatch(event, self)

        with self._affected_lock:
            self._affected = set()
        await asyncio.gather(*(dispatch(event, self) for event in venue_events))
        with self._affected_lock:
            affected, self._affected = self._affected, set()
        return affected

    def affected_order_ids(self, tokens: Iterable[str]) -> Set[bytes]:
        order_ids: Set[bytes] = set()
        for token in tokens:
            order_ids |= self.order_book.order_ids_affected_by(token)
        return order_ids

    async def match_and_dispatch(self, order_ids: Set[bytes]) -> List[List[bytes]]:
        if self.engine is None or not order_ids:
            return []
        try:
            batches = await self.engine.prepare_batches(order_ids)
        except (TransientRPCError, RPCError, DecodeError) as exc:
            logger.warning("Matching cycle aborted, retrying on the next price update: %s", exc)
            return []
        if batches and self.dispatcher is not None:
            self.dispatcher.dispatch_detached(batches)
        return batches

    async def process_block(self, block_number: int) -> Set[str]:
        """
        Reconcile one block. Transport errors propagate so the caller can
        retry the block.
        """
        await self.retry_unresolved_markets()
        logs = await self.rpc.get_logs(block_number, block_number, topics=BLOCK_TOPICS)
        affected = await self.apply_logs(logs)
        if affected:
            logger.debug("%d log(s), affected tokens %s", len(logs), sorted(affected))
            await self.match_and_dispatch(self.affected_order_ids(affected))
        return affected

    async def catch_up(self, head: int) -> None:
        """Process every block up to ``head`` that has not been processed yet."""
        if self.next_block is None:
            self.next_block = head
        while self.next_block <= head:
            block_number = self.next_block
            token = set_block_context(block_number)
            try:
                await self.process_block(block_number)
            except (TransientRPCError, RPCError, DecodeError) as exc:
                logger.warning("reconciliation failed, retrying on next header: %s", exc)
                return
            finally:
                reset_block_context(token)
            self.next_block = block_number + 1

    # ------------------------------------------------------------------
    # Startup and main loop
    # ------------------------------------------------------------------

    async def backfill(self, from_block: int, to_block: int) -> None:
        """Replay router events in ``[from_block, to_block]`` in fixed-size chunks."""
        start = from_block
        attempts = 0
        while start <= to_block:
            end = min(start + self.backfill_chunk_size - 1, to_block)
            try:
                logs = await self.rpc.get_logs(start, end, address=self.router, topics=BACKFILL_TOPICS)
                router_events, _ = self.decode_logs(logs)
                for event in router_events:
                    await dispatch(event, self)
            except TransientRPCError as exc:
                attempts += 1
                if attempts >= self.backfill_attempts:
                    raise
                logger.warning("Backfill of blocks %d-%d failed (attempt %d), retrying: %s", start, end, attempts, exc)
                await asyncio.sleep(self.retry_delay)
                continue
            attempts = 0
            logger.info("Backfilled blocks %d-%d: %d router event(s)", start, end, len(router_events))
            start = end + 1
        self.next_block = to_block + 1
        logger.info("Backfill complete: %d active order(s), %d gas credit account(s)", len(self.order_book), len(self.ledger))

    async def initial_matching(self) -> List[List[bytes]]:
        """One matching cycle over the whole order book."""
        return await self.match_and_dispatch({o.order_id for o in self.order_book.all_orders()})

    async def run(self, block_numbers) -> None:
        """Consume block numbers from an async iterator for the lifetime of the process."""
        async for number in block_numbers:
            await self.catch_up(number)
