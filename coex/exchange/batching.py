"""
Coex Batching / Matching Engine

Turns a candidate set of order ids into batches that are expected to succeed
on-chain:

  1. Route grouping      key = (tokenIn, tokenOut, feeIn)
  2. Price filter        buy iff limit >= current, sell iff limit <= current
  3. Value ranking       groups sorted ascending by USD notional (stable)
  4. In-group ordering   Lomuto quicksort by quantity, smallest first
  5. Greedy simulation   orders simulated end to end on cloned pools; the
                         first order that misses its minimum output ends
                         the group, later orders are not considered

Each non-empty batch is optionally validated with an ``eth_call`` of the
full execution transaction before it is returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..abi import codec
from ..exceptions import DecodeError, RPCError, TransientRPCError
from .amm import (
    ZERO,
    QuoteFn,
    SwapResult,
    apply_transfer_tax,
    simulate_concentrated_liquidity_swap,
    simulate_constant_product_swap,
)
from .markets import MarketCache, Pool, select_best_pool
from .orderbook import Order, OrderBook, OrderSide, RouteKey

logger = logging.getLogger(__name__)

GroupKey = Tuple[RouteKey, OrderSide, bool]
BatchValidator = Callable[[List[bytes]], Awaitable[bool]]


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class OrderGroup:
    """Orders sharing route, side and taxed flag."""
    route: RouteKey
    side: OrderSide
    taxed: bool
    orders: List[Order] = field(default_factory=list)
    notional_usd: Optional[Decimal] = None

    @property
    def token_in(self) -> str:
        return self.route[0]

    @property
    def token_out(self) -> str:
        return self.route[1]

    @property
    def order_ids(self) -> List[bytes]:
        return [o.order_id for o in self.orders]


@dataclass
class OrderSimulation:
    order_id: bytes
    amount_in: int          # after transfer tax
    weth_amount: int
    amount_out: int
    amount_out_min: int

    @property
    def meets_minimum(self) -> bool:
        return self.amount_out >= self.amount_out_min


# ---------------------------------------------------------------------------
# Stage 1: route grouping
# ---------------------------------------------------------------------------

def group_by_route(orders: Iterable[Order]) -> Dict[RouteKey, List[Order]]:
    """Group orders by (tokenIn, tokenOut, feeIn), preserving input order."""
    groups: Dict[RouteKey, List[Order]] = {}
    for order in orders:
        groups.setdefault(order.route_key, []).append(order)
    return groups


# ---------------------------------------------------------------------------
# Stage 2: execution price filter
# ---------------------------------------------------------------------------

def current_price(markets: MarketCache, token_in: str, token_out: str, side: OrderSide) -> Optional[Decimal]:
    """``bestPrice(tokenIn) / bestPrice(tokenOut)``, or None when either leg has no pool."""
    price_in = markets.best_price(token_in, side)
    price_out = markets.best_price(token_out, side)
    if price_in is None or price_out is None or price_out == 0:
        return None
    return price_in / price_out


def is_executable(order: Order, price: Decimal) -> bool:
    if order.buy:
        return order.price >= price
    return order.price <= price


def filter_at_execution_price(orders: Iterable[Order], markets: MarketCache) -> List[Order]:
    """Orders whose limit price is satisfied at the current best price."""
    prices: Dict[Tuple[str, str, OrderSide], Optional[Decimal]] = {}
    qualifying = []
    for order in orders:
        key = (order.token_in, order.token_out, order.side)
        if key not in prices:
            prices[key] = current_price(markets, order.token_in, order.token_out, order.side)
        price = prices[key]
        if price is not None and is_executable(order, price):
            qualifying.append(order)
    return qualifying


def split_groups(route_groups: Dict[RouteKey, List[Order]]) -> List[OrderGroup]:
    """Split each route group by (side, taxed) so one batch never mixes them."""
    groups: Dict[GroupKey, OrderGroup] = {}
    for route, orders in route_groups.items():
        for order in orders:
            key = (route, order.side, order.taxed)
            if key not in groups:
                groups[key] = OrderGroup(route, order.side, order.taxed)
            groups[key].orders.append(order)
    return list(groups.values())


# ---------------------------------------------------------------------------
# Stage 3: value ranking
# ---------------------------------------------------------------------------

def group_notional_usd(group: OrderGroup, markets: MarketCache, token_decimals: int) -> Optional[Decimal]:
    """
    USD value of a group: total quantity in whole tokenIn units, converted to
    WETH at the best pool price, then to USD through the reference pool.
    """
    usd_per_weth = markets.usd_per_weth()
    token_per_weth = markets.best_price(group.token_in, group.side)
    if usd_per_weth is None or not token_per_weth:
        return None
    quantity = sum(o.quantity for o in group.orders)
    tokens = Decimal(quantity) / (Decimal(10) ** token_decimals)
    return tokens / token_per_weth * usd_per_weth


def rank_groups_by_value(groups: List[OrderGroup]) -> List[OrderGroup]:
    """Ascending by notional, stable; groups without a notional go last."""
    return sorted(groups, key=lambda g: (g.notional_usd is None, g.notional_usd or ZERO))


# ---------------------------------------------------------------------------
# Stage 4: in-group ordering
# ---------------------------------------------------------------------------

def _partition(orders: List[Order], low: int, high: int) -> int:
    pivot = orders[high].quantity
    i = low - 1
    for j in range(low, high):
        if orders[j].quantity <= pivot:
            i += 1
            orders[i], orders[j] = orders[j], orders[i]
    orders[i + 1], orders[high] = orders[high], orders[i + 1]
    return i + 1


def quicksort_by_quantity(orders: List[Order]) -> List[Order]:
    """
    Sort orders in place by ascending quantity (Lomuto partition).

    Uses an explicit stack; already sorted groups would otherwise recurse
    once per order.
    """
    stack = [(0, len(orders) - 1)]
    while stack:
        low, high = stack.pop()
        if low >= high:
            continue
        p = _partition(orders, low, high)
        stack.append((low, p - 1))
        stack.append((p + 1, high))
    return orders


# ---------------------------------------------------------------------------
# Stage 5: greedy simulation
# ---------------------------------------------------------------------------

class BatchSimulator:
    """
    Simulates orders of one group against cloned pools.

    Accepted orders advance the cloned reserves so later orders in the same
    group see their price impact. The live cache is never touched.
    """

    def __init__(self, markets: MarketCache, quote: QuoteFn):
        self.markets = markets
        self.quote = quote

    async def _swap(self, pool: Pool, token_to_weth: bool, amount_in: int) -> SwapResult:
        if token_to_weth:
            reserve_in, reserve_out = pool.token_reserves, pool.weth_reserves
            decimals_in, decimals_out = pool.token_decimals, pool.weth_decimals
            token_in, token_out = pool.token, self.markets.weth
        else:
            reserve_in, reserve_out = pool.weth_reserves, pool.token_reserves
            decimals_in, decimals_out = pool.weth_decimals, pool.token_decimals
            token_in, token_out = self.markets.weth, pool.token

        if pool.is_constant_product:
            return simulate_constant_product_swap(amount_in, reserve_in, reserve_out, decimals_in, decimals_out)
        return await simulate_concentrated_liquidity_swap(
            self.quote, token_in, token_out, pool.fee, amount_in, reserve_in, reserve_out,
        )

    @staticmethod
    def _commit(pool: Pool, token_to_weth: bool, result: SwapResult) -> None:
        if token_to_weth:
            pool.set_reserves(result.new_reserve_in, result.new_reserve_out)
        else:
            pool.set_reserves(result.new_reserve_out, result.new_reserve_in)

    async def simulate_order(
        self,
        order: Order,
        in_pools: List[Pool],
        out_pools: List[Pool],
    ) -> Optional[OrderSimulation]:
        """
        Run one order end to end: inbound tax, tokenIn → WETH, WETH → tokenOut.

        Returns None when a leg has no usable pool. Cloned reserves are only
        advanced when the order meets its minimum output.
        """
        weth = self.markets.weth
        amount_in = apply_transfer_tax(order.quantity, order.tax_in) if order.taxed else order.quantity

        hop1 = hop2 = None
        pool_in = pool_out = None
        weth_amount = amount_in
        if order.token_in != weth:
            pool_in = select_best_pool([p for p in in_pools if p.usable_for_fee(order.fee_in)], order.side)
            if pool_in is None:
                return None
            hop1 = await self._swap(pool_in, True, amount_in)
            weth_amount = hop1.amount_out

        amount_out = weth_amount
        if order.token_out != weth:
            pool_out = select_best_pool([p for p in out_pools if p.usable_for_fee(order.fee_out)], order.side)
            if pool_out is None:
                return None
            hop2 = await self._swap(pool_out, False, weth_amount)
            amount_out = hop2.amount_out

        simulation = OrderSimulation(order.order_id, amount_in, weth_amount, amount_out, order.amount_out_min)
        if simulation.meets_minimum:
            if hop1 is not None:
                self._commit(pool_in, True, hop1)
            if hop2 is not None:
                self._commit(pool_out, False, hop2)
        return simulation

    async def simulate_group(self, group: OrderGroup) -> List[bytes]:
        """Greedy batch for a group whose orders are already sorted."""
        in_pools = self.markets.clone_market(group.token_in)
        out_pools = in_pools if group.token_out == group.token_in else self.markets.clone_market(group.token_out)

        batch: List[bytes] = []
        for order in group.orders:
            try:
                simulation = await self.simulate_order(order, in_pools, out_pools)
            except (TransientRPCError, RPCError, DecodeError) as exc:
                logger.warning("Quote failed for order %s, ending group: %s", order.hex_id, exc)
                break
            if simulation is None:
                logger.debug("No pool for order %s, ending group", order.hex_id)
                break
            if not simulation.meets_minimum:
                logger.debug(
                    "Order %s simulates %d < min %d, ending group",
                    order.hex_id, simulation.amount_out, simulation.amount_out_min,
                )
                break
            batch.append(order.order_id)
        return batch


class OnChainBatchValidator:
    """Validates a batch with an ``eth_call`` of the execution transaction."""

    def __init__(self, rpc, router: str, sender: str):
        self.rpc = rpc
        self.router = router
        self.sender = sender

    async def __call__(self, batch: List[bytes]) -> bool:
        data = codec.encode_execute_order_groups([batch])
        try:
            await self.rpc.call(self.router, data, sender=self.sender)
        except RPCError as exc:
            logger.info("Batch of %d order(s) reverts in simulation: %s", len(batch), exc.message)
            return False
        return True


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class BatchingEngine:
    """Resolves candidate order ids into ranked, simulated batches."""

    def __init__(
        self,
        order_book: OrderBook,
        markets: MarketCache,
        quote: QuoteFn,
        token_decimals: Callable[[str], Awaitable[int]],
        validator: Optional[BatchValidator] = None,
        is_pending: Optional[Callable[[bytes], bool]] = None,
    ):
        self.order_book = order_book
        self.markets = markets
        self.simulator = BatchSimulator(markets, quote)
        self.token_decimals = token_decimals
        self.validator = validator
        self.is_pending = is_pending or (lambda order_id: False)

    async def rank(self, groups: List[OrderGroup]) -> List[OrderGroup]:
        for group in groups:
            decimals = await self.token_decimals(group.token_in)
            group.notional_usd = group_notional_usd(group, self.markets, decimals)
        return rank_groups_by_value(groups)

    async def prepare_batches(self, order_ids: Iterable[bytes]) -> List[List[bytes]]:
        """
        Candidate order ids → batches in group-rank order.

        Ids that are unknown or already in flight are skipped.
        """
        orders = [o for o in self.order_book.get_orders(order_ids) if not self.is_pending(o.order_id)]
        if not orders:
            return []

        route_groups = {
            route: qualifying
            for route, members in group_by_route(orders).items()
            if (qualifying := filter_at_execution_price(members, self.markets))
        }
        groups = await self.rank(split_groups(route_groups))

        batches = []
        for group in groups:
            quicksort_by_quantity(group.orders)
            batch = await self.simulator.simulate_group(group)
            if not batch:
                continue
            if self.validator is not None and not await self.validator(batch):
                continue
            logger.info(
                "Batch ready: %d order(s) %s -> %s (%s)",
                len(batch), group.token_in, group.token_out, group.side.value,
            )
            batches.append(batch)
        return batches
