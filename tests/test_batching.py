"""
Test suite for the batching / matching engine

Covers:
  - route grouping and the (side, taxed) split
  - execution-price filter, including equality at the limit
  - USD notional ranking and in-group quicksort
  - greedy simulation with price impact carried between orders
  - end-to-end batch preparation with validator and pending filters
"""

from decimal import Decimal

import pytest
from eth_utils import to_checksum_address

from coex.exceptions import RPCError, TransientRPCError
from coex.exchange.amm import simulate_constant_product_swap
from coex.exchange.batching import (
    BatchingEngine,
    BatchSimulator,
    OnChainBatchValidator,
    OrderGroup,
    current_price,
    filter_at_execution_price,
    group_by_route,
    group_notional_usd,
    quicksort_by_quantity,
    rank_groups_by_value,
    split_groups,
)
from coex.exchange.markets import MarketCache, Pool
from coex.exchange.orderbook import Order, OrderBook, OrderSide
from coex.exchange.venues import VenueKind

E18 = 10 ** 18
E6 = 10 ** 6

WETH = to_checksum_address("0x" + "ee" * 20)
TOKEN_X = to_checksum_address("0x" + "11" * 20)
TOKEN_Y = to_checksum_address("0x" + "22" * 20)
USD = to_checksum_address("0x" + "55" * 20)
PAIR_X = to_checksum_address("0x" + "a1" * 20)
PAIR_Y = to_checksum_address("0x" + "b1" * 20)
POOL_X_V3 = to_checksum_address("0x" + "a2" * 20)
POOL_USD = to_checksum_address("0x" + "a4" * 20)
ROUTER = to_checksum_address("0x" + "c0" * 20)
EXECUTOR = to_checksum_address("0x" + "c1" * 20)


def order_id(n: int) -> bytes:
    return n.to_bytes(32, "big")


def make_order(n: int, quantity: int, amount_out_min: int = 0, **kwargs) -> Order:
    fields = dict(
        order_id=order_id(n),
        side=OrderSide.SELL,
        token_in=TOKEN_X,
        token_out=WETH,
        quantity=quantity,
        amount_out_min=amount_out_min,
        price=Decimal(8),
        fee_in=3000,
        fee_out=3000,
    )
    fields.update(kwargs)
    return Order(**fields)


def v2_pool(address, token, token_reserves, weth_reserves, **kwargs):
    return Pool(
        address=address,
        kind=VenueKind.CONSTANT_PRODUCT,
        token=token,
        token_reserves=token_reserves,
        weth_reserves=weth_reserves,
        token_decimals=kwargs.pop("token_decimals", 18),
        **kwargs,
    )


def market_with_x(x_reserves=9_000 * E18, weth_reserves=1_000 * E18) -> MarketCache:
    """X/WETH pair priced at 9 X per WETH."""
    markets = MarketCache(WETH)
    markets.add_pools(TOKEN_X, 3000, [v2_pool(PAIR_X, TOKEN_X, x_reserves, weth_reserves)])
    return markets


async def no_quote(token_in, token_out, fee, amount_in):
    raise AssertionError("constant-product venues must not be quoted")


async def eighteen_decimals(token):
    return 18


# ============================================================================
#  GROUPING AND FILTERING
# ============================================================================

class TestGrouping:

    def test_group_by_route_preserves_order(self):
        a = make_order(1, 10)
        b = make_order(2, 20, fee_in=500)
        c = make_order(3, 30)
        groups = group_by_route([a, b, c])
        assert list(groups) == [(TOKEN_X, WETH, 3000), (TOKEN_X, WETH, 500)]
        assert [o.order_id for o in groups[(TOKEN_X, WETH, 3000)]] == [order_id(1), order_id(3)]

    def test_split_separates_side_and_taxed(self):
        orders = [
            make_order(1, 10),
            make_order(2, 10, side=OrderSide.BUY),
            make_order(3, 10, taxed=True, tax_in=1_000),
            make_order(4, 10),
        ]
        groups = split_groups(group_by_route(orders))
        assert len(groups) == 3
        plain = next(g for g in groups if g.side == OrderSide.SELL and not g.taxed)
        assert plain.order_ids == [order_id(1), order_id(4)]
        assert all(len({(o.side, o.taxed) for o in g.orders}) == 1 for g in groups)


class TestPriceFilter:
    """buy iff limit >= current, sell iff limit <= current."""

    def test_current_price_of_route(self):
        markets = market_with_x()
        markets.add_pools(TOKEN_Y, 3000, [v2_pool(PAIR_Y, TOKEN_Y, 2_000 * E18, 1_000 * E18)])
        assert current_price(markets, TOKEN_X, WETH, OrderSide.SELL) == Decimal(9)
        assert current_price(markets, TOKEN_X, TOKEN_Y, OrderSide.SELL) == Decimal("4.5")

    def test_missing_leg_has_no_price(self):
        assert current_price(market_with_x(), TOKEN_X, TOKEN_Y, OrderSide.SELL) is None

    def test_equality_executes_on_both_sides(self):
        markets = market_with_x()
        sell = make_order(1, 10, price=Decimal(9))
        buy = make_order(2, 10, price=Decimal(9), side=OrderSide.BUY)
        assert filter_at_execution_price([sell, buy], markets) == [sell, buy]

    def test_limits_on_the_wrong_side_are_dropped(self):
        markets = market_with_x()
        sell_high = make_order(1, 10, price=Decimal(10))
        sell_low = make_order(2, 10, price=Decimal(8))
        buy_low = make_order(3, 10, price=Decimal(8), side=OrderSide.BUY)
        buy_high = make_order(4, 10, price=Decimal(10), side=OrderSide.BUY)
        assert filter_at_execution_price([sell_high, sell_low, buy_low, buy_high], markets) == [sell_low, buy_high]

    def test_untracked_token_never_executes(self):
        orders = [make_order(1, 10, token_in=TOKEN_Y)]
        assert filter_at_execution_price(orders, market_with_x()) == []


# ============================================================================
#  RANKING AND SORTING
# ============================================================================

class TestRanking:

    def test_notional_in_usd(self):
        markets = market_with_x()
        markets.set_reference_pool(v2_pool(POOL_USD, USD, 2_000_000 * E6, 1_000 * E18, token_decimals=6))
        group = OrderGroup((TOKEN_X, WETH, 3000), OrderSide.SELL, False, [make_order(1, 45 * E18), make_order(2, 45 * E18)])
        # 90 X / 9 X per WETH * 2000 USD per WETH
        assert group_notional_usd(group, markets, 18) == Decimal(20_000)

    def test_notional_without_reference_is_none(self):
        group = OrderGroup((TOKEN_X, WETH, 3000), OrderSide.SELL, False, [make_order(1, E18)])
        assert group_notional_usd(group, market_with_x(), 18) is None

    def test_rank_ascending_stable_none_last(self):
        def group(n, notional):
            return OrderGroup((TOKEN_X, WETH, n), OrderSide.SELL, False, notional_usd=notional)

        groups = [group(1, Decimal(50)), group(2, None), group(3, Decimal(10)), group(4, Decimal(50))]
        ranked = rank_groups_by_value(groups)
        assert [g.route[2] for g in ranked] == [3, 1, 4, 2]


class TestQuicksort:

    def test_sorts_ascending_by_quantity(self):
        orders = [make_order(i, q) for i, q in enumerate([5, 3, 9, 1, 3, 7])]
        quicksort_by_quantity(orders)
        assert [o.quantity for o in orders] == [1, 3, 3, 5, 7, 9]

    def test_sorted_input_does_not_recurse(self):
        orders = [make_order(i, i) for i in range(1_000)]
        assert [o.quantity for o in quicksort_by_quantity(orders)] == list(range(1_000))

    def test_empty_and_single(self):
        assert quicksort_by_quantity([]) == []
        single = [make_order(1, 1)]
        assert quicksort_by_quantity(single) == single


# ============================================================================
#  SIMULATION
# ============================================================================

@pytest.mark.asyncio
class TestBatchSimulator:
    """Greedy simulation on cloned pools."""

    async def test_price_impact_carries_to_next_order(self):
        markets = market_with_x()
        b = make_order(2, 50 * E18, 5 * E18)
        a = make_order(1, 100 * E18, 1095 * 10 ** 16)
        simulator = BatchSimulator(markets, no_quote)

        # On its own A clears its minimum (~10.989 WETH)
        alone = OrderGroup((TOKEN_X, WETH, 3000), OrderSide.SELL, False, [a])
        assert await simulator.simulate_group(alone) == [order_id(1)]

        # After B moves the pool A only gets ~10.868 WETH
        both = OrderGroup((TOKEN_X, WETH, 3000), OrderSide.SELL, False, [b, a])
        assert await simulator.simulate_group(both) == [order_id(2)]

    async def test_live_cache_is_untouched(self):
        markets = market_with_x()
        simulator = BatchSimulator(markets, no_quote)
        group = OrderGroup((TOKEN_X, WETH, 3000), OrderSide.SELL, False, [make_order(1, 50 * E18)])
        await simulator.simulate_group(group)
        assert markets.best_price(TOKEN_X, OrderSide.SELL) == Decimal(9)

    async def test_first_failure_ends_group(self):
        simulator = BatchSimulator(market_with_x(), no_quote)
        orders = [make_order(1, 10 * E18), make_order(2, 20 * E18, 1_000 * E18), make_order(3, 30 * E18)]
        group = OrderGroup((TOKEN_X, WETH, 3000), OrderSide.SELL, False, orders)
        assert await simulator.simulate_group(group) == [order_id(1)]

    async def test_taxed_input_is_reduced(self):
        markets = market_with_x()
        simulator = BatchSimulator(markets, no_quote)
        order = make_order(1, 100 * E18, taxed=True, tax_in=50_000)
        pools = markets.clone_market(TOKEN_X)
        simulation = await simulator.simulate_order(order, pools, [])
        assert simulation.amount_in == 50 * E18
        assert simulation.amount_out == 1_000 * E18 // 181

    async def test_two_hop_route(self):
        markets = market_with_x()
        markets.add_pools(TOKEN_Y, 3000, [v2_pool(PAIR_Y, TOKEN_Y, 2_000 * E18, 1_000 * E18)])
        simulator = BatchSimulator(markets, no_quote)
        order = make_order(1, 90 * E18, token_out=TOKEN_Y)
        simulation = await simulator.simulate_order(order, markets.clone_market(TOKEN_X), markets.clone_market(TOKEN_Y))

        weth_amount = 1_000 * E18 // 101
        assert simulation.weth_amount == weth_amount
        assert simulation.amount_out == simulate_constant_product_swap(weth_amount, 1_000 * E18, 2_000 * E18).amount_out

    async def test_weth_input_skips_first_hop(self):
        markets = market_with_x()
        simulator = BatchSimulator(markets, no_quote)
        order = make_order(1, 10 * E18, token_in=WETH, token_out=TOKEN_X, side=OrderSide.BUY)
        simulation = await simulator.simulate_order(order, [], markets.clone_market(TOKEN_X))
        assert simulation.weth_amount == 10 * E18
        assert simulation.amount_out == simulate_constant_product_swap(10 * E18, 1_000 * E18, 9_000 * E18).amount_out

    async def test_concentrated_pool_is_quoted(self):
        quotes = []

        async def quote(token_in, token_out, fee, amount_in):
            quotes.append((token_in, token_out, fee, amount_in))
            return amount_in // 10

        markets = MarketCache(WETH)
        markets.add_pools(TOKEN_X, 3000, [Pool(
            address=POOL_X_V3, kind=VenueKind.CONCENTRATED_LIQUIDITY, token=TOKEN_X,
            token_reserves=9_000 * E18, weth_reserves=1_000 * E18, token_decimals=18, fee=3000,
        )])
        simulator = BatchSimulator(markets, quote)
        simulation = await simulator.simulate_order(make_order(1, 10 * E18), markets.clone_market(TOKEN_X), [])
        assert simulation.amount_out == E18
        assert quotes == [(TOKEN_X, WETH, 3000, 10 * E18)]

        # No pool on the order's fee tier
        assert await simulator.simulate_order(make_order(2, E18, fee_in=500), markets.clone_market(TOKEN_X), []) is None

    async def test_quote_failure_ends_group(self):
        async def quote(*args):
            raise TransientRPCError("timeout")

        markets = MarketCache(WETH)
        markets.add_pools(TOKEN_X, 3000, [Pool(
            address=POOL_X_V3, kind=VenueKind.CONCENTRATED_LIQUIDITY, token=TOKEN_X,
            token_reserves=9_000 * E18, weth_reserves=1_000 * E18, token_decimals=18, fee=3000,
        )])
        group = OrderGroup((TOKEN_X, WETH, 3000), OrderSide.SELL, False, [make_order(1, E18)])
        assert await BatchSimulator(markets, quote).simulate_group(group) == []


# ============================================================================
#  ENGINE
# ============================================================================

class FakeCallRPC:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def call(self, to, data, block="latest", sender=None):
        self.calls.append((to, data, sender))
        if self.error is not None:
            raise self.error
        return b""


@pytest.mark.asyncio
class TestBatchingEngine:

    def _engine(self, orders, **kwargs):
        book = OrderBook()
        book.upsert_orders(orders)
        return BatchingEngine(book, market_with_x(), no_quote, eighteen_decimals, **kwargs)

    async def test_orders_sorted_before_simulation(self):
        a = make_order(1, 100 * E18, 1095 * 10 ** 16)
        b = make_order(2, 50 * E18, 5 * E18)
        engine = self._engine([a, b])
        assert await engine.prepare_batches([order_id(1), order_id(2)]) == [[order_id(2)]]

    async def test_buy_orders_sorted_then_simulated_greedily(self):
        # Both limits of 10 clear the current price of 9
        a = make_order(1, 100 * E18, 1095 * 10 ** 16, side=OrderSide.BUY, price=Decimal(10))
        b = make_order(2, 50 * E18, 5 * E18, side=OrderSide.BUY, price=Decimal(10))
        engine = self._engine([a, b])
        assert current_price(engine.markets, TOKEN_X, WETH, OrderSide.BUY) == Decimal(9)
        # B is smaller so it runs first, A then misses its minimum on the moved pool
        assert await engine.prepare_batches([order_id(1), order_id(2)]) == [[order_id(2)]]

    async def test_non_qualifying_and_unknown_ids_are_skipped(self):
        engine = self._engine([make_order(1, E18, price=Decimal(10)), make_order(2, E18)])
        assert await engine.prepare_batches([order_id(1), order_id(2), order_id(9)]) == [[order_id(2)]]

    async def test_pending_orders_are_skipped(self):
        engine = self._engine([make_order(1, E18), make_order(2, E18)], is_pending=lambda i: i == order_id(1))
        assert await engine.prepare_batches([order_id(1), order_id(2)]) == [[order_id(2)]]

    async def test_validator_can_veto(self):
        seen = []

        async def reject(batch):
            seen.append(batch)
            return False

        engine = self._engine([make_order(1, E18)], validator=reject)
        assert await engine.prepare_batches([order_id(1)]) == []
        assert seen == [[order_id(1)]]

    async def test_one_batch_per_group(self):
        orders = [make_order(1, E18), make_order(2, E18, side=OrderSide.BUY, price=Decimal(10))]
        batches = await self._engine(orders).prepare_batches([order_id(1), order_id(2)])
        assert sorted(batches) == [[order_id(1)], [order_id(2)]]

    async def test_empty_candidates(self):
        assert await self._engine([]).prepare_batches([]) == []


@pytest.mark.asyncio
class TestOnChainBatchValidator:

    async def test_success(self):
        rpc = FakeCallRPC()
        assert await OnChainBatchValidator(rpc, ROUTER, EXECUTOR)([order_id(1)])
        to, data, sender = rpc.calls[0]
        assert (to, sender) == (ROUTER, EXECUTOR)

    async def test_revert_rejects_batch(self):
        rpc = FakeCallRPC(RPCError("eth_call", 3, "execution reverted"))
        assert not await OnChainBatchValidator(rpc, ROUTER, EXECUTOR)([order_id(1)])
