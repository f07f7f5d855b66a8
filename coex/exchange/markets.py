"""
Coex Pool / Market Cache

Per-token list of liquidity pools paired against WETH:
  - Market = token → [Pool], one pool per venue and, for concentrated-liquidity
    venues, one pool per fee tier an order actually uses
  - (token, fee) seen-set so concurrent callers never insert a pool twice
  - pool address index, so a reserve event resolves to its token without a
    network round trip and untracked venues are ignored
  - USD/WETH reference pool used to express group notionals in USD

Concurrency discipline:
  - every mutation of the market map or a pool's reserves happens under the
    cache lock, and reserves and price are written together
  - the lock only ever guards in-memory work; venue discovery awaits the
    network under a per-(token, fee) creation lock instead
  - readers get deep copies, so simulation never touches live pools
"""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..exceptions import StartupError
from .amm import ZERO, price_of_a_per_b
from .orderbook import OrderSide
from .venues import Dex, VenueKind, VenueReader

logger = logging.getLogger(__name__)

ONE = Decimal("1")


def v3_virtual_reserves(liquidity: int, sqrt_price_x96: int, token_is_base_asset: bool) -> Tuple[int, int]:
    """
    (token_reserves, weth_reserves) approximated from a concentrated-liquidity
    swap event: ``reserve_a = liquidity / sqrtPrice``, ``reserve_b = liquidity² / reserve_a``.

    Tracks freshness only; precise outputs always come from the quoter.
    """
    if liquidity == 0 or sqrt_price_x96 == 0:
        return 0, 0
    reserve_a = liquidity // sqrt_price_x96
    if reserve_a == 0:
        return 0, 0
    reserve_b = liquidity ** 2 // reserve_a
    if token_is_base_asset:
        return reserve_b, reserve_a
    return reserve_a, reserve_b


@dataclass
class Pool:
    """One venue's token/WETH market."""
    address: str
    kind: VenueKind
    token: str
    token_reserves: int
    weth_reserves: int
    token_decimals: int
    weth_decimals: int = 18
    token_is_base_asset: bool = True    # token is token0 of the pair
    fee: int = 0
    dex_index: int = -1
    price: Decimal = ZERO               # token per WETH, whole-token units

    def __post_init__(self):
        self._update_price()

    def _update_price(self) -> None:
        self.price = price_of_a_per_b(
            self.token_reserves, self.token_decimals,
            self.weth_reserves, self.weth_decimals,
        )

    def set_reserves(self, token_reserves: int, weth_reserves: int) -> None:
        self.token_reserves = token_reserves
        self.weth_reserves = weth_reserves
        self._update_price()

    def set_reserves_from_pair(self, reserve0: int, reserve1: int) -> None:
        if self.token_is_base_asset:
            self.set_reserves(reserve0, reserve1)
        else:
            self.set_reserves(reserve1, reserve0)

    @property
    def is_constant_product(self) -> bool:
        return self.kind == VenueKind.CONSTANT_PRODUCT

    @property
    def has_liquidity(self) -> bool:
        return self.token_reserves > 0 and self.weth_reserves > 0

    def usable_for_fee(self, fee: int) -> bool:
        return self.is_constant_product or self.fee == fee


def select_best_pool(pools: Iterable[Pool], side: OrderSide) -> Optional[Pool]:
    """Lowest token-per-WETH price for buys, highest for sells."""
    candidates = [p for p in pools if p.has_liquidity and p.price > 0]
    if not candidates:
        return None
    if side == OrderSide.BUY:
        return min(candidates, key=lambda p: p.price)
    return max(candidates, key=lambda p: p.price)


class MarketCache:
    """
    Live pool state for every token referenced by an active order.

    The internal maps are never exposed; use the locked accessors.
    """

    def __init__(
        self,
        weth: str,
        weth_decimals: int = 18,
        reader: Optional[VenueReader] = None,
        dexes: Sequence[Dex] = (),
        token_allowlist: Optional[Iterable[str]] = None,
    ):
        self.weth = weth
        self.weth_decimals = weth_decimals
        self.reader = reader
        self.dexes = list(dexes)
        self.token_allowlist = set(token_allowlist) if token_allowlist else None

        self._lock = threading.Lock()
        self._markets: Dict[str, List[Pool]] = {}
        self._pool_index: Dict[str, str] = {}
        self._seen: Set[Tuple[str, int]] = set()
        self._creation_locks: Dict[Tuple[str, int], asyncio.Lock] = {}
        self._reference: Optional[Pool] = None

    # ------------------------------------------------------------------
    # Market creation
    # ------------------------------------------------------------------

    def is_tracked(self, token: str, fee: int) -> bool:
        with self._lock:
            return (token, fee) in self._seen

    def add_pools(self, token: str, fee: int, pools: Iterable[Pool]) -> int:
        """Insert discovered pools for (token, fee), skipping addresses already tracked."""
        added = 0
        with self._lock:
            market = self._markets.setdefault(token, [])
            for pool in pools:
                if pool.address in self._pool_index:
                    continue
                market.append(pool)
                self._pool_index[pool.address] = token
                added += 1
            self._seen.add((token, fee))
        return added

    async def ensure_market(self, token: str, fee: int) -> bool:
        """
        Make sure every configured venue's token/WETH pool for ``fee`` is
        tracked. Idempotent; returns True when this call created the market.

        Network errors propagate and leave (token, fee) unmarked, so the next
        caller retries.
        """
        if token == self.weth:
            return False
        if self.token_allowlist is not None and token not in self.token_allowlist:
            logger.debug("Token %s is not in the allowlist, not tracking", token)
            return False

        key = (token, fee)
        with self._lock:
            if key in self._seen:
                return False
            creation_lock = self._creation_locks.setdefault(key, asyncio.Lock())

        async with creation_lock:
            if self.is_tracked(token, fee):
                return False
            pools = await self._discover_pools(token, fee)
            added = self.add_pools(token, fee, pools)

        with self._lock:
            self._creation_locks.pop(key, None)
        logger.info("Market %s (fee %d) initialized with %d pool(s)", token, fee, added)
        return True

    async def _discover_pools(self, token: str, fee: int) -> List[Pool]:
        if self.reader is None:
            raise RuntimeError("MarketCache has no venue reader")
        token_decimals = await self.reader.decimals(token)
        pools = []
        for dex in self.dexes:
            if dex.is_constant_product and self.has_pool_on(token, dex):
                continue
            pool = await self._load_pool(dex, token, fee, token_decimals)
            if pool is not None:
                pools.append(pool)
        return pools

    async def _load_pool(self, dex: Dex, token: str, fee: int, token_decimals: int) -> Optional[Pool]:
        address = await self.reader.find_pool(dex, token, self.weth, fee)
        if address is None:
            return None
        token0 = await self.reader.token0(address)
        base = token0 == token
        token1 = self.weth if base else token
        reserve0, reserve1 = await self.reader.reserves(address, dex.kind, token0, token1)
        pool = Pool(
            address=address,
            kind=dex.kind,
            token=token,
            token_reserves=0,
            weth_reserves=0,
            token_decimals=token_decimals,
            weth_decimals=self.weth_decimals,
            token_is_base_asset=base,
            fee=0 if dex.is_constant_product else fee,
            dex_index=dex.index,
        )
        pool.set_reserves_from_pair(reserve0, reserve1)
        return pool

    def has_pool_on(self, token: str, dex: Dex) -> bool:
        # Constant-product venues have exactly one pair per token, whatever the fee
        with self._lock:
            return any(p.dex_index == dex.index for p in self._markets.get(token, ()))

    # ------------------------------------------------------------------
    # Reference pool
    # ------------------------------------------------------------------

    async def resolve_reference_pool(self, usd: str, fee: int) -> Pool:
        """
        Locate and load the USD/WETH pool.

        Raises:
            StartupError: no configured venue has a USD/WETH pool
        """
        if self.reader is None:
            raise StartupError("Cannot resolve reference pool without a venue reader")
        usd_decimals = await self.reader.decimals(usd)
        ordered = sorted(self.dexes, key=lambda d: d.is_constant_product)
        for dex in ordered:
            pool = await self._load_pool(dex, usd, fee, usd_decimals)
            if pool is not None and pool.has_liquidity:
                self.set_reference_pool(pool)
                logger.info("Reference pool %s: %s USD per WETH", pool.address, pool.price)
                return pool
        raise StartupError(f"No USD/WETH pool found for {usd} (fee {fee})")

    def set_reference_pool(self, pool: Pool) -> None:
        with self._lock:
            self._reference = copy.deepcopy(pool)

    def reference_pool(self) -> Optional[Pool]:
        with self._lock:
            return copy.deepcopy(self._reference)

    def usd_per_weth(self) -> Optional[Decimal]:
        with self._lock:
            if self._reference is None or self._reference.price <= 0:
                return None
            return self._reference.price

    def update_reference_from_sync(self, address: str, reserve0: int, reserve1: int) -> bool:
        with self._lock:
            if self._reference is None or self._reference.address != address:
                return False
            self._reference.set_reserves_from_pair(reserve0, reserve1)
            return True

    def update_reference_from_v3_swap(self, address: str, liquidity: int, sqrt_price_x96: int) -> bool:
        with self._lock:
            ref = self._reference
            if ref is None or ref.address != address:
                return False
            ref.set_reserves(*v3_virtual_reserves(liquidity, sqrt_price_x96, ref.token_is_base_asset))
            return True

    # ------------------------------------------------------------------
    # Reserve updates
    # ------------------------------------------------------------------

    def _tracked_pool(self, address: str) -> Optional[Pool]:
        token = self._pool_index.get(address)
        if token is None:
            return None
        for pool in self._markets.get(token, ()):
            if pool.address == address:
                return pool
        return None

    def update_from_sync(self, address: str, reserve0: int, reserve1: int) -> Optional[str]:
        """Apply a constant-product Sync event. Returns the affected token, if tracked."""
        with self._lock:
            pool = self._tracked_pool(address)
            if pool is None:
                return None
            pool.set_reserves_from_pair(reserve0, reserve1)
            return pool.token

    def update_from_v3_swap(self, address: str, liquidity: int, sqrt_price_x96: int) -> Optional[str]:
        """Apply a concentrated-liquidity Swap event. Returns the affected token, if tracked."""
        with self._lock:
            pool = self._tracked_pool(address)
            if pool is None:
                return None
            pool.set_reserves(*v3_virtual_reserves(liquidity, sqrt_price_x96, pool.token_is_base_asset))
            return pool.token

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def clone_market(self, token: str) -> List[Pool]:
        """Deep copy of the token's pools, safe to mutate during simulation."""
        with self._lock:
            return copy.deepcopy(self._markets.get(token, []))

    def best_pool(self, token: str, side: OrderSide) -> Optional[Pool]:
        with self._lock:
            best = select_best_pool(self._markets.get(token, ()), side)
            return copy.deepcopy(best) if best is not None else None

    def best_price(self, token: str, side: OrderSide) -> Optional[Decimal]:
        """Token-per-WETH price of the best pool; WETH itself prices at 1."""
        if token == self.weth:
            return ONE
        with self._lock:
            best = select_best_pool(self._markets.get(token, ()), side)
            return best.price if best is not None else None
