"""
On-chain reads against liquidity venues.

Resolves the venue list registered on the swap router, locates the
token/WETH pool on each venue, and reads reserves, token metadata and
concentrated-liquidity quotes. Every method is a network call; callers must
not hold the market cache lock while awaiting them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..abi import codec
from ..logger import get_logger

logger = get_logger(__name__)


class VenueKind(str, Enum):
    CONSTANT_PRODUCT = "constant_product"              # Uniswap V2 style pair
    CONCENTRATED_LIQUIDITY = "concentrated_liquidity"  # Uniswap V3 style pool


@dataclass(frozen=True)
class Dex:
    index: int
    factory: str
    kind: VenueKind

    @property
    def is_constant_product(self) -> bool:
        return self.kind == VenueKind.CONSTANT_PRODUCT


class VenueReader:
    """Typed wrapper around the eth_call reads the market cache needs."""

    def __init__(self, rpc, swap_router: str, quoter: str):
        self.rpc = rpc
        self.swap_router = swap_router
        self.quoter = quoter
        self._decimals: Dict[str, int] = {}

    async def load_dexes(self, count: int) -> List[Dex]:
        dexes = []
        for index in range(count):
            info = codec.decode_dex(await self.rpc.call(self.swap_router, codec.encode_dexes(index)))
            kind = VenueKind.CONSTANT_PRODUCT if info.is_uni_v2 else VenueKind.CONCENTRATED_LIQUIDITY
            dexes.append(Dex(index, info.factory, kind))
            logger.info(f"Venue {index}: {info.factory} ({kind.value})")
        return dexes

    async def find_pool(self, dex: Dex, token: str, weth: str, fee: int) -> Optional[str]:
        """Pool address for token/WETH on ``dex``, or None if the venue has none."""
        if dex.is_constant_product:
            data = codec.encode_get_pair(token, weth)
        else:
            data = codec.encode_get_pool(token, weth, fee)
        address = codec.decode_address(await self.rpc.call(dex.factory, data))
        if int(address, 16) == 0:
            return None
        return address

    async def token0(self, pool: str) -> str:
        return codec.decode_address(await self.rpc.call(pool, codec.encode_token0()))

    async def decimals(self, token: str) -> int:
        if token not in self._decimals:
            self._decimals[token] = codec.decode_uint(await self.rpc.call(token, codec.encode_decimals()))
        return self._decimals[token]

    async def balance_of(self, token: str, owner: str) -> int:
        return codec.decode_uint(await self.rpc.call(token, codec.encode_balance_of(owner)))

    async def reserves(self, pool: str, kind: VenueKind, token0: str, token1: str) -> Tuple[int, int]:
        """
        (reserve0, reserve1) of a pool.

        Constant-product pairs report reserves directly; concentrated-liquidity
        pools are approximated by the pool's token balances.
        """
        if kind == VenueKind.CONSTANT_PRODUCT:
            return codec.decode_get_reserves(await self.rpc.call(pool, codec.encode_get_reserves()))
        reserve0 = await self.balance_of(token0, pool)
        reserve1 = await self.balance_of(token1, pool)
        return reserve0, reserve1

    async def quote(self, token_in: str, token_out: str, fee: int, amount_in: int) -> int:
        """Quoted output of a concentrated-liquidity swap."""
        data = codec.encode_quote_exact_input_single(token_in, token_out, fee, amount_in)
        return codec.decode_uint(await self.rpc.call(self.quoter, data))
