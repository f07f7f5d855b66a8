"""
Coex AMM Simulator

Side-effect-free swap math used to predict execution outcomes without a
network round trip:
  - Decimal normalization between tokens of different precision
  - Fee-on-transfer (taxed token) adjustment of the input leg
  - Constant-product (Uniswap V2 model) swap, computed exactly in whole-token
    units and re-scaled to the smallest on-chain unit
  - Concentrated-liquidity (Uniswap V3 model) swap, delegated to the remote
    quoter because output depends on the live tick distribution

All functions are deterministic: the same inputs always produce the same
outputs, and reserves are returned in the order they were given.
"""

from __future__ import annotations

import logging
from decimal import Decimal, getcontext
from enum import IntEnum
from fractions import Fraction
from typing import Awaitable, Callable, NamedTuple, Tuple

from ..constants import TAX_PRECISION

# Whole-token prices of 18-decimal tokens need more than the default 28 digits
getcontext().prec = 78

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# (token_in, token_out, fee, amount_in) → quoted amount_out
QuoteFn = Callable[[str, str, int, int], Awaitable[int]]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FeeTier(IntEnum):
    """Concentrated-liquidity fee tiers in hundredths of a basis point."""
    LOWEST = 100         # 0.01 %
    LOW = 500            # 0.05 %
    MEDIUM = 3000        # 0.30 %
    HIGH = 10000         # 1.00 %

    @property
    def rate(self) -> Decimal:
        return Decimal(int(self)) / Decimal("1000000")


class SwapResult(NamedTuple):
    amount_out: int
    new_reserve_in: int
    new_reserve_out: int


# ---------------------------------------------------------------------------
# Decimals and tax
# ---------------------------------------------------------------------------

def normalize_decimals(reserve_a: int, decimals_a: int, reserve_b: int, decimals_b: int) -> Tuple[int, int]:
    """
    Express both reserves in the finer of the two units by scaling the
    lower-decimal reserve up by ``10 ** |decimals_a - decimals_b|``.

    Only used for price and quantity comparisons, never for swap outputs.
    """
    if decimals_a > decimals_b:
        return reserve_a, reserve_b * 10 ** (decimals_a - decimals_b)
    if decimals_b > decimals_a:
        return reserve_a * 10 ** (decimals_b - decimals_a), reserve_b
    return reserve_a, reserve_b


def denormalize_decimals(reserve_a: int, decimals_a: int, reserve_b: int, decimals_b: int) -> Tuple[int, int]:
    """Inverse of ``normalize_decimals``."""
    if decimals_a > decimals_b:
        return reserve_a, reserve_b // 10 ** (decimals_a - decimals_b)
    if decimals_b > decimals_a:
        return reserve_a // 10 ** (decimals_b - decimals_a), reserve_b
    return reserve_a, reserve_b


def apply_transfer_tax(amount: int, tax: int) -> int:
    """
    Amount that arrives after a fee-on-transfer token takes its cut.

    ``tax`` is the router's inbound tax in 1e5 precision, so the amount is
    scaled by ``(100000 - tax) / 100000``.
    """
    if tax <= 0:
        return amount
    if tax >= TAX_PRECISION:
        return 0
    return amount - amount * tax // TAX_PRECISION


def price_of_a_per_b(reserve_a: int, decimals_a: int, reserve_b: int, decimals_b: int) -> Decimal:
    """Whole-token price of A denominated in B (A units per one B)."""
    normalized_a, normalized_b = normalize_decimals(reserve_a, decimals_a, reserve_b, decimals_b)
    if normalized_b == 0:
        return ZERO
    return Decimal(normalized_a) / Decimal(normalized_b)


# ---------------------------------------------------------------------------
# Constant product
# ---------------------------------------------------------------------------

def to_token_units(amount: int, decimals: int) -> Fraction:
    return Fraction(amount, 10 ** decimals)


def from_token_units(tokens: Fraction, decimals: int) -> int:
    """Re-scale whole tokens to the smallest unit, rounding down."""
    return (tokens.numerator * 10 ** decimals) // tokens.denominator


def constant_product_amount_out(amount_in: Fraction, reserve_in: Fraction, reserve_out: Fraction) -> Fraction:
    """
    Exact output of a constant-product swap in whole-token units.

    ``reserve_in * reserve_out == (reserve_in + amount_in) * (reserve_out - result)``
    """
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return Fraction(0)
    k = reserve_in * reserve_out
    return reserve_out - k / (reserve_in + amount_in)


def simulate_constant_product_swap(
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
    decimals_in: int = 18,
    decimals_out: int = 18,
) -> SwapResult:
    """
    Simulate a swap against a constant-product pool.

    Args:
        amount_in: input amount in the smallest unit of the input token
        reserve_in: pool reserve of the input token, smallest unit
        reserve_out: pool reserve of the output token, smallest unit
        decimals_in: input token decimals
        decimals_out: output token decimals

    Returns:
        SwapResult(amount_out, new_reserve_in, new_reserve_out), all in the
        smallest on-chain unit
    """
    out_tokens = constant_product_amount_out(
        to_token_units(amount_in, decimals_in),
        to_token_units(reserve_in, decimals_in),
        to_token_units(reserve_out, decimals_out),
    )
    amount_out = from_token_units(out_tokens, decimals_out)
    return SwapResult(amount_out, reserve_in + amount_in, reserve_out - amount_out)


# ---------------------------------------------------------------------------
# Concentrated liquidity
# ---------------------------------------------------------------------------

async def simulate_concentrated_liquidity_swap(
    quote: QuoteFn,
    token_in: str,
    token_out: str,
    fee: int,
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
) -> SwapResult:
    """
    Quote a concentrated-liquidity swap remotely.

    The returned reserves are optimistic linear deltas kept for bookkeeping
    so later orders in a batch see some price impact; they are not used to
    price the next quote.
    """
    if amount_in <= 0:
        return SwapResult(0, reserve_in, reserve_out)
    amount_out = await quote(token_in, token_out, fee, amount_in)
    return SwapResult(amount_out, reserve_in + amount_in, max(reserve_out - amount_out, 0))
