"""
Test suite for the AMM simulator

Covers:
  - decimal normalization between tokens of different precision
  - fee-on-transfer adjustment of the input leg
  - constant-product swaps in whole-token units
  - concentrated-liquidity swaps delegated to a quoter
"""

from decimal import Decimal
from fractions import Fraction

import pytest

from coex.exchange.amm import (
    FeeTier,
    SwapResult,
    apply_transfer_tax,
    constant_product_amount_out,
    denormalize_decimals,
    from_token_units,
    normalize_decimals,
    price_of_a_per_b,
    simulate_concentrated_liquidity_swap,
    simulate_constant_product_swap,
    to_token_units,
)

E18 = 10 ** 18
E6 = 10 ** 6


# ============================================================================
#  DECIMALS
# ============================================================================

class TestDecimalNormalization:
    """Reserves of tokens with different decimals."""

    def test_scales_lower_decimal_side_up(self):
        assert normalize_decimals(1_000 * E6, 6, 5 * E18, 18) == (1_000 * E18, 5 * E18)
        assert normalize_decimals(5 * E18, 18, 1_000 * E6, 6) == (5 * E18, 1_000 * E18)

    def test_equal_decimals_unchanged(self):
        assert normalize_decimals(7, 18, 9, 18) == (7, 9)

    @pytest.mark.parametrize("decimals_a,decimals_b", [(18, 18), (6, 18), (18, 6), (0, 24), (8, 18)])
    def test_denormalize_inverts_normalize(self, decimals_a, decimals_b):
        reserve_a, reserve_b = 1_234 * 10 ** decimals_a, 56_789 * 10 ** decimals_b
        normalized = normalize_decimals(reserve_a, decimals_a, reserve_b, decimals_b)
        assert denormalize_decimals(normalized[0], decimals_a, normalized[1], decimals_b) == (reserve_a, reserve_b)

    def test_whole_token_price(self):
        assert price_of_a_per_b(9_000 * E18, 18, 1_000 * E18, 18) == Decimal(9)
        assert price_of_a_per_b(2_000_000 * E6, 6, 1_000 * E18, 18) == Decimal(2000)

    def test_price_with_empty_reserve_is_zero(self):
        assert price_of_a_per_b(10 * E18, 18, 0, 18) == Decimal(0)

    def test_token_unit_conversion_rounds_down(self):
        assert to_token_units(1_500_000, 6) == Fraction(3, 2)
        assert from_token_units(Fraction(1, 3), 6) == 333_333


class TestTransferTax:
    """Inbound tax in 1e5 precision."""

    def test_five_percent(self):
        assert apply_transfer_tax(100_000, 5_000) == 95_000

    def test_rounding_keeps_integer_amounts(self):
        # 1000 * 3333 // 100000 == 33
        assert apply_transfer_tax(1_000, 3_333) == 967

    def test_zero_tax_is_identity(self):
        assert apply_transfer_tax(12_345, 0) == 12_345

    def test_full_tax_leaves_nothing(self):
        assert apply_transfer_tax(12_345, 100_000) == 0
        assert apply_transfer_tax(12_345, 250_000) == 0


# ============================================================================
#  CONSTANT PRODUCT
# ============================================================================

class TestConstantProduct:
    """x * y = k swaps."""

    def test_amount_out_exact(self):
        out = constant_product_amount_out(Fraction(50), Fraction(9_000), Fraction(1_000))
        assert out == Fraction(1_000, 181)

    def test_invariant_holds(self):
        reserve_in, reserve_out, amount_in = Fraction(9_000), Fraction(1_000), Fraction(50)
        out = constant_product_amount_out(amount_in, reserve_in, reserve_out)
        assert (reserve_in + amount_in) * (reserve_out - out) == reserve_in * reserve_out

    def test_degenerate_inputs_return_zero(self):
        assert constant_product_amount_out(Fraction(0), Fraction(1), Fraction(1)) == 0
        assert constant_product_amount_out(Fraction(1), Fraction(0), Fraction(1)) == 0
        assert constant_product_amount_out(Fraction(1), Fraction(1), Fraction(0)) == 0

    def test_simulate_same_decimals(self):
        result = simulate_constant_product_swap(50 * E18, 9_000 * E18, 1_000 * E18)
        assert isinstance(result, SwapResult)
        assert result.amount_out == 1_000 * E18 // 181
        assert result.new_reserve_in == 9_050 * E18
        assert result.new_reserve_out == 1_000 * E18 - result.amount_out

    def test_simulate_mixed_decimals(self):
        # 1000 USDC into a 2,000,000 USDC / 1000 WETH pool
        result = simulate_constant_product_swap(1_000 * E6, 2_000_000 * E6, 1_000 * E18, 6, 18)
        assert result.amount_out == 1_000 * E18 // 2_001
        assert result.new_reserve_in == 2_001_000 * E6

    @pytest.mark.parametrize("amount_in,reserve_in,reserve_out,decimals_in,decimals_out", [
        (50 * E18, 9_000 * E18, 1_000 * E18, 18, 18),
        (7, 1_000_003, 999_983, 18, 18),
        (1_000 * E6, 2_000_000 * E6, 1_000 * E18, 6, 18),
        (3 * E18, 40_000 * E18, 120_000_000 * E6, 18, 6),
        (123_456_789, 10 ** 14, 3 * 10 ** 25, 8, 18),
    ])
    def test_simulated_swap_keeps_product(self, amount_in, reserve_in, reserve_out, decimals_in, decimals_out):
        result = simulate_constant_product_swap(amount_in, reserve_in, reserve_out, decimals_in, decimals_out)
        k = reserve_in * reserve_out
        assert result.new_reserve_in == reserve_in + amount_in
        assert result.new_reserve_in * result.new_reserve_out >= k
        # Output rounds down by less than one smallest unit
        assert result.new_reserve_in * (result.new_reserve_out - 1) < k

    def test_zero_input_leaves_reserves(self):
        result = simulate_constant_product_swap(0, 9_000 * E18, 1_000 * E18)
        assert result == SwapResult(0, 9_000 * E18, 1_000 * E18)

    def test_output_never_exceeds_reserve(self):
        result = simulate_constant_product_swap(10 ** 40, 9_000 * E18, 1_000 * E18)
        assert result.amount_out < 1_000 * E18
        assert result.new_reserve_out > 0


# ============================================================================
#  CONCENTRATED LIQUIDITY
# ============================================================================

@pytest.mark.asyncio
class TestConcentratedLiquidity:
    """Quoter-backed swaps."""

    async def test_quote_is_used_for_output(self):
        calls = []

        async def quote(token_in, token_out, fee, amount_in):
            calls.append((token_in, token_out, fee, amount_in))
            return amount_in * 2

        result = await simulate_concentrated_liquidity_swap(quote, "A", "B", 3000, 10, 100, 1_000)
        assert result == SwapResult(20, 110, 980)
        assert calls == [("A", "B", 3000, 10)]

    async def test_reserve_out_floors_at_zero(self):
        async def quote(token_in, token_out, fee, amount_in):
            return 5_000

        result = await simulate_concentrated_liquidity_swap(quote, "A", "B", 500, 10, 100, 1_000)
        assert result.new_reserve_out == 0

    async def test_zero_input_skips_quote(self):
        async def quote(*args):
            raise AssertionError("quoter must not be called")

        result = await simulate_concentrated_liquidity_swap(quote, "A", "B", 500, 0, 100, 1_000)
        assert result == SwapResult(0, 100, 1_000)


class TestFeeTier:

    def test_rates(self):
        assert FeeTier.LOW.rate == Decimal("0.0005")
        assert FeeTier.MEDIUM.rate == Decimal("0.003")
        assert int(FeeTier.HIGH) == 10000
