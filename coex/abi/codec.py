"""
Typed ABI codec.

Every call payload the executor sends and every event or call result it
reads passes through this module. Decoders return plain Python values or
``Order`` records and raise ``DecodeError`` on any shape mismatch, so the
rest of the pipeline never inspects raw bytes.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from ..constants import Q64, WORD_SIZE
from ..exceptions import DecodeError
from . import topics as sig
from ..exchange.orderbook import Order, OrderSide

# buy, taxed, stopLoss, lastRefreshTimestamp, expirationTimestamp, feeIn,
# feeOut, taxIn, price, amountOutMin, quantity, executionCredit, owner,
# tokenIn, tokenOut, orderId
ORDER_TUPLE = "(bool,bool,bool,uint32,uint32,uint24,uint24,uint16,uint128,uint128,uint128,uint128,address,address,address,bytes32)"


@dataclass(frozen=True)
class V3SwapData:
    amount0: int
    amount1: int
    sqrt_price_x96: int
    liquidity: int
    tick: int


@dataclass(frozen=True)
class DexInfo:
    factory: str
    init_bytecode: bytes
    is_uni_v2: bool


def _decode(types: Sequence[str], data: bytes, what: str) -> Tuple:
    try:
        return decode(list(types), data)
    except (DecodingError, ValueError, TypeError) as exc:
        raise DecodeError(f"Cannot decode {what}: {exc}") from exc


def _call(selector: bytes, types: Sequence[str] = (), args: Sequence = ()) -> bytes:
    return selector + (encode(list(types), list(args)) if types else b"")


def price_from_fixed(raw: int) -> Decimal:
    """Unsigned 64.64 fixed point → Decimal."""
    return Decimal(raw) / Decimal(Q64)


# ---------------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------------

def parse_order_ids(data: bytes) -> List[bytes]:
    """
    Order ids from a ``bytes32[]`` event payload.

    The first word is the array offset, the second the length, followed by
    one 32-byte id per entry.
    """
    if len(data) < 2 * WORD_SIZE:
        raise DecodeError(f"Order id payload too short ({len(data)} bytes)")
    length = int.from_bytes(data[WORD_SIZE:2 * WORD_SIZE], "big")
    end = 2 * WORD_SIZE + WORD_SIZE * length
    if len(data) < end:
        raise DecodeError(f"Order id payload declares {length} ids but holds {(len(data) - 64) // 32}")
    return [data[start:start + WORD_SIZE] for start in range(2 * WORD_SIZE, end, WORD_SIZE)]


def decode_gas_credit(topics: Sequence[bytes]) -> Tuple[str, int]:
    """(owner, absolute balance) from an indexed gas-credit event."""
    if len(topics) < 3 or any(len(t) != WORD_SIZE for t in topics[1:3]):
        raise DecodeError("Gas credit event needs two indexed words")
    address = to_checksum_address(topics[1][-20:])
    return address, int.from_bytes(topics[2], "big")


def decode_order_refreshed(topics: Sequence[bytes]) -> Tuple[bytes, int, int]:
    """(order id, last refresh timestamp, expiration timestamp)."""
    if len(topics) < 4:
        raise DecodeError("OrderRefreshed event needs three indexed words")
    return topics[1], int.from_bytes(topics[2], "big"), int.from_bytes(topics[3], "big")


def decode_sync(data: bytes) -> Tuple[int, int]:
    """(reserve0, reserve1) from a constant-product Sync event."""
    return _decode(("uint112", "uint112"), data, "Sync event")


def decode_v3_swap(data: bytes) -> V3SwapData:
    amount0, amount1, sqrt_price_x96, liquidity, tick = _decode(
        ("int256", "int256", "uint160", "uint128", "int24"), data, "Swap event"
    )
    return V3SwapData(amount0, amount1, sqrt_price_x96, liquidity, tick)


# ---------------------------------------------------------------------------
# Limit-order router
# ---------------------------------------------------------------------------

def encode_get_order_by_id(order_id: bytes) -> bytes:
    return _call(sig.GET_ORDER_BY_ID, ("bytes32",), (order_id,))


def decode_order(result: bytes) -> Order:
    """
    Decode a ``getOrderById`` result.

    Raises:
        DecodeError: malformed result, or the order no longer exists on the
            router (zero owner)
    """
    (fields,) = _decode((ORDER_TUPLE,), result, "order record")
    (
        buy, taxed, stop_loss, last_refresh, expiration, fee_in, fee_out, tax_in,
        price, amount_out_min, quantity, execution_credit, owner, token_in,
        token_out, order_id,
    ) = fields
    if int(owner, 16) == 0:
        raise DecodeError(f"Order 0x{order_id.hex()} does not exist")
    return Order(
        order_id=order_id,
        side=OrderSide.BUY if buy else OrderSide.SELL,
        token_in=to_checksum_address(token_in),
        token_out=to_checksum_address(token_out),
        quantity=quantity,
        amount_out_min=amount_out_min,
        price=price_from_fixed(price),
        fee_in=fee_in,
        fee_out=fee_out,
        taxed=taxed,
        tax_in=tax_in,
        last_refresh_timestamp=last_refresh,
        expiration_timestamp=expiration,
        stop_loss=stop_loss,
        execution_credit=execution_credit,
        owner=to_checksum_address(owner),
    )


def encode_execute_order_groups(groups: Sequence[Sequence[bytes]]) -> bytes:
    return _call(sig.EXECUTE_ORDER_GROUPS, ("bytes32[][]",), ([list(g) for g in groups],))


def encode_refresh_order(order_ids: Sequence[bytes]) -> bytes:
    return _call(sig.REFRESH_ORDER, ("bytes32[]",), (list(order_ids),))


def encode_validate_and_cancel_order(order_id: bytes) -> bytes:
    return _call(sig.VALIDATE_AND_CANCEL_ORDER, ("bytes32",), (order_id,))


# ---------------------------------------------------------------------------
# Swap router / venues
# ---------------------------------------------------------------------------

def encode_dexes(index: int) -> bytes:
    return _call(sig.DEXES, ("uint256",), (index,))


def decode_dex(result: bytes) -> DexInfo:
    factory, init_bytecode, is_uni_v2 = _decode(("address", "bytes32", "bool"), result, "dex entry")
    return DexInfo(to_checksum_address(factory), init_bytecode, is_uni_v2)


def encode_get_pair(token_a: str, token_b: str) -> bytes:
    return _call(sig.GET_PAIR, ("address", "address"), (token_a, token_b))


def encode_get_pool(token_a: str, token_b: str, fee: int) -> bytes:
    return _call(sig.GET_POOL, ("address", "address", "uint24"), (token_a, token_b, fee))


def encode_get_reserves() -> bytes:
    return _call(sig.GET_RESERVES)


def decode_get_reserves(result: bytes) -> Tuple[int, int]:
    reserve0, reserve1, _ = _decode(("uint112", "uint112", "uint32"), result, "getReserves result")
    return reserve0, reserve1


def encode_token0() -> bytes:
    return _call(sig.TOKEN0)


def encode_decimals() -> bytes:
    return _call(sig.DECIMALS)


def encode_balance_of(owner: str) -> bytes:
    return _call(sig.BALANCE_OF, ("address",), (owner,))


def encode_quote_exact_input_single(token_in: str, token_out: str, fee: int, amount_in: int) -> bytes:
    return _call(
        sig.QUOTE_EXACT_INPUT_SINGLE,
        ("address", "address", "uint24", "uint256", "uint160"),
        (token_in, token_out, fee, amount_in, 0),
    )


# ---------------------------------------------------------------------------
# Scalar results
# ---------------------------------------------------------------------------

def decode_address(result: bytes) -> str:
    (address,) = _decode(("address",), result, "address result")
    return to_checksum_address(address)


def decode_uint(result: bytes) -> int:
    (value,) = _decode(("uint256",), result, "uint result")
    return value
