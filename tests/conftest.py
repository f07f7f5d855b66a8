"""
Shared helpers for the test suite
"""

from eth_abi import encode

from coex.abi.codec import ORDER_TUPLE
from coex.exchange.orderbook import Order


def encode_order_record(order: Order) -> bytes:
    """Router ``getOrderById`` result for ``order``, price in 64.64 fixed point."""
    return encode([ORDER_TUPLE], [(
        order.buy, order.taxed, order.stop_loss, order.last_refresh_timestamp,
        order.expiration_timestamp, order.fee_in, order.fee_out, order.tax_in,
        int(order.price * 2 ** 64), order.amount_out_min, order.quantity,
        order.execution_credit, order.owner, order.token_in, order.token_out,
        order.order_id,
    )])
