"""
Event topics and function selectors for the contracts the executor talks to.
"""

from eth_utils import event_signature_to_log_topic, function_signature_to_4byte_selector

# ---------------------------------------------------------------------------
# Limit-order router events
# ---------------------------------------------------------------------------
ORDER_PLACED = event_signature_to_log_topic("OrderPlaced(bytes32[])")
ORDER_CANCELLED = event_signature_to_log_topic("OrderCancelled(bytes32[])")
ORDER_UPDATED = event_signature_to_log_topic("OrderUpdated(bytes32[])")
ORDER_FILLED = event_signature_to_log_topic("OrderFilled(bytes32[])")
ORDER_REFRESHED = event_signature_to_log_topic("OrderRefreshed(bytes32,uint32,uint32)")
GAS_CREDIT = event_signature_to_log_topic("GasCreditEvent(address,uint256)")

ROUTER_TOPICS = (
    ORDER_PLACED,
    ORDER_CANCELLED,
    ORDER_UPDATED,
    ORDER_FILLED,
    ORDER_REFRESHED,
    GAS_CREDIT,
)

# ---------------------------------------------------------------------------
# Liquidity venue events
# ---------------------------------------------------------------------------
V2_SYNC = event_signature_to_log_topic("Sync(uint112,uint112)")
V3_SWAP = event_signature_to_log_topic("Swap(address,address,int256,int256,uint160,uint128,int24)")

VENUE_TOPICS = (V2_SYNC, V3_SWAP)


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


# ---------------------------------------------------------------------------
# Function selectors
# ---------------------------------------------------------------------------
GET_ORDER_BY_ID = selector("getOrderById(bytes32)")
EXECUTE_ORDER_GROUPS = selector("executeOrderGroups(bytes32[][])")
REFRESH_ORDER = selector("refreshOrder(bytes32[])")
VALIDATE_AND_CANCEL_ORDER = selector("validateAndCancelOrder(bytes32)")

DEXES = selector("dexes(uint256)")

GET_PAIR = selector("getPair(address,address)")
GET_RESERVES = selector("getReserves()")
GET_POOL = selector("getPool(address,address,uint24)")
TOKEN0 = selector("token0()")

DECIMALS = selector("decimals()")
BALANCE_OF = selector("balanceOf(address)")

QUOTE_EXACT_INPUT_SINGLE = selector("quoteExactInputSingle(address,address,uint24,uint256,uint160)")
