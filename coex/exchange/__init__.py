"""
Coex exchange core: order book, pool/market cache, AMM simulator, batching
engine, execution dispatcher and the block synchronizer that drives them.
"""

# Order book
from .orderbook import (
    GasCreditLedger,
    Order,
    OrderBook,
    OrderSide,
)

# AMM simulator
from .amm import (
    FeeTier,
    SwapResult,
    apply_transfer_tax,
    denormalize_decimals,
    normalize_decimals,
    simulate_concentrated_liquidity_swap,
    simulate_constant_product_swap,
)

# Markets
from .venues import Dex, VenueKind, VenueReader
from .markets import MarketCache, Pool

# Matching and execution
from .batching import BatchingEngine, OrderGroup
from .dispatcher import ExecutionDispatcher, PendingExecutionSet, PendingTransactionMonitor
from .block_processor import BlockSynchronizer
from .maintenance import OrderMaintenance

__all__ = [
    # Order book
    "GasCreditLedger",
    "Order",
    "OrderBook",
    "OrderSide",
    # AMM
    "FeeTier",
    "SwapResult",
    "apply_transfer_tax",
    "denormalize_decimals",
    "normalize_decimals",
    "simulate_concentrated_liquidity_swap",
    "simulate_constant_product_swap",
    # Markets
    "Dex",
    "VenueKind",
    "VenueReader",
    "MarketCache",
    "Pool",
    # Matching and execution
    "BatchingEngine",
    "OrderGroup",
    "ExecutionDispatcher",
    "PendingExecutionSet",
    "PendingTransactionMonitor",
    "BlockSynchronizer",
    "OrderMaintenance",
]
