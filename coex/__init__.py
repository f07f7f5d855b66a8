"""
Coex Limit-Order Executor

Watches the chain for order lifecycle and pool reserve events, keeps an
in-memory replica of active orders and pool reserves, and submits batches of
orders that are executable at the current price.

Core imports are lazily loaded so that importing a submodule does not pull in
the transport stack:

    from coex.exchange.orderbook import OrderBook
    from coex.config import load_config
"""

__version__ = "0.4.0"


# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading."""
    if name == 'OrderBook':
        from .exchange.orderbook import OrderBook
        return OrderBook
    elif name == 'MarketCache':
        from .exchange.markets import MarketCache
        return MarketCache
    elif name == 'load_config':
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'coex' has no attribute {name!r}")

__all__ = ['OrderBook', 'MarketCache', 'load_config']
