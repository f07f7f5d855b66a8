"""
Contract codec for the limit-order router, swap router, constant-product and
concentrated-liquidity venues, ERC-20 tokens and the V3 quoter.
"""

from . import codec, topics
from .codec import DexInfo, V3SwapData, parse_order_ids

__all__ = ["codec", "topics", "DexInfo", "V3SwapData", "parse_order_ids"]
