"""
Coex Order Book  (active limit orders replicated from the router)

In-memory replica of every active order on the limit-order router:
  - order id → Order record, upserted from placed / updated / refreshed events
  - token → order ids reverse index, covering both legs of every order, so a
    price change on one token resolves to the orders it can make executable
  - gas-credit ledger, owner address → last reported absolute balance

Only the chain-event synchronizer mutates the book. Every accessor takes the
book's lock and returns copies, so the matching engine works on snapshots and
never holds a reference into the live maps.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from eth_utils import encode_hex

from ..constants import ZERO_ADDRESS

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

RouteKey = Tuple[str, str, int]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class Order:
    """A limit order as stored on the router."""
    order_id: bytes
    side: OrderSide
    token_in: str
    token_out: str
    quantity: int               # amount of token_in, smallest unit
    amount_out_min: int         # minimum acceptable token_out, smallest unit
    price: Decimal              # limit price, token_in per token_out
    fee_in: int = 0             # fee tier of the token_in/WETH pool
    fee_out: int = 0            # fee tier of the WETH/token_out pool
    taxed: bool = False
    tax_in: int = 0             # inbound transfer tax, 1e5 precision
    last_refresh_timestamp: int = 0
    expiration_timestamp: int = 0
    stop_loss: bool = False
    execution_credit: int = 0
    owner: str = ZERO_ADDRESS

    @property
    def buy(self) -> bool:
        return self.side == OrderSide.BUY

    @property
    def hex_id(self) -> str:
        return encode_hex(self.order_id)

    @property
    def route_key(self) -> RouteKey:
        return (self.token_in, self.token_out, self.fee_in)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expiration_timestamp <= 0:
            return False
        now = time.time() if now is None else now
        return now > self.expiration_timestamp

    def needs_refresh(self, refresh_interval: int, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.last_refresh_timestamp >= refresh_interval


# ---------------------------------------------------------------------------
# Order Book
# ---------------------------------------------------------------------------

class OrderBook:
    """
    Active orders keyed by id, with a token → order ids reverse index.

    All reads return copies; the internal maps never leave this class.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._orders: Dict[bytes, Order] = {}
        self._by_token: Dict[str, Set[bytes]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)

    def __contains__(self, order_id: bytes) -> bool:
        with self._lock:
            return order_id in self._orders

    # -- index maintenance -------------------------------------------------

    def _index(self, order: Order) -> None:
        for token in (order.token_in, order.token_out):
            self._by_token.setdefault(token, set()).add(order.order_id)

    def _unindex(self, order: Order) -> None:
        for token in (order.token_in, order.token_out):
            ids = self._by_token.get(token)
            if ids is None:
                continue
            ids.discard(order.order_id)
            if not ids:
                del self._by_token[token]

    # -- mutation ----------------------------------------------------------

    def upsert_orders(self, orders: Iterable[Order]) -> int:
        """Insert or overwrite orders. Returns the number written."""
        count = 0
        with self._lock:
            for order in orders:
                previous = self._orders.get(order.order_id)
                if previous is not None:
                    self._unindex(previous)
                stored = replace(order)
                self._orders[order.order_id] = stored
                self._index(stored)
                count += 1
        return count

    def remove_orders(self, order_ids: Iterable[bytes]) -> List[Order]:
        """Remove orders by id, ignoring unknown ids. Returns the removed orders."""
        removed = []
        with self._lock:
            for order_id in order_ids:
                order = self._orders.pop(order_id, None)
                if order is None:
                    continue
                self._unindex(order)
                removed.append(order)
        if removed:
            logger.debug("Removed %d order(s) from the book", len(removed))
        return removed

    # -- queries -----------------------------------------------------------

    def get_order(self, order_id: bytes) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order is not None else None

    def get_orders(self, order_ids: Iterable[bytes]) -> List[Order]:
        """Snapshot of the given ids, skipping ids no longer in the book."""
        with self._lock:
            return [replace(self._orders[i]) for i in order_ids if i in self._orders]

    def order_ids_affected_by(self, token: str) -> Set[bytes]:
        with self._lock:
            return set(self._by_token.get(token, ()))

    def all_orders(self) -> List[Order]:
        with self._lock:
            return [replace(o) for o in self._orders.values()]


# ---------------------------------------------------------------------------
# Gas-credit ledger
# ---------------------------------------------------------------------------

class GasCreditLedger:
    """
    Owner address → gas-credit balance.

    Events report the owner's absolute balance after the change, so updates
    overwrite (last write wins) and replaying history is idempotent.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._balances: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._balances)

    def set_balance(self, address: str, balance: int) -> None:
        with self._lock:
            self._balances[address] = balance

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self._balances.get(address, 0)

    def has_credit(self, address: str) -> bool:
        return self.balance_of(address) > 0
