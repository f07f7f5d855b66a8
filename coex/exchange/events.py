"""
Closed set of chain events the synchronizer reacts to.

Logs are classified by topic and decoded into one typed variant each. The
variant → handler table is checked for completeness at import time, so adding
an event kind without wiring a decoder and a handler fails immediately.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple, Type, Union

from ..abi import codec, topics
from ..exceptions import DecodeError
from ..rpc.client import LogEntry


class EventKind(str, Enum):
    ORDER_PLACED = "order_placed"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_UPDATED = "order_updated"
    ORDER_REFRESHED = "order_refreshed"
    ORDER_FILLED = "order_filled"
    GAS_CREDIT = "gas_credit"
    RESERVE_SYNC_V2 = "reserve_sync_v2"
    RESERVE_SYNC_V3 = "reserve_sync_v3"

    @property
    def is_router_event(self) -> bool:
        return self not in (EventKind.RESERVE_SYNC_V2, EventKind.RESERVE_SYNC_V3)


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrderPlaced:
    order_ids: Tuple[bytes, ...]
    block_number: int = 0


@dataclass(frozen=True)
class OrderCancelled:
    order_ids: Tuple[bytes, ...]
    block_number: int = 0


@dataclass(frozen=True)
class OrderUpdated:
    order_ids: Tuple[bytes, ...]
    block_number: int = 0


@dataclass(frozen=True)
class OrderFilled:
    order_ids: Tuple[bytes, ...]
    block_number: int = 0


@dataclass(frozen=True)
class OrderRefreshed:
    order_id: bytes
    last_refresh_timestamp: int
    expiration_timestamp: int
    block_number: int = 0


@dataclass(frozen=True)
class GasCredit:
    owner: str
    balance: int
    block_number: int = 0


@dataclass(frozen=True)
class ReserveSyncV2:
    pool: str
    reserve0: int
    reserve1: int
    block_number: int = 0


@dataclass(frozen=True)
class ReserveSyncV3:
    pool: str
    liquidity: int
    sqrt_price_x96: int
    block_number: int = 0


ChainEvent = Union[
    OrderPlaced, OrderCancelled, OrderUpdated, OrderFilled,
    OrderRefreshed, GasCredit, ReserveSyncV2, ReserveSyncV3,
]

EVENT_TYPES: Dict[EventKind, Type] = {
    EventKind.ORDER_PLACED: OrderPlaced,
    EventKind.ORDER_CANCELLED: OrderCancelled,
    EventKind.ORDER_UPDATED: OrderUpdated,
    EventKind.ORDER_REFRESHED: OrderRefreshed,
    EventKind.ORDER_FILLED: OrderFilled,
    EventKind.GAS_CREDIT: GasCredit,
    EventKind.RESERVE_SYNC_V2: ReserveSyncV2,
    EventKind.RESERVE_SYNC_V3: ReserveSyncV3,
}

TOPIC_KINDS: Dict[bytes, EventKind] = {
    topics.ORDER_PLACED: EventKind.ORDER_PLACED,
    topics.ORDER_CANCELLED: EventKind.ORDER_CANCELLED,
    topics.ORDER_UPDATED: EventKind.ORDER_UPDATED,
    topics.ORDER_REFRESHED: EventKind.ORDER_REFRESHED,
    topics.ORDER_FILLED: EventKind.ORDER_FILLED,
    topics.GAS_CREDIT: EventKind.GAS_CREDIT,
    topics.V2_SYNC: EventKind.RESERVE_SYNC_V2,
    topics.V3_SWAP: EventKind.RESERVE_SYNC_V3,
}


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _ids(log: LogEntry) -> Tuple[bytes, ...]:
    return tuple(codec.parse_order_ids(log.data))


def _decode_refreshed(log: LogEntry) -> OrderRefreshed:
    order_id, last_refresh, expiration = codec.decode_order_refreshed(log.topics)
    return OrderRefreshed(order_id, last_refresh, expiration, log.block_number)


def _decode_gas_credit(log: LogEntry) -> GasCredit:
    owner, balance = codec.decode_gas_credit(log.topics)
    return GasCredit(owner, balance, log.block_number)


def _decode_sync(log: LogEntry) -> ReserveSyncV2:
    reserve0, reserve1 = codec.decode_sync(log.data)
    return ReserveSyncV2(log.address, reserve0, reserve1, log.block_number)


def _decode_swap(log: LogEntry) -> ReserveSyncV3:
    swap = codec.decode_v3_swap(log.data)
    return ReserveSyncV3(log.address, swap.liquidity, swap.sqrt_price_x96, log.block_number)


DECODERS: Dict[EventKind, Callable[[LogEntry], ChainEvent]] = {
    EventKind.ORDER_PLACED: lambda log: OrderPlaced(_ids(log), log.block_number),
    EventKind.ORDER_CANCELLED: lambda log: OrderCancelled(_ids(log), log.block_number),
    EventKind.ORDER_UPDATED: lambda log: OrderUpdated(_ids(log), log.block_number),
    EventKind.ORDER_FILLED: lambda log: OrderFilled(_ids(log), log.block_number),
    EventKind.ORDER_REFRESHED: _decode_refreshed,
    EventKind.GAS_CREDIT: _decode_gas_credit,
    EventKind.RESERVE_SYNC_V2: _decode_sync,
    EventKind.RESERVE_SYNC_V3: _decode_swap,
}


def classify(log: LogEntry, router: str) -> Optional[EventKind]:
    """
    Event kind of a log, or None when the log is not ours to handle.

    Order-lifecycle topics only count when emitted by the router; reserve
    topics are accepted from any address.
    """
    kind = TOPIC_KINDS.get(log.topic0)
    if kind is None:
        return None
    if kind.is_router_event and log.address != router:
        return None
    return kind


def decode_event(log: LogEntry, kind: Optional[EventKind] = None) -> ChainEvent:
    """
    Decode a log into its typed variant.

    Raises:
        DecodeError: unknown topic or malformed payload
    """
    if kind is None:
        kind = TOPIC_KINDS.get(log.topic0)
        if kind is None:
            raise DecodeError(f"Unknown event topic in log {log.transaction_hash}:{log.log_index}")
    return DECODERS[kind](log)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

HANDLER_METHODS: Dict[Type, str] = {
    OrderPlaced: "on_order_placed",
    OrderCancelled: "on_order_cancelled",
    OrderUpdated: "on_order_updated",
    OrderRefreshed: "on_order_refreshed",
    OrderFilled: "on_order_filled",
    GasCredit: "on_gas_credit",
    ReserveSyncV2: "on_reserve_sync_v2",
    ReserveSyncV3: "on_reserve_sync_v3",
}


class EventHandler(ABC):
    """Receiver for every event variant. Subclasses missing a handler cannot be instantiated."""

    @abstractmethod
    async def on_order_placed(self, event: OrderPlaced) -> None: ...

    @abstractmethod
    async def on_order_cancelled(self, event: OrderCancelled) -> None: ...

    @abstractmethod
    async def on_order_updated(self, event: OrderUpdated) -> None: ...

    @abstractmethod
    async def on_order_refreshed(self, event: OrderRefreshed) -> None: ...

    @abstractmethod
    async def on_order_filled(self, event: OrderFilled) -> None: ...

    @abstractmethod
    async def on_gas_credit(self, event: GasCredit) -> None: ...

    @abstractmethod
    async def on_reserve_sync_v2(self, event: ReserveSyncV2) -> None: ...

    @abstractmethod
    async def on_reserve_sync_v3(self, event: ReserveSyncV3) -> None: ...


def dispatch(event: ChainEvent, handler: EventHandler) -> Awaitable:
    """Route an event to the handler method registered for its variant."""
    method = HANDLER_METHODS[type(event)]
    return getattr(handler, method)(event)


def _check_exhaustive() -> None:
    kinds = set(EventKind)
    if set(EVENT_TYPES) != kinds or set(DECODERS) != kinds or set(TOPIC_KINDS.values()) != kinds:
        raise RuntimeError("Every EventKind needs a topic, a variant and a decoder")
    if set(HANDLER_METHODS) != set(EVENT_TYPES.values()) or set(HANDLER_METHODS.values()) != EventHandler.__abstractmethods__:
        raise RuntimeError("Every event variant needs a handler method")


_check_exhaustive()
