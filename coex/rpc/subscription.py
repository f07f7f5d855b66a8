"""
New-head subscription over websockets.

Yields block numbers strictly in ascending order. When the node skips ahead
(missed notification, reconnect) the missing numbers are yielded first so the
synchronizer re-scans them instead of assuming continuity.
"""

import asyncio
import json
from typing import AsyncIterator, List, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..exceptions import RPCError
from ..logger import get_logger

logger = get_logger(__name__)


class HeaderSubscription:

    def __init__(self, ws_url: str, last_block: Optional[int] = None, reconnect_delay: float = 3.0):
        self.ws_url = ws_url
        self.last_block = last_block
        self.reconnect_delay = reconnect_delay

    def next_block_numbers(self, head: int) -> List[int]:
        """Block numbers to process after a header for ``head`` arrives."""
        if self.last_block is None:
            self.last_block = head
            return [head]
        if head <= self.last_block:
            # Reorg or duplicate delivery of an already processed height
            logger.debug(f"Ignoring header for block {head}, already at block {self.last_block}")
            return []
        numbers = list(range(self.last_block + 1, head + 1))
        if len(numbers) > 1:
            logger.warning(f"Header gap detected, re-scanning blocks {numbers[0]}..{numbers[-2]}")
        self.last_block = head
        return numbers

    async def _subscribe(self, ws) -> str:
        await ws.send(json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["newHeads"],
        }))
        ack = json.loads(await ws.recv())
        if ack.get("error"):
            error = ack["error"]
            raise RPCError("eth_subscribe", error.get("code", 0), error.get("message", ""))
        return ack["result"]

    async def block_numbers(self) -> AsyncIterator[int]:
        """Yield block numbers for the lifetime of the process, reconnecting on failure."""
        while True:
            try:
                async with connect(self.ws_url) as ws:
                    subscription_id = await self._subscribe(ws)
                    logger.info(f"Subscribed to new heads ({subscription_id})")
                    async for message in ws:
                        notification = json.loads(message)
                        params = notification.get("params") or {}
                        if params.get("subscription") != subscription_id:
                            continue
                        head = int(params["result"]["number"], 16)
                        for number in self.next_block_numbers(head):
                            yield number
            except InvalidURI:
                raise
            except (ConnectionClosed, InvalidHandshake, OSError) as exc:
                logger.warning(f"Header subscription lost: {exc}, reconnecting in {self.reconnect_delay}s")
                await asyncio.sleep(self.reconnect_delay)
