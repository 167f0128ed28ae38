# stringing_tracker/live.py

import asyncio
import logging
import threading
from collections import defaultdict

logger = logging.getLogger(__name__)


class OrderStatusBroadcaster:
    """
    Fans progress messages out to live subscribers of an order.

    Each subscriber owns an asyncio queue bound to the event loop it was created
    on; publishers may run on any loop or thread.
    """

    def __init__(self):
        self._subscribers: dict[str, set[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, order_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers[order_id].add((asyncio.get_running_loop(), queue))
        logger.info(f"Live subscriber added for Order ID {order_id}.")
        return queue

    def unsubscribe(self, order_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            entries = self._subscribers.get(order_id, set())
            for entry in list(entries):
                if entry[1] is queue:
                    entries.discard(entry)
            if not entries:
                self._subscribers.pop(order_id, None)
        logger.info(f"Live subscriber removed for Order ID {order_id}.")

    def publish(self, order_id: str, message: dict) -> int:
        """Queue ``message`` for every subscriber of ``order_id``; returns how many were reached."""
        with self._lock:
            entries = list(self._subscribers.get(order_id, ()))
        delivered = 0
        for loop, queue in entries:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(queue.put_nowait, message)
            delivered += 1
        return delivered


broadcaster = OrderStatusBroadcaster()
