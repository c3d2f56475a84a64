"""Best-effort push of billing events to connected clients.

The transport layer owns the live connections and registers one sender per
user. The billing core only ever calls ``Notifier.publish``, which enqueues the
event and returns immediately; a background thread drains the queue.
"""
from __future__ import annotations

import logging
import queue
import threading
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Sender = Callable[[Dict[str, Any]], None]


class ConnectionRegistry:
    """Concurrency-safe map of user id to the sender of their live connection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._senders: Dict[str, Tuple[str, Sender]] = {}

    def register(self, user_id: str, sender: Sender) -> str:
        """Register a sender, replacing any previous one. Returns a connection token."""
        token = uuid.uuid4().hex
        with self._lock:
            self._senders[user_id] = (token, sender)
        return token

    def unregister(self, user_id: str, token: Optional[str] = None) -> bool:
        with self._lock:
            current = self._senders.get(user_id)
            if current is None:
                return False
            if token is not None and current[0] != token:
                return False
            del self._senders[user_id]
            return True

    def is_connected(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._senders

    def connection_count(self) -> int:
        with self._lock:
            return len(self._senders)

    def notify(self, user_id: str, event: Dict[str, Any]) -> bool:
        with self._lock:
            current = self._senders.get(user_id)
        if current is None:
            return False
        _, sender = current
        sender(event)
        return True


class Notifier:
    """Bounded fire-and-forget queue in front of a ``ConnectionRegistry``."""

    def __init__(self, registry: ConnectionRegistry, max_queue: int = 1000) -> None:
        self.registry = registry
        self._queue: "queue.Queue[Optional[Tuple[str, Dict[str, Any]]]]" = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0

    def publish(self, user_id: str, event: Dict[str, Any]) -> bool:
        if not self.registry.is_connected(user_id):
            return False
        try:
            self._queue.put_nowait((user_id, event))
        except queue.Full:
            self.dropped += 1
            logger.warning("Notification queue full; dropping %s event for %s", event.get("type"), user_id)
            return False
        return True

    def deliver_pending(self) -> int:
        """Drain queued events synchronously. Returns the number delivered."""
        delivered = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            if item is None:
                continue
            if self._deliver(*item):
                delivered += 1

    def _deliver(self, user_id: str, event: Dict[str, Any]) -> bool:
        try:
            return self.registry.notify(user_id, event)
        except Exception as exc:
            logger.warning("Failed to push %s event to %s: %s", event.get("type"), user_id, exc)
            return False

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            self._deliver(*item)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="billing-notifier", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        if self._thread is None:
            return
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            logger.warning("Notification queue full during shutdown; notifier thread left to exit with process")
            return
        self._thread.join(timeout)
        self._thread = None
