"""Cancellable periodic settlement timers, one per live watch session."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


class _SessionTimer:
    def __init__(self, user_id: str, interval: float, callback: Callable[[str], None]) -> None:
        self.user_id = user_id
        self.interval = interval
        self.callback = callback
        self._wake = threading.Event()
        self._cancelled = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"billing-settle-{user_id}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def trigger(self) -> None:
        self._wake.set()

    def cancel(self) -> None:
        self._cancelled.set()
        self._wake.set()

    @property
    def alive(self) -> bool:
        return self._thread.is_alive() and not self._cancelled.is_set()

    def _run(self) -> None:
        while not self._cancelled.is_set():
            self._wake.wait(self.interval)
            if self._cancelled.is_set():
                return
            self._wake.clear()
            try:
                self.callback(self.user_id)
            except Exception as exc:  # pragma: no cover
                logger.exception("Periodic settlement failed for %s: %s", self.user_id, exc)


class SettlementScheduler:
    def __init__(self, interval_seconds: float, callback: Callable[[str], None]) -> None:
        self.interval_seconds = interval_seconds
        self.callback = callback
        self._lock = threading.Lock()
        self._timers: Dict[str, _SessionTimer] = {}

    def schedule(self, user_id: str) -> None:
        """(Re)start the periodic settlement timer for a user's session."""
        timer = _SessionTimer(user_id, self.interval_seconds, self.callback)
        with self._lock:
            previous = self._timers.pop(user_id, None)
            self._timers[user_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def trigger(self, user_id: str) -> bool:
        """Run the user's settlement now, off the caller's thread."""
        with self._lock:
            timer = self._timers.get(user_id)
        if timer is None or not timer.alive:
            return False
        timer.trigger()
        return True

    def cancel(self, user_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(user_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def scheduled(self) -> List[str]:
        with self._lock:
            return sorted(user_id for user_id, timer in self._timers.items() if timer.alive)
