"""Background sweep that settles and removes sessions whose heartbeat went silent."""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Optional

from .fast_ledger import FastLedger
from .sessions import SessionManager, parse_iso8601, utcnow
from .settlement import SettlementResult

logger = logging.getLogger(__name__)


class StalenessReaper:
    def __init__(
        self,
        fast_ledger: FastLedger,
        sessions: SessionManager,
        *,
        heartbeat_timeout_seconds: int = 120,
        interval_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow,
        on_reclaimed: Optional[Callable[[str, SettlementResult], None]] = None,
    ) -> None:
        self.fast_ledger = fast_ledger
        self.sessions = sessions
        self.heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.on_reclaimed = on_reclaimed
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _last_seen(self, user_id: str) -> Optional[datetime]:
        raw = self.fast_ledger.get_heartbeat(user_id)
        if raw:
            try:
                return parse_iso8601(raw)
            except ValueError:
                logger.debug("Ignoring malformed heartbeat for %s: %r", user_id, raw)
        session = self.sessions.get_session(user_id)
        if session is None:
            return None
        return session.last_heartbeat_at or session.start_time

    def sweep_once(self) -> Dict[str, SettlementResult]:
        """Run a single pass over all active sessions. Returns the reclaimed ones."""
        reclaimed: Dict[str, SettlementResult] = {}
        users = self.fast_ledger.active_users()
        if users:
            logger.debug("Checking %s active sessions for staleness", len(users))

        for user_id in users:
            try:
                last_seen = self._last_seen(user_id)
                if last_seen is None:
                    self.fast_ledger.remove_active(user_id)
                    continue
                silent_for = (self.clock() - last_seen).total_seconds()
                if silent_for <= self.heartbeat_timeout_seconds:
                    continue
                result = self.sessions.end_session(user_id, ended_at=last_seen)
                if result is None:
                    continue
                reclaimed[user_id] = result
                logger.info(
                    "Reclaimed stale session for %s (silent %.0fs): amount=%s watch_time=%s success=%s",
                    user_id,
                    silent_for,
                    result.amount_settled,
                    result.watch_time_settled,
                    result.success,
                )
                if self.on_reclaimed is not None:
                    self.on_reclaimed(user_id, result)
            except Exception as exc:  # pragma: no cover
                logger.exception("Stale session check failed for %s: %s", user_id, exc)

        for user_id in self.fast_ledger.unsettled():
            try:
                if self.fast_ledger.get_session(user_id) is not None:
                    # A new session retries this itself before it starts accruing.
                    continue
                for result in self.sessions.retry_unsettled(user_id):
                    if result.success:
                        logger.info("Settled earlier failed settlement for %s/%s", user_id, result.creator_id)
            except Exception as exc:  # pragma: no cover
                logger.exception("Settlement retry failed for %s: %s", user_id, exc)

        return reclaimed

    def run_forever(self) -> None:
        """Blocking loop that sweeps every configured interval until stopped."""
        logger.info("Starting staleness reaper with interval %s seconds", self.interval_seconds)
        while not self._stop.is_set():
            start = time.monotonic()
            try:
                self.sweep_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Unexpected error in staleness sweep: %s", exc)
            elapsed = time.monotonic() - start
            self._stop.wait(max(self.interval_seconds - elapsed, 0))
        logger.info("Staleness reaper stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="billing-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
