"""Billing core facade used by the HTTP and WebSocket layers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from redis import RedisError

from .admission import AdmissionController, AdmissionResult
from .catalog import VideoCatalog
from .config import BillingSettings
from .fast_ledger import FastLedger, from_micros
from .ledger import DurableLedger
from .notifications import Notifier
from .reaper import StalenessReaper
from .scheduler import SettlementScheduler
from .sessions import HeartbeatResult, SessionManager, SessionResult, WatchSession, utcnow
from .settlement import SettlementEngine, SettlementResult

logger = logging.getLogger(__name__)

ERROR_NO_SESSION = "no active session to settle"


@dataclass
class BillingStatus:
    user_id: str
    pending_deduction: Decimal
    active_session: Optional[WatchSession]
    durable_balance: Decimal
    effective_balance: Decimal

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "pending_deduction": str(self.pending_deduction),
            "active_session": self.active_session.as_dict() if self.active_session else None,
            "durable_balance": str(self.durable_balance),
            "effective_balance": str(self.effective_balance),
        }


def is_billable_segment(segment_name: str, prefix: str = "chunk-", suffix: str = ".m4s") -> bool:
    """Media chunks are billable; init segments and manifests are free."""
    return segment_name.endswith(suffix) and segment_name.startswith(prefix)


def _combine(user_id: str, results: List[SettlementResult]) -> SettlementResult:
    if len(results) == 1:
        return results[0]
    failed = [result for result in results if not result.success]
    return SettlementResult(
        user_id=user_id,
        creator_id=",".join(result.creator_id for result in results),
        amount_settled=sum((result.amount_settled for result in results), Decimal("0")),
        watch_time_settled=sum((result.watch_time_settled for result in results), Decimal("0")),
        success=not failed,
        error=failed[0].error if failed else None,
    )


class BillingService:
    def __init__(
        self,
        settings: BillingSettings,
        fast_ledger: FastLedger,
        ledger: DurableLedger,
        *,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.fast_ledger = fast_ledger
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock

        self.catalog = VideoCatalog(ledger, fast_ledger, settings.video_cache_ttl_seconds)
        self.settlement = SettlementEngine(
            fast_ledger,
            ledger,
            creator_share=settings.creator_share,
            lock_timeout_seconds=settings.settlement_lock_seconds,
            lock_wait_seconds=settings.settlement_lock_wait_seconds,
        )
        self.admission = AdmissionController(
            fast_ledger,
            ledger,
            cost_per_request=settings.cost_per_request,
            notifier=notifier,
        )
        self.sessions = SessionManager(
            fast_ledger,
            self.catalog,
            self.settlement,
            settlement_interval_seconds=settings.settlement_interval_seconds,
            pause_detection_enabled=settings.pause_detection_enabled,
            clock=clock,
        )
        self.scheduler = SettlementScheduler(settings.settlement_interval_seconds, self._periodic_settle)
        self.reaper = StalenessReaper(
            fast_ledger,
            self.sessions,
            heartbeat_timeout_seconds=settings.heartbeat_timeout_seconds,
            interval_seconds=settings.reaper_interval_seconds,
            clock=clock,
            on_reclaimed=lambda user_id, _: self.scheduler.cancel(user_id),
        )

    # Hot path

    def charge_for_request(self, user_id: str, unit_cost: Optional[Decimal] = None) -> AdmissionResult:
        result = self.admission.charge_for_request(user_id, unit_cost)
        if result.admitted:
            self.sessions.increment_request_count(user_id)
        return result

    def is_billable_segment(self, segment_name: str) -> bool:
        return is_billable_segment(
            segment_name,
            prefix=self.settings.billable_segment_prefix,
            suffix=self.settings.billable_segment_suffix,
        )

    # Session lifecycle

    def start_session(self, user_id: str, video_id: str) -> SessionResult:
        result = self.sessions.start_session(user_id, video_id)
        if result.success:
            self.scheduler.schedule(user_id)
        return result

    def ensure_session(self, user_id: str, video_id: str) -> SessionResult:
        """Start a session for ``video_id`` unless one is already running for it."""
        try:
            current = self.sessions.get_session(user_id)
        except RedisError as exc:
            logger.warning("Session lookup failed for %s: %s", user_id, exc)
            current = None
        if current is not None and current.video_id == video_id:
            return SessionResult(success=True, session=current)
        return self.start_session(user_id, video_id)

    def update_heartbeat(
        self,
        user_id: str,
        video_id: str,
        playback_position: Optional[float] = None,
    ) -> HeartbeatResult:
        result = self.sessions.update_heartbeat(user_id, video_id, playback_position)
        if result.started or result.switched:
            if result.success:
                self.scheduler.schedule(user_id)
            else:
                self.scheduler.cancel(user_id)
        elif result.settlement_due and not self.scheduler.trigger(user_id):
            self.scheduler.schedule(user_id)
            self.scheduler.trigger(user_id)
        return result

    def end_session(self, user_id: str, ended_at: Optional[datetime] = None) -> Optional[SettlementResult]:
        self.scheduler.cancel(user_id)
        return self.sessions.end_session(user_id, ended_at=ended_at)

    def _periodic_settle(self, user_id: str) -> Optional[SettlementResult]:
        result = self.sessions.settle_session(user_id)
        if result is None:
            self.scheduler.cancel(user_id)
            return None
        if not result.success:
            logger.warning("Periodic settlement for %s failed: %s", user_id, result.error)
        elif not result.is_empty:
            logger.info(
                "Periodic settlement for %s: amount=%s watch_time=%s",
                user_id,
                result.amount_settled,
                result.watch_time_settled,
            )
            if self.notifier is not None:
                self.notifier.publish(user_id, {"type": "settlement_complete", "data": result.as_dict()})
        return result

    # Diagnostics

    def get_billing_status(self, user_id: str) -> Optional[BillingStatus]:
        balance = self.ledger.read_balance(user_id)
        if balance is None:
            return None
        pending = from_micros(self.fast_ledger.get_pending(user_id))
        return BillingStatus(
            user_id=user_id,
            pending_deduction=pending,
            active_session=self.sessions.get_session(user_id),
            durable_balance=balance,
            effective_balance=balance - pending,
        )

    def force_settle(self, user_id: str) -> SettlementResult:
        """Settle whatever the user owes: the live session, earlier failures, then any bare charges."""
        result = self.sessions.settle_session(user_id)
        if result is not None:
            return result
        retried = self.sessions.retry_unsettled(user_id)
        if retried:
            return _combine(user_id, retried)
        if self.fast_ledger.get_pending(user_id) > 0:
            logger.warning("Settling pending charges for %s outside any session", user_id)
            return self.settlement.settle(user_id, "")
        return SettlementResult(
            user_id=user_id,
            creator_id="",
            amount_settled=Decimal("0"),
            watch_time_settled=Decimal("0"),
            success=False,
            error=ERROR_NO_SESSION,
        )

    def active_sessions(self) -> List[str]:
        return self.fast_ledger.active_users()

    def settlements_for_user(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        return self.ledger.settlements_for_user(user_id, limit=limit)

    # Background work

    def start_background(self) -> None:
        if self.notifier is not None:
            self.notifier.start()
        self.reaper.start()

    def shutdown(self) -> None:
        self.reaper.stop()
        self.scheduler.cancel_all()
        if self.notifier is not None:
            self.notifier.stop()

