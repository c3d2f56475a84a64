"""Settlement of fast-ledger pending counters into the durable ledger.

A settlement reads the user's pending deduction and the creator's pending
watch time, commits both in one SQL transaction and then releases exactly the
committed amounts from the counters. Charges admitted while the transaction is
in flight stay pending for the next cycle.

Before the transaction the planned settlement is written to an in-flight
marker. If the process dies between commit and release, the next settlement
for that user finds the marker, sees the journal row and performs the release
without touching the durable ledger again.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from redis import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .fast_ledger import CacheKeys, FastLedger, from_micros, ms_to_seconds
from .ledger import DurableLedger, LedgerError, SettlementEntry

logger = logging.getLogger(__name__)

ERROR_IN_PROGRESS = "settlement already in progress"

Accrual = Callable[[], Any]


@dataclass
class SettlementResult:
    user_id: str
    creator_id: str
    amount_settled: Decimal
    watch_time_settled: Decimal
    success: bool
    error: Optional[str] = None
    settlement_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.amount_settled == 0 and self.watch_time_settled == 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "creator_id": self.creator_id,
            "amount_settled": str(self.amount_settled),
            "watch_time_settled": str(self.watch_time_settled),
            "success": self.success,
            "error": self.error,
            "settlement_id": self.settlement_id,
        }


class SettlementEngine:
    def __init__(
        self,
        fast_ledger: FastLedger,
        ledger: DurableLedger,
        *,
        creator_share: Decimal = Decimal("1"),
        lock_timeout_seconds: float = 30.0,
        lock_wait_seconds: float = 5.0,
    ) -> None:
        self.fast_ledger = fast_ledger
        self.ledger = ledger
        self.creator_share = creator_share
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_wait_seconds = lock_wait_seconds

    def _failed(self, user_id: str, creator_id: str, error: str) -> SettlementResult:
        return SettlementResult(
            user_id=user_id,
            creator_id=creator_id,
            amount_settled=Decimal("0"),
            watch_time_settled=Decimal("0"),
            success=False,
            error=error,
        )

    def settle(self, user_id: str, creator_id: str, *, accrue: Optional[Accrual] = None) -> SettlementResult:
        """Settle the pending amounts for ``(user_id, creator_id)``.

        ``accrue`` runs under the settlement locks right before the counters are
        read; session code uses it to move elapsed watch time into the creator's
        pending counter. An empty ``creator_id`` settles the user's pending deduction
        alone, for charges admitted outside any session. Never raises: failures
        come back as unsuccessful results and leave the counters intact for the
        next trigger.
        """
        user_lock = self.fast_ledger.settlement_lock(
            CacheKeys.user_settle_lock(user_id),
            timeout=self.lock_timeout_seconds,
            blocking_timeout=self.lock_wait_seconds,
        )
        creator_lock = None
        if creator_id:
            creator_lock = self.fast_ledger.settlement_lock(
                CacheKeys.creator_settle_lock(creator_id),
                timeout=self.lock_timeout_seconds,
                blocking_timeout=self.lock_wait_seconds,
            )
        try:
            if not user_lock.acquire():
                return self._failed(user_id, creator_id, ERROR_IN_PROGRESS)
        except RedisError as exc:
            logger.warning("Settlement lock unavailable for %s: %s", user_id, exc)
            return self._failed(user_id, creator_id, str(exc))

        try:
            try:
                if creator_lock is not None and not creator_lock.acquire():
                    return self._failed(user_id, creator_id, ERROR_IN_PROGRESS)
            except RedisError as exc:
                logger.warning("Settlement lock unavailable for creator %s: %s", creator_id, exc)
                return self._failed(user_id, creator_id, str(exc))
            try:
                return self._settle_locked(user_id, creator_id, accrue)
            finally:
                if creator_lock is not None:
                    self._release_lock(creator_lock)
        finally:
            self._release_lock(user_lock)

    def _release_lock(self, lock: Any) -> None:
        try:
            lock.release()
        except RedisError as exc:
            logger.warning("Failed to release settlement lock: %s", exc)

    def _settle_locked(self, user_id: str, creator_id: str, accrue: Optional[Accrual]) -> SettlementResult:
        try:
            self._recover_inflight(user_id)
            if accrue is not None:
                accrue()
            pending_micros = max(self.fast_ledger.get_pending(user_id), 0)
            watch_ms = max(self.fast_ledger.get_watch_time(creator_id), 0) if creator_id else 0
        except (RedisError, SQLAlchemyError) as exc:
            logger.warning("Settlement read failed for %s/%s: %s", user_id, creator_id, exc)
            return self._failed(user_id, creator_id, str(exc))

        if pending_micros == 0 and watch_ms == 0:
            return SettlementResult(
                user_id=user_id,
                creator_id=creator_id,
                amount_settled=Decimal("0"),
                watch_time_settled=Decimal("0"),
                success=True,
            )

        amount = from_micros(pending_micros)
        entry = SettlementEntry(
            settlement_id=uuid.uuid4().hex,
            user_id=user_id,
            creator_id=creator_id,
            amount=amount,
            watch_time_seconds=ms_to_seconds(watch_ms),
            earnings=(amount * self.creator_share).quantize(Decimal("0.000001")) if creator_id else Decimal("0"),
        )
        marker = {
            "settlement_id": entry.settlement_id,
            "creator_id": creator_id,
            "pending_micros": pending_micros,
            "watch_ms": watch_ms,
        }

        try:
            self.fast_ledger.put_inflight(user_id, marker)
        except RedisError as exc:
            logger.warning("Could not record in-flight settlement for %s: %s", user_id, exc)
            return self._failed(user_id, creator_id, str(exc))

        try:
            self.ledger.apply_settlement(entry)
        except LedgerError as exc:
            logger.error("Settlement rejected for %s/%s: %s", user_id, creator_id, exc)
            self._drop_marker(user_id)
            return self._failed(user_id, creator_id, str(exc))
        except SQLAlchemyError as exc:
            # The commit outcome is unknown; the marker lets the next attempt check the journal.
            logger.warning("Settlement transaction failed for %s/%s: %s", user_id, creator_id, exc)
            return self._failed(user_id, creator_id, str(exc))

        try:
            self._release_counters(user_id, marker)
        except RedisError as exc:
            logger.error(
                "Settlement %s committed but counters not released for %s: %s",
                entry.settlement_id,
                user_id,
                exc,
            )
        self._after_commit(user_id, creator_id)

        return SettlementResult(
            user_id=user_id,
            creator_id=creator_id,
            amount_settled=entry.amount,
            watch_time_settled=entry.watch_time_seconds,
            success=True,
            settlement_id=entry.settlement_id,
        )

    def _release_counters(self, user_id: str, marker: Dict[str, Any]) -> None:
        pending_micros = int(marker.get("pending_micros") or 0)
        watch_ms = int(marker.get("watch_ms") or 0)
        if pending_micros:
            self.fast_ledger.release_pending(user_id, pending_micros)
        if watch_ms:
            self.fast_ledger.release_watch_time(str(marker["creator_id"]), watch_ms)
        self.fast_ledger.clear_inflight(user_id)

    def _drop_marker(self, user_id: str) -> None:
        try:
            self.fast_ledger.clear_inflight(user_id)
        except RedisError as exc:
            logger.warning("Failed to clear in-flight marker for %s: %s", user_id, exc)

    def _recover_inflight(self, user_id: str) -> None:
        marker = self.fast_ledger.get_inflight(user_id)
        if not marker:
            return
        settlement_id = str(marker.get("settlement_id") or "")
        if settlement_id and self.ledger.has_settlement(settlement_id):
            logger.info("Releasing counters for recovered settlement %s (%s)", settlement_id, user_id)
            self._release_counters(user_id, marker)
            self._after_commit(user_id, str(marker.get("creator_id") or ""))
        else:
            self.fast_ledger.clear_inflight(user_id)

    def _after_commit(self, user_id: str, creator_id: str) -> None:
        try:
            self.fast_ledger.invalidate(CacheKeys.user(user_id))
            if creator_id:
                self.fast_ledger.invalidate(CacheKeys.creator(creator_id))
        except RedisError as exc:
            logger.warning("Cache invalidation failed after settlement for %s: %s", user_id, exc)
