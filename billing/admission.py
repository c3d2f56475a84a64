"""Per-request admission control against the user's effective balance."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from redis import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .fast_ledger import FastLedger, from_micros, to_micros
from .ledger import DurableLedger
from .notifications import Notifier

logger = logging.getLogger(__name__)

REASON_INSUFFICIENT_BALANCE = "insufficient balance"
REASON_USER_NOT_FOUND = "user not found"
REASON_UNAVAILABLE = "billing unavailable"


@dataclass
class AdmissionResult:
    admitted: bool
    pending_after: Decimal
    reason: Optional[str] = None
    effective_balance: Optional[Decimal] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "admitted": self.admitted,
            "pending_after": str(self.pending_after),
            "reason": self.reason,
            "effective_balance": str(self.effective_balance) if self.effective_balance is not None else None,
        }


class AdmissionController:
    """Reserve-then-validate charging.

    The pending counter is incremented first and the balance checked second, so
    concurrent requests never need a lock: a request that pushes the counter past
    the balance is rejected and its increment undone.
    """

    def __init__(
        self,
        fast_ledger: FastLedger,
        ledger: DurableLedger,
        *,
        cost_per_request: Decimal,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.fast_ledger = fast_ledger
        self.ledger = ledger
        self.cost_per_request = cost_per_request
        self.notifier = notifier

    def charge_for_request(self, user_id: str, unit_cost: Optional[Decimal] = None) -> AdmissionResult:
        cost = self.cost_per_request if unit_cost is None else Decimal(unit_cost)
        micros = to_micros(cost)
        if micros <= 0:
            raise ValueError("unit cost must be at least one micro-unit")

        try:
            pending = self.fast_ledger.increment_pending(user_id, micros)
        except RedisError as exc:
            logger.warning("Fast ledger unavailable while charging %s: %s", user_id, exc)
            return AdmissionResult(admitted=False, pending_after=Decimal("0"), reason=REASON_UNAVAILABLE)

        try:
            balance = self.ledger.read_balance(user_id)
        except SQLAlchemyError as exc:
            logger.warning("Durable ledger unavailable while charging %s: %s", user_id, exc)
            return self._reject(user_id, micros, pending, REASON_UNAVAILABLE)

        if balance is None:
            return self._reject(user_id, micros, pending, REASON_USER_NOT_FOUND)

        effective = to_micros(balance) - pending
        if effective < 0:
            return self._reject(user_id, micros, pending, REASON_INSUFFICIENT_BALANCE, balance=balance)

        result = AdmissionResult(
            admitted=True,
            pending_after=from_micros(pending),
            effective_balance=from_micros(effective),
        )
        logger.debug("Admitted charge for %s pending=%s", user_id, result.pending_after)
        self._publish(user_id, result)
        return result

    def _reject(
        self,
        user_id: str,
        micros: int,
        pending: int,
        reason: str,
        *,
        balance: Optional[Decimal] = None,
    ) -> AdmissionResult:
        restored = pending - micros
        try:
            restored = self.fast_ledger.decrement_pending(user_id, micros)
        except RedisError as exc:
            # The counter stays overstated by one unit until the next settlement.
            logger.error("Failed to undo rejected charge for %s: %s", user_id, exc)
        logger.info("Rejected charge for %s: %s", user_id, reason)
        effective = None
        if balance is not None:
            effective = from_micros(to_micros(balance) - restored)
        return AdmissionResult(
            admitted=False,
            pending_after=from_micros(restored),
            reason=reason,
            effective_balance=effective,
        )

    def _publish(self, user_id: str, result: AdmissionResult) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(
                user_id,
                {
                    "type": "balance_update",
                    "data": {
                        "pending_deduction": str(result.pending_after),
                        "effective_balance": str(result.effective_balance),
                    },
                },
            )
        except Exception as exc:
            logger.warning("Balance update publish failed for %s: %s", user_id, exc)
