"""Watch-session metering.

One session per user lives in the fast ledger. Elapsed wall-clock time since the
session's accrual cursor (``last_settlement_time``) is attributed to the
session's creator whenever the session is checkpointed: at every settlement and
when the session ends. Heartbeats keep the session alive, switch videos and,
when they carry a playback position, mark intervals where playback stood still
so those intervals are not attributed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from redis import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .catalog import VideoCatalog
from .fast_ledger import FastLedger
from .settlement import SettlementEngine, SettlementResult

logger = logging.getLogger(__name__)

ERROR_VIDEO_NOT_FOUND = "video not found"
ERROR_UNAVAILABLE = "billing unavailable"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    candidate = value
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    return datetime.fromisoformat(candidate).astimezone(timezone.utc)


def _millis(delta_seconds: float) -> int:
    return int(round(max(delta_seconds, 0.0) * 1000.0))


@dataclass
class WatchSession:
    user_id: str
    video_id: str
    creator_id: str
    start_time: datetime
    last_settlement_time: datetime
    total_requests: int = 0
    paused_ms: int = 0
    playback_position: Optional[float] = None
    last_heartbeat_at: Optional[datetime] = None
    last_settled_at: Optional[datetime] = None

    def to_record(self) -> Dict[str, str]:
        record = {
            "user_id": self.user_id,
            "video_id": self.video_id,
            "creator_id": self.creator_id,
            "start_time": isoformat(self.start_time),
            "last_settlement_time": isoformat(self.last_settlement_time),
            "total_requests": str(self.total_requests),
            "paused_ms": str(self.paused_ms),
        }
        if self.playback_position is not None:
            record["playback_position"] = repr(float(self.playback_position))
        if self.last_heartbeat_at is not None:
            record["last_heartbeat_at"] = isoformat(self.last_heartbeat_at)
        if self.last_settled_at is not None:
            record["last_settled_at"] = isoformat(self.last_settled_at)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "WatchSession":
        def parse_optional(key: str) -> Optional[datetime]:
            value = record.get(key)
            return parse_iso8601(value) if value else None

        position = record.get("playback_position")
        start_time = parse_iso8601(record["start_time"])
        return cls(
            user_id=record.get("user_id", ""),
            video_id=record["video_id"],
            creator_id=record["creator_id"],
            start_time=start_time,
            last_settlement_time=parse_optional("last_settlement_time") or start_time,
            total_requests=int(record.get("total_requests") or 0),
            paused_ms=int(record.get("paused_ms") or 0),
            playback_position=float(position) if position else None,
            last_heartbeat_at=parse_optional("last_heartbeat_at"),
            last_settled_at=parse_optional("last_settled_at"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "video_id": self.video_id,
            "creator_id": self.creator_id,
            "start_time": isoformat(self.start_time),
            "last_settlement_time": isoformat(self.last_settlement_time),
            "total_requests": self.total_requests,
            "playback_position": self.playback_position,
            "last_heartbeat_at": isoformat(self.last_heartbeat_at) if self.last_heartbeat_at else None,
            "last_settled_at": isoformat(self.last_settled_at) if self.last_settled_at else None,
        }


@dataclass
class SessionResult:
    success: bool
    session: Optional[WatchSession] = None
    error: Optional[str] = None
    ended: Optional[SettlementResult] = None


@dataclass
class HeartbeatResult:
    success: bool
    session_active: bool
    session: Optional[WatchSession] = None
    settlement_due: bool = False
    started: bool = False
    switched: bool = False
    ended: Optional[SettlementResult] = None
    error: Optional[str] = None


class SessionManager:
    def __init__(
        self,
        fast_ledger: FastLedger,
        catalog: VideoCatalog,
        settlement: SettlementEngine,
        *,
        settlement_interval_seconds: int = 600,
        pause_detection_enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.fast_ledger = fast_ledger
        self.catalog = catalog
        self.settlement = settlement
        self.settlement_interval_seconds = settlement_interval_seconds
        self.pause_detection_enabled = pause_detection_enabled
        self.clock = clock

    def get_session(self, user_id: str) -> Optional[WatchSession]:
        record = self.fast_ledger.get_session(user_id)
        if record is None:
            return None
        try:
            return WatchSession.from_record(record)
        except (KeyError, ValueError) as exc:
            logger.warning("Discarding malformed session for %s: %s", user_id, exc)
            return None

    def start_session(self, user_id: str, video_id: str) -> SessionResult:
        try:
            video = self.catalog.find_video_by_external_id(video_id)
        except (RedisError, SQLAlchemyError) as exc:
            logger.warning("Video lookup failed for %s: %s", video_id, exc)
            return SessionResult(success=False, error=ERROR_UNAVAILABLE)
        if video is None:
            return SessionResult(success=False, error=ERROR_VIDEO_NOT_FOUND)

        ended: Optional[SettlementResult] = None
        try:
            if self.fast_ledger.get_session(user_id) is not None:
                logger.warning("Session for %s still open at start; ending it first", user_id)
                ended = self.end_session(user_id)
            self.retry_unsettled(user_id)

            now = self.clock()
            session = WatchSession(
                user_id=user_id,
                video_id=video_id,
                creator_id=str(video["creator_id"]),
                start_time=now,
                last_settlement_time=now,
                last_heartbeat_at=now,
            )
            self.fast_ledger.open_session(user_id, session.to_record(), isoformat(now))
        except RedisError as exc:
            logger.warning("Could not open session for %s: %s", user_id, exc)
            return SessionResult(success=False, error=ERROR_UNAVAILABLE, ended=ended)

        logger.info("Started session user=%s video=%s creator=%s", user_id, video_id, session.creator_id)
        return SessionResult(success=True, session=session, ended=ended)

    def update_heartbeat(
        self,
        user_id: str,
        video_id: str,
        playback_position: Optional[float] = None,
    ) -> HeartbeatResult:
        try:
            current = self.get_session(user_id)
        except RedisError as exc:
            logger.warning("Heartbeat lookup failed for %s: %s", user_id, exc)
            return HeartbeatResult(success=False, session_active=False, error=ERROR_UNAVAILABLE)

        if current is None or current.video_id != video_id:
            ended = self.end_session(user_id) if current is not None else None
            started = self.start_session(user_id, video_id)
            if started.success and playback_position is not None and started.session is not None:
                started.session.playback_position = float(playback_position)
                self._safe_update(user_id, {"playback_position": repr(float(playback_position))})
            return HeartbeatResult(
                success=started.success,
                session_active=started.success,
                session=started.session,
                started=current is None and started.success,
                switched=current is not None,
                ended=ended,
                error=started.error,
            )

        now = self.clock()
        fields: Dict[str, str] = {"last_heartbeat_at": isoformat(now)}
        paused_delta = 0
        if playback_position is not None:
            position = float(playback_position)
            if (
                self.pause_detection_enabled
                and current.playback_position is not None
                and position <= current.playback_position
            ):
                since = current.last_heartbeat_at or current.last_settlement_time
                since = max(since, current.last_settlement_time)
                paused_delta = _millis((now - since).total_seconds())
            fields["playback_position"] = repr(position)
            current.playback_position = position

        try:
            increments = {"paused_ms": paused_delta} if paused_delta else None
            self.fast_ledger.update_session(user_id, fields, increments)
            current.paused_ms += paused_delta
            self.fast_ledger.touch_heartbeat(user_id, isoformat(now))
        except RedisError as exc:
            logger.warning("Heartbeat update failed for %s: %s", user_id, exc)
            return HeartbeatResult(success=False, session_active=True, session=current, error=ERROR_UNAVAILABLE)

        current.last_heartbeat_at = now
        elapsed = (now - current.last_settlement_time).total_seconds()
        return HeartbeatResult(
            success=True,
            session_active=True,
            session=current,
            settlement_due=elapsed >= self.settlement_interval_seconds,
        )

    def increment_request_count(self, user_id: str) -> None:
        try:
            self.fast_ledger.increment_session_field(user_id, "total_requests", 1)
        except RedisError as exc:
            logger.debug("Request counter bump failed for %s: %s", user_id, exc)

    def accrue(self, user_id: str, creator_id: str, until: Optional[datetime] = None) -> int:
        """Move watch time up to ``until`` into the creator's pending counter.

        Callers hold the settlement locks. Without ``until`` the session's own
        horizon is read here, so every pause it has recorded lies inside the
        window. Returns the milliseconds attributed.
        """
        session = self.get_session(user_id)
        if session is None or session.creator_id != creator_id:
            return 0
        if until is None:
            until = self.accrual_horizon(session)
        if until <= session.last_settlement_time:
            return 0
        elapsed_ms = _millis((until - session.last_settlement_time).total_seconds())
        billable_ms = max(elapsed_ms - session.paused_ms, 0)
        if billable_ms:
            self.fast_ledger.add_watch_time(creator_id, billable_ms)
        increments = {"paused_ms": -session.paused_ms} if session.paused_ms else None
        self.fast_ledger.update_session(user_id, {"last_settlement_time": isoformat(until)}, increments)
        return billable_ms

    def accrual_horizon(self, session: WatchSession) -> datetime:
        """Latest instant a live session has proven it was watched: its last heartbeat."""
        return session.last_heartbeat_at or session.start_time

    def settle_session(self, user_id: str) -> Optional[SettlementResult]:
        """Checkpoint and settle a live session. Returns None when there is none."""
        session = self.get_session(user_id)
        if session is None:
            return None
        result = self.settlement.settle(
            user_id,
            session.creator_id,
            accrue=lambda: self.accrue(user_id, session.creator_id),
        )
        if result.success:
            self._safe_update(user_id, {"last_settled_at": isoformat(self.clock())})
        return result

    def end_session(self, user_id: str, ended_at: Optional[datetime] = None) -> Optional[SettlementResult]:
        try:
            session = self.get_session(user_id)
        except RedisError as exc:
            logger.warning("Could not load session for %s at end: %s", user_id, exc)
            return None
        if session is None:
            return None

        until = ended_at or self.clock()
        accrued = {"done": False}

        def accrue() -> None:
            self.accrue(user_id, session.creator_id, until)
            accrued["done"] = True

        result = self.settlement.settle(user_id, session.creator_id, accrue=accrue)
        if not accrued["done"]:
            try:
                self.accrue(user_id, session.creator_id, until)
            except RedisError as exc:
                logger.error("Watch time for %s could not be accrued at end: %s", user_id, exc)

        try:
            if not result.success:
                self.fast_ledger.mark_unsettled(user_id, session.creator_id)
            self.fast_ledger.close_session(user_id)
        except RedisError as exc:
            logger.error("Session cleanup failed for %s: %s", user_id, exc)

        logger.info(
            "Ended session user=%s video=%s settled=%s amount=%s watch_time=%s",
            user_id,
            session.video_id,
            result.success,
            result.amount_settled,
            result.watch_time_settled,
        )
        return result

    def retry_unsettled(self, user_id: str) -> List[SettlementResult]:
        """Retry every failed settlement recorded for ``user_id``, one per creator."""
        results: List[SettlementResult] = []
        for creator_id in self.fast_ledger.get_unsettled(user_id):
            result = self.settlement.settle(user_id, creator_id)
            if result.success:
                self.fast_ledger.clear_unsettled(user_id, creator_id)
            else:
                logger.warning(
                    "Earlier settlement for %s/%s still pending: %s",
                    user_id,
                    creator_id,
                    result.error,
                )
            results.append(result)
        return results

    def _safe_update(self, user_id: str, fields: Dict[str, str]) -> None:
        try:
            self.fast_ledger.update_session(user_id, fields)
        except RedisError as exc:
            logger.debug("Session field update failed for %s: %s", user_id, exc)
