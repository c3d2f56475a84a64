"""Redis-backed fast ledger for pending billing state.

Holds everything the hot path touches: per-user pending deductions, per-creator
pending watch time, the per-user watch session blob and heartbeat, and the set
of users with a live session. Money counters are integer micro-units and watch
time counters are integer milliseconds so every mutation is an exact INCRBY.
"""
from __future__ import annotations

import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from redis import Redis

from .config import MICROS_PER_UNIT

KEY_PREFIX = "billing"
ACTIVE_SESSIONS_KEY = f"{KEY_PREFIX}:active-sessions"
UNSETTLED_USERS_KEY = f"{KEY_PREFIX}:unsettled-users"


def to_micros(amount: Decimal) -> int:
    return int((Decimal(amount) * MICROS_PER_UNIT).to_integral_value(rounding=ROUND_HALF_UP))


def from_micros(value: int) -> Decimal:
    return (Decimal(int(value)) / MICROS_PER_UNIT).quantize(Decimal("0.000001"))


def ms_to_seconds(value: int) -> Decimal:
    return (Decimal(int(value)) / Decimal(1000)).quantize(Decimal("0.001"))


class CacheKeys:
    @staticmethod
    def user(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def creator(creator_id: str) -> str:
        return f"creator:{creator_id}"

    @staticmethod
    def video_by_external_id(video_id: str) -> str:
        return f"video:vid:{video_id}"

    @staticmethod
    def user_pending(user_id: str) -> str:
        return f"{KEY_PREFIX}:user:{user_id}:pending"

    @staticmethod
    def user_session(user_id: str) -> str:
        return f"{KEY_PREFIX}:user:{user_id}:session"

    @staticmethod
    def user_heartbeat(user_id: str) -> str:
        return f"{KEY_PREFIX}:user:{user_id}:heartbeat"

    @staticmethod
    def user_inflight(user_id: str) -> str:
        return f"{KEY_PREFIX}:user:{user_id}:inflight"

    @staticmethod
    def user_unsettled(user_id: str) -> str:
        return f"{KEY_PREFIX}:user:{user_id}:unsettled"

    @staticmethod
    def user_settle_lock(user_id: str) -> str:
        return f"{KEY_PREFIX}:user:{user_id}:settle-lock"

    @staticmethod
    def creator_settle_lock(creator_id: str) -> str:
        return f"{KEY_PREFIX}:creator:{creator_id}:settle-lock"

    @staticmethod
    def creator_watch_time(creator_id: str) -> str:
        return f"{KEY_PREFIX}:creator:{creator_id}:watchtime"


def _as_int(raw: Any) -> int:
    if raw is None:
        return 0
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return int(raw)


def _as_text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        return raw.decode("utf-8")
    return str(raw)


class FastLedger:
    """Atomic counters and session state shared by every billing component."""

    def __init__(
        self,
        client: Redis,
        *,
        session_ttl_seconds: int,
        heartbeat_ttl_seconds: int,
    ) -> None:
        self.client = client
        self.session_ttl_seconds = session_ttl_seconds
        self.heartbeat_ttl_seconds = heartbeat_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Any) -> "FastLedger":
        client = Redis.from_url(settings.redis_url, decode_responses=True)
        return cls(
            client,
            session_ttl_seconds=settings.session_ttl_seconds,
            heartbeat_ttl_seconds=settings.heartbeat_ttl_seconds,
        )

    def _increment(self, key: str, delta: int) -> int:
        total = int(self.client.incrby(key, delta))
        if self.client.ttl(key) == -1:
            self.client.expire(key, self.session_ttl_seconds)
        return total

    def _release(self, key: str, amount: int) -> int:
        # Subtract exactly what was settled; increments that landed meanwhile stay pending.
        total = int(self.client.incrby(key, -amount))
        self.client.expire(key, self.session_ttl_seconds)
        return total

    # Pending deductions (micro-units)

    def increment_pending(self, user_id: str, micros: int) -> int:
        return self._increment(CacheKeys.user_pending(user_id), micros)

    def decrement_pending(self, user_id: str, micros: int) -> int:
        return int(self.client.incrby(CacheKeys.user_pending(user_id), -micros))

    def get_pending(self, user_id: str) -> int:
        return _as_int(self.client.get(CacheKeys.user_pending(user_id)))

    def release_pending(self, user_id: str, micros: int) -> int:
        return self._release(CacheKeys.user_pending(user_id), micros)

    # Pending creator watch time (milliseconds)

    def add_watch_time(self, creator_id: str, millis: int) -> int:
        return self._increment(CacheKeys.creator_watch_time(creator_id), millis)

    def get_watch_time(self, creator_id: str) -> int:
        return _as_int(self.client.get(CacheKeys.creator_watch_time(creator_id)))

    def release_watch_time(self, creator_id: str, millis: int) -> int:
        return self._release(CacheKeys.creator_watch_time(creator_id), millis)

    # Watch sessions, one hash per user so independent fields never clobber each other

    def get_session(self, user_id: str) -> Optional[Dict[str, str]]:
        raw = self.client.hgetall(CacheKeys.user_session(user_id)) or {}
        record = {_as_text(key) or "": _as_text(value) or "" for key, value in raw.items()}
        if not record.get("video_id") or not record.get("creator_id"):
            return None
        return record

    def open_session(self, user_id: str, record: Dict[str, str], heartbeat_at: str) -> None:
        key = CacheKeys.user_session(user_id)
        with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=record)
            pipe.expire(key, self.session_ttl_seconds)
            pipe.set(CacheKeys.user_heartbeat(user_id), heartbeat_at, ex=self.heartbeat_ttl_seconds)
            pipe.sadd(ACTIVE_SESSIONS_KEY, user_id)
            pipe.expire(ACTIVE_SESSIONS_KEY, self.session_ttl_seconds)
            pipe.execute()

    def update_session(
        self,
        user_id: str,
        fields: Dict[str, str],
        increments: Optional[Dict[str, int]] = None,
    ) -> bool:
        key = CacheKeys.user_session(user_id)
        if not self.client.exists(key):
            return False
        with self.client.pipeline(transaction=True) as pipe:
            if fields:
                pipe.hset(key, mapping=fields)
            for field, delta in (increments or {}).items():
                pipe.hincrby(key, field, delta)
            pipe.expire(key, self.session_ttl_seconds)
            pipe.execute()
        return True

    def increment_session_field(self, user_id: str, field: str, delta: int) -> Optional[int]:
        key = CacheKeys.user_session(user_id)
        if not self.client.exists(key):
            return None
        # A close racing this call leaves a hash without video_id, which get_session
        # ignores and which expires with the session TTL.
        with self.client.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, field, delta)
            pipe.expire(key, self.session_ttl_seconds)
            total, _ = pipe.execute()
        return int(total)

    def close_session(self, user_id: str) -> None:
        with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(CacheKeys.user_session(user_id))
            pipe.delete(CacheKeys.user_heartbeat(user_id))
            pipe.srem(ACTIVE_SESSIONS_KEY, user_id)
            pipe.execute()

    def touch_heartbeat(self, user_id: str, at: str) -> None:
        with self.client.pipeline(transaction=True) as pipe:
            pipe.set(CacheKeys.user_heartbeat(user_id), at, ex=self.heartbeat_ttl_seconds)
            pipe.expire(CacheKeys.user_session(user_id), self.session_ttl_seconds)
            pipe.expire(CacheKeys.user_pending(user_id), self.session_ttl_seconds)
            pipe.sadd(ACTIVE_SESSIONS_KEY, user_id)
            pipe.expire(ACTIVE_SESSIONS_KEY, self.session_ttl_seconds)
            pipe.execute()

    def get_heartbeat(self, user_id: str) -> Optional[str]:
        return _as_text(self.client.get(CacheKeys.user_heartbeat(user_id)))

    def active_users(self) -> List[str]:
        members = self.client.smembers(ACTIVE_SESSIONS_KEY) or set()
        return sorted(_as_text(member) or "" for member in members if member)

    def remove_active(self, user_id: str) -> None:
        self.client.srem(ACTIVE_SESSIONS_KEY, user_id)

    # Settlement bookkeeping

    def settlement_lock(self, name: str, *, timeout: float, blocking_timeout: float):
        return self.client.lock(
            name,
            timeout=timeout,
            blocking_timeout=blocking_timeout,
        )

    def get_inflight(self, user_id: str) -> Optional[Dict[str, Any]]:
        raw = _as_text(self.client.get(CacheKeys.user_inflight(user_id)))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def put_inflight(self, user_id: str, record: Dict[str, Any]) -> None:
        blob = json.dumps(record, sort_keys=True, separators=(",", ":"))
        self.client.set(CacheKeys.user_inflight(user_id), blob, ex=self.session_ttl_seconds)

    def clear_inflight(self, user_id: str) -> None:
        self.client.delete(CacheKeys.user_inflight(user_id))

    # Failed settlements awaiting retry: a creator set per user plus an index of users.
    # Both expire with the pending counters they point at.

    def mark_unsettled(self, user_id: str, creator_id: str) -> None:
        key = CacheKeys.user_unsettled(user_id)
        with self.client.pipeline(transaction=True) as pipe:
            pipe.sadd(key, creator_id)
            pipe.expire(key, self.session_ttl_seconds)
            pipe.sadd(UNSETTLED_USERS_KEY, user_id)
            pipe.expire(UNSETTLED_USERS_KEY, self.session_ttl_seconds)
            pipe.execute()

    def get_unsettled(self, user_id: str) -> List[str]:
        members = self.client.smembers(CacheKeys.user_unsettled(user_id)) or set()
        return sorted(_as_text(member) or "" for member in members if member)

    def clear_unsettled(self, user_id: str, creator_id: str) -> None:
        self.client.srem(CacheKeys.user_unsettled(user_id), creator_id)
        if not self.get_unsettled(user_id):
            self.client.srem(UNSETTLED_USERS_KEY, user_id)

    def unsettled(self) -> Dict[str, List[str]]:
        users = self.client.smembers(UNSETTLED_USERS_KEY) or set()
        pending: Dict[str, List[str]] = {}
        for member in sorted(_as_text(user) or "" for user in users if user):
            creators = self.get_unsettled(member)
            if creators:
                pending[member] = creators
            else:
                self.client.srem(UNSETTLED_USERS_KEY, member)
        return pending

    # Read-through caches owned by other modules

    def invalidate(self, entity_key: str) -> None:
        self.client.delete(entity_key)

    def cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = _as_text(self.client.get(key))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def cache_set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        self.client.set(key, json.dumps(value, sort_keys=True), ex=ttl_seconds)

