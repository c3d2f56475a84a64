"""Video catalog lookup used to resolve the creator behind a video."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from redis import RedisError

from .fast_ledger import CacheKeys, FastLedger
from .ledger import DurableLedger

logger = logging.getLogger(__name__)


class VideoCatalog:
    """Read-through cache in front of the durable videos table."""

    def __init__(self, ledger: DurableLedger, fast_ledger: FastLedger, cache_ttl_seconds: int = 600) -> None:
        self.ledger = ledger
        self.fast_ledger = fast_ledger
        self.cache_ttl_seconds = cache_ttl_seconds

    def find_video_by_external_id(self, video_id: str) -> Optional[Dict[str, str]]:
        key = CacheKeys.video_by_external_id(video_id)
        try:
            cached = self.fast_ledger.cache_get(key)
        except RedisError as exc:
            logger.warning("Video cache read failed for %s: %s", video_id, exc)
            cached = None
        if cached and cached.get("creator_id"):
            return cached

        video = self.ledger.find_video(video_id)
        if video is None:
            return None
        try:
            self.fast_ledger.cache_set(key, video, self.cache_ttl_seconds)
        except RedisError as exc:
            logger.warning("Video cache write failed for %s: %s", video_id, exc)
        return video
