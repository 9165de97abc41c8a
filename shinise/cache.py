"""Read-through/write-through document cache with passive TTL expiry."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .db import Database, to_iso, utc_now
from .errors import CacheError


logger = logging.getLogger("uvicorn.error")

AGENT_RESULTS = "agent_results"
SEARCHES = "searches"
SHOPS = "shops"

_WS_RE = re.compile(r"\s+")


@dataclass
class CacheEntry:
    key: str
    payload: Dict[str, Any]
    created_at: datetime


def agent_cache_key(subject_id: str, task: str) -> str:
    return f"{subject_id}_{getattr(task, 'value', task)}"


def _normalize(value: Optional[str]) -> str:
    return _WS_RE.sub(" ", (value or "").strip().lower())


def search_cache_key(location: str, genre: Optional[str], mode: str, version: str = "v2") -> str:
    location_key = _normalize(location)
    genre_key = _normalize(genre) or "all"
    return f"{location_key}_{genre_key}_{mode}_{version}"


def coordinates_key(lat: float, lng: float) -> str:
    return f"{lat:.4f},{lng:.4f}"


class DocumentCache:
    def __init__(
        self,
        db: Database,
        collection: str,
        ttl: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.collection = collection
        self.ttl = ttl
        self.clock = clock

    def is_fresh(self, created_at: datetime) -> bool:
        return self.clock() - created_at <= self.ttl

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry when present and within TTL; store failures read as a miss."""
        try:
            doc = await self.db.get_doc(self.collection, key)
        except Exception as exc:
            err = CacheError(f"read {self.collection}/{key} failed: {exc}")
            logger.warning("Cache read error: %s", err)
            return None
        if doc is None:
            return None
        if not self.is_fresh(doc["created_at"]):
            logger.info("Cache stale: %s/%s (created %s)", self.collection, key, to_iso(doc["created_at"]))
            return None
        logger.info("Cache hit: %s/%s", self.collection, key)
        return CacheEntry(key=key, payload=doc["data"], created_at=doc["created_at"])

    async def set(self, key: str, payload: Dict[str, Any]) -> bool:
        now = self.clock()
        body: Dict[str, Any] = {**payload, "cachedAt": to_iso(now)}
        try:
            await self.db.set_doc(self.collection, key, body, created_at=now)
        except Exception as exc:
            err = CacheError(f"write {self.collection}/{key} failed: {exc}")
            logger.warning("Cache write error: %s", err)
            return False
        logger.info("Cache saved: %s/%s", self.collection, key)
        return True


class CacheSet:
    """The three server-side collections sharing one store and TTL."""

    def __init__(self, db: Database, ttl: timedelta, clock: Callable[[], datetime] = utc_now):
        self.agents = DocumentCache(db, AGENT_RESULTS, ttl, clock)
        self.searches = DocumentCache(db, SEARCHES, ttl, clock)
        self.shops = DocumentCache(db, SHOPS, ttl, clock)
