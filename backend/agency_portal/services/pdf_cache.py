"""
Short-lived cache for on-demand contract PDFs.

Keys embed the contract's ``updated_at`` so any transition produces a new key
and stale renders simply age out. Uses Redis when ``REDIS_URL`` is reachable,
otherwise a bounded in-process TTL map.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

import redis

from agency_portal.config import settings

logger = logging.getLogger(__name__)


def _connect() -> Optional[redis.Redis]:
    if not settings.REDIS_URL:
        return None
    try:
        client = redis.from_url(
            settings.REDIS_URL,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        client.ping()
        logger.info("Redis PDF cache client initialized successfully")
        return client
    except redis.RedisError as e:
        logger.error("Failed to connect to Redis, using in-process PDF cache: %s", e)
        return None


def version_stamp(updated_at: Optional[datetime]) -> int:
    """Microseconds since epoch of the last modification."""
    if updated_at is None:
        return 0
    delta = updated_at.replace(tzinfo=timezone.utc) - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def pdf_cache_key(contract_id: UUID, updated_at: Optional[datetime]) -> str:
    return f"contract:{contract_id}:{version_stamp(updated_at)}"


class MemoryPdfCache:
    """LRU-ordered map with per-entry expiry."""

    def __init__(self, ttl_seconds: int, max_entries: int) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Tuple[float, int, bytes]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, _, data = entry
            if time.monotonic() > expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return data

    def put(self, key: str, data: bytes, version: int) -> None:
        with self._lock:
            self._entries[key] = (time.monotonic() + self.ttl_seconds, version, data)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisPdfCache:
    def __init__(self, client: redis.Redis, ttl_seconds: int) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            logger.error("PDF cache get error for key %s: %s", key, e)
            return None

    def put(self, key: str, data: bytes, version: int) -> None:
        try:
            self.client.setex(key, self.ttl_seconds, data)
        except redis.RedisError as e:
            logger.error("PDF cache set error for key %s: %s", key, e)

    def clear(self) -> None:
        try:
            keys = self.client.keys("contract:*")
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            logger.error("PDF cache clear error: %s", e)


_cache = None


def get_pdf_cache():
    global _cache
    if _cache is None:
        client = _connect()
        if client is not None:
            _cache = RedisPdfCache(client, settings.PDF_CACHE_TTL_SECONDS)
        else:
            _cache = MemoryPdfCache(settings.PDF_CACHE_TTL_SECONDS, settings.PDF_CACHE_MAX_ENTRIES)
    return _cache
