from __future__ import annotations

"""
Redis-backed cache tiers and the fetch claim.

Key layout (prefix defaults to "imageServer_"):
    <prefix>lock_<mirror path>          fetch claim, 5 s
    <prefix>cache_<request path>        rendered bytes, 5 min
    <prefix>cache_format_<request path> format label of the rendered bytes, 5 min
    <prefix>cache_object_<query url>    raw metadata response, 1 h

Every store error is logged and reported as a miss / failed write; nothing in
here raises into the request path.
"""

import logging
from typing import Optional

import redis

from common.types import CacheEntry


log = logging.getLogger(__name__)

LOCK_PREFIX = "lock_"
CACHE_PREFIX = "cache_"
CACHE_FORMAT_PREFIX = "cache_format_"
CACHE_OBJECT_PREFIX = "cache_object_"


class CacheStore:
    def __init__(
        self,
        client: redis.Redis,
        *,
        prefix: str = "imageServer_",
        lock_ttl_s: int = 5,
        result_ttl_s: int = 300,
        metadata_ttl_s: int = 3600,
    ):
        """
        Params:
            client: redis client (or anything with the same get/set/ping calls)
            prefix: namespace prepended to every key
            lock_ttl_s: lifetime of a fetch claim
            result_ttl_s: lifetime of rendered results and their format labels
            metadata_ttl_s: lifetime of cached metadata responses
        """
        self.client = client
        self.prefix = prefix
        self.lock_ttl_s = int(lock_ttl_s)
        self.result_ttl_s = int(result_ttl_s)
        self.metadata_ttl_s = int(metadata_ttl_s)

    # ----------------------------
    # Fetch claim
    # ----------------------------
    def claim(self, mirror_path: str) -> bool:
        """
        Try to take the fetch claim for a mirror path (SET NX with TTL).

        This is not a lock: it is never released, it simply expires, and a
        holder that outlives the TTL may overlap with the next claimant.
        Returns True if this caller owns the claim. A store error counts as
        a denied claim.
        """
        key = self.prefix + LOCK_PREFIX + mirror_path
        try:
            return bool(self.client.set(key, "true", ex=self.lock_ttl_s, nx=True))
        except redis.RedisError as e:
            log.error("Unable to set fetch claim %s: %s", key, e)
            return False

    # ----------------------------
    # Rendered results
    # ----------------------------
    def get_result(self, path: str) -> CacheEntry:
        payload = self._get(self.prefix + CACHE_PREFIX + path)
        if not payload:
            return CacheEntry(payload=None, fmt=None)
        raw_fmt = self._get(self.prefix + CACHE_FORMAT_PREFIX + path)
        fmt = raw_fmt.decode("utf-8", "replace") if raw_fmt else ""
        return CacheEntry(payload=payload, fmt=fmt)

    def put_result(self, path: str, payload: bytes, fmt: str) -> bool:
        """
        Store a rendered result. The format label goes first; the payload is
        only written when the label was, so a payload never sits without one.
        """
        if not self._set(self.prefix + CACHE_FORMAT_PREFIX + path, fmt, self.result_ttl_s):
            log.warning("Failed to save image format to cache for %s, skipping payload", path)
            return False
        if not self._set(self.prefix + CACHE_PREFIX + path, payload, self.result_ttl_s):
            log.warning("Failed to save image to cache for %s", path)
            return False
        return True

    # ----------------------------
    # Metadata responses
    # ----------------------------
    def get_object(self, query_url: str) -> Optional[bytes]:
        return self._get(self.prefix + CACHE_OBJECT_PREFIX + query_url)

    def put_object(self, query_url: str, raw: bytes) -> bool:
        return self._set(self.prefix + CACHE_OBJECT_PREFIX + query_url, raw, self.metadata_ttl_s)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            log.warning("Cache store ping failed: %s", e)
            return False

    # ----------------------------
    # internals
    # ----------------------------
    def _get(self, key: str) -> Optional[bytes]:
        try:
            val = self.client.get(key)
        except redis.RedisError as e:
            log.warning("Cache read failed for %s: %s", key, e)
            return None
        if val is None:
            return None
        return val.encode("utf-8") if isinstance(val, str) else bytes(val)

    def _set(self, key: str, value, ttl_s: int) -> bool:
        try:
            return bool(self.client.set(key, value, ex=ttl_s))
        except redis.RedisError as e:
            log.warning("Cache write failed for %s: %s", key, e)
            return False
