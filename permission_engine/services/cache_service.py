"""Cache backends and the generation-keyed permission decision cache."""

import json
import logging
import threading
import time
from typing import Optional, Iterable

import redis
from sqlalchemy.orm import Session

from permission_engine.core.config import settings
from permission_engine.core.exceptions import CacheUnavailableError

logger = logging.getLogger("permission_engine.cache")


class CacheBackendError(Exception):
    """Raised by a backend when the store cannot be reached."""
    pass


class CacheBackend:
    """Minimal key/value contract the permission cache depends on."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def get_many(self, keys: list[str]) -> list[Optional[str]]:
        return [self.get(k) for k in keys]

    def set(self, key: str, value: str, ttl_seconds: int = 600) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def incr(self, key: str) -> int:
        raise NotImplementedError

    def health_check(self) -> bool:
        raise NotImplementedError


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache. Connection errors surface as CacheBackendError."""

    def __init__(self, url: Optional[str] = None):
        self._url = url or settings.REDIS_URL
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                decode_responses=True,
                max_connections=100,
                socket_timeout=0.5,
            )
        return self._client

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            raise CacheBackendError(str(e)) from e

    def get_many(self, keys: list[str]) -> list[Optional[str]]:
        try:
            return self.client.mget(keys)
        except redis.RedisError as e:
            raise CacheBackendError(str(e)) from e

    def set(self, key: str, value: str, ttl_seconds: int = 600) -> None:
        try:
            self.client.setex(key, ttl_seconds, value)
        except redis.RedisError as e:
            raise CacheBackendError(str(e)) from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise CacheBackendError(str(e)) from e

    def incr(self, key: str) -> int:
        try:
            return int(self.client.incr(key))
        except redis.RedisError as e:
            raise CacheBackendError(str(e)) from e

    def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


class InMemoryCacheBackend(CacheBackend):
    """Process-local TTL cache for single-node deployments and tests."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CacheBackendError("in-memory cache marked unavailable")

    def get(self, key: str) -> Optional[str]:
        self._check()
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires = item
            if expires is not None and expires <= self._clock():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int = 600) -> None:
        self._check()
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        self._check()
        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str) -> int:
        self._check()
        with self._lock:
            current = self._data.get(key)
            value = int(current[0]) + 1 if current else 1
            self._data[key] = (str(value), None)
            return value

    def health_check(self) -> bool:
        return self.available

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class PermissionCache:
    """Decision cache keyed by (user, permission) under generation counters.

    Every key embeds the global generation (bumped on role/catalog edits) and
    the user's generation (bumped on that user's overrides and grants).
    Invalidation is an atomic counter bump. Readers snapshot the key before
    resolving, so a decision computed from pre-commit state can only be
    written under a retired key.
    """

    def __init__(self, backend: CacheBackend, ttl_seconds: Optional[int] = None,
                 role_ttl_seconds: Optional[int] = None, prefix: Optional[str] = None):
        self.backend = backend
        self.ttl_seconds = ttl_seconds or settings.PERMISSION_CACHE_TTL_SECONDS
        self.role_ttl_seconds = role_ttl_seconds or settings.ROLE_GRAPH_CACHE_TTL_SECONDS
        self.prefix = prefix or settings.CACHE_KEY_PREFIX
        self._degraded = False
        self._lock = threading.Lock()

    # ---- keys ----
    def _global_gen_key(self) -> str:
        return f"{self.prefix}:gen:global"

    def _user_gen_key(self, user_id: int) -> str:
        return f"{self.prefix}:gen:user:{user_id}"

    def _generations(self, user_id: int) -> tuple[str, str]:
        global_gen, user_gen = self.backend.get_many(
            [self._global_gen_key(), self._user_gen_key(user_id)]
        )
        return global_gen or "0", user_gen or "0"

    # ---- degraded mode ----
    @property
    def degraded(self) -> bool:
        return self._degraded

    def mark_degraded(self) -> None:
        with self._lock:
            self._degraded = True
        logger.error("Permission cache entered bypass mode after a failed invalidation")

    def _recover(self) -> bool:
        """Retire every cached entry before trusting the store again."""
        with self._lock:
            if not self._degraded:
                return True
            try:
                self.backend.incr(self._global_gen_key())
            except CacheBackendError:
                return False
            self._degraded = False
        logger.info("Permission cache recovered; all decisions retired")
        return True

    # ---- decisions ----
    def decision_key(self, user_id: int, permission_name: str) -> Optional[str]:
        """Snapshot the current generations into a decision key.

        Callers take the key before resolving and write under the same key,
        so a concurrent invalidation always retires what they store. None
        means the store is unusable and the cache should be skipped.
        """
        if self._degraded and not self._recover():
            return None
        try:
            g, u = self._generations(user_id)
        except CacheBackendError as e:
            logger.warning("Permission cache read failed, computing fresh: %s", e)
            return None
        return f"{self.prefix}:decision:{g}:{u}:{user_id}:{permission_name}"

    def get_decision(self, key: Optional[str]) -> Optional[dict]:
        """Return the cached decision or None; any store failure is a miss."""
        if key is None or self._degraded:
            return None
        try:
            raw = self.backend.get(key)
        except CacheBackendError as e:
            logger.warning("Permission cache read failed, computing fresh: %s", e)
            return None
        return json.loads(raw) if raw else None

    def set_decision(self, key: Optional[str], decision: dict,
                     ttl_seconds: Optional[int] = None) -> None:
        if key is None or self._degraded:
            return
        ttl = self.ttl_seconds if ttl_seconds is None else min(int(ttl_seconds), self.ttl_seconds)
        if ttl <= 0:
            return
        try:
            self.backend.set(key, json.dumps(decision, default=str), ttl)
        except CacheBackendError as e:
            logger.warning("Permission cache write failed: %s", e)

    # ---- role graph ----
    def role_key(self, role_id: int) -> Optional[str]:
        """Snapshot the global generation into a role key; None skips the cache."""
        if self._degraded:
            return None
        try:
            g = self.backend.get(self._global_gen_key()) or "0"
        except CacheBackendError:
            return None
        return f"{self.prefix}:role:{g}:{role_id}"

    def get_role_permissions(self, key: Optional[str]) -> Optional[set[str]]:
        if key is None or self._degraded:
            return None
        try:
            raw = self.backend.get(key)
        except CacheBackendError:
            return None
        return set(json.loads(raw)) if raw else None

    def set_role_permissions(self, key: Optional[str], names: Iterable[str]) -> None:
        if key is None or self._degraded:
            return
        try:
            self.backend.set(key, json.dumps(sorted(names)), self.role_ttl_seconds)
        except CacheBackendError as e:
            logger.warning("Role permission cache write failed: %s", e)

    # ---- invalidation ----
    def invalidate_user(self, user_id: int) -> None:
        """Retire all cached decisions for one user. Raises on store failure."""
        try:
            self.backend.incr(self._user_gen_key(user_id))
        except CacheBackendError as e:
            raise CacheUnavailableError(f"Could not invalidate permission cache for user {user_id}") from e

    def invalidate_all(self) -> None:
        """Retire every cached decision and role permission set."""
        try:
            self.backend.incr(self._global_gen_key())
        except CacheBackendError as e:
            raise CacheUnavailableError("Could not invalidate permission cache") from e

    def invalidate(self, user_ids: Iterable[int] = (), everyone: bool = False) -> None:
        if everyone:
            self.invalidate_all()
        for user_id in set(user_ids):
            self.invalidate_user(user_id)

    def health_check(self) -> bool:
        return self.backend.health_check()


def commit_and_invalidate(db: Session, cache: PermissionCache,
                          user_ids: Iterable[int] = (), everyone: bool = False) -> None:
    """Commit a permission mutation with invalidation on both sides of it.

    The pre-commit bump must succeed or the mutation is rolled back. The
    post-commit bump retires anything cached from the old state in between;
    if it fails the cache drops into bypass mode until the store recovers.
    """
    user_ids = list(user_ids)
    try:
        cache.invalidate(user_ids, everyone)
        db.commit()
    except Exception:
        db.rollback()
        raise
    try:
        cache.invalidate(user_ids, everyone)
    except CacheUnavailableError:
        cache.mark_degraded()


def build_cache_backend() -> CacheBackend:
    if settings.PERMISSION_CACHE_BACKEND == "memory":
        return InMemoryCacheBackend()
    return RedisCacheBackend()


cache_backend = build_cache_backend()
permission_cache = PermissionCache(cache_backend)
