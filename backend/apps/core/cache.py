"""
Cache port - the single shared mutable resource of the billing domain.

Wraps Django's cache framework behind a small interface
(``get`` / ``set`` / ``delete`` / ``delete_pattern``) with a TTL policy per
key namespace. Every operation is exception-safe: a failing cache backend is
logged and treated as a miss, so callers always fall through to the
authoritative store.

Usage::

    from apps.core.cache import CACHE_MISS, get_cache_port

    cache = get_cache_port()
    value = cache.get("features:org:42:ANALYTICS")
    if value is CACHE_MISS:
        value = compute()
        cache.set("features:org:42:ANALYTICS", value)

    cache.delete_pattern("features:org:42:*")

Pattern deletion is generational. Every ``:``-delimited prefix of a key
(``features:``, ``features:org:``, ``features:org:42:``) has a version
counter, and the stored key embeds the current version of each of them.
``delete_pattern("features:org:42:*")`` bumps the ``features:org:42:``
counter with ``add()`` + ``incr()``, after which no reader can address the
old entries; they age out at their TTL. No key list is ever read or
rewritten, so concurrent writers cannot make a key escape invalidation.

A DatabaseCache shares the ORM connection, so each of its statements runs in
a savepoint: a failing cache write never poisons the caller's transaction.
"""

import secrets
from collections.abc import Callable
from contextlib import nullcontext
from typing import Any

from django.conf import settings
from django.core.cache import BaseCache, caches
from django.core.cache.backends.db import DatabaseCache
from django.db import router, transaction

from apps.core.logging import get_logger

logger = get_logger(__name__)

CACHE_MISS: Any = object()

VERSION_PREFIX = "__nsversion__:"


def _default_ttl_policy() -> list[tuple[str, int]]:
    """Longest prefix first."""
    return [
        ("features:org:", getattr(settings, "FEATURE_CACHE_TTL", 300)),
        ("subscription:org:", getattr(settings, "SUBSCRIPTION_CACHE_TTL", 300)),
        ("subscription:plans:", getattr(settings, "CATALOG_CACHE_TTL", 3600)),
        ("features:", getattr(settings, "CATALOG_CACHE_TTL", 3600)),
    ]


def _prefixes(key: str) -> list[str]:
    """'features:org:42:ANALYTICS' -> ['features:', 'features:org:', 'features:org:42:']."""
    parts = key.split(":")[:-1]
    return [":".join(parts[: i + 1]) + ":" for i in range(len(parts))]


def _initial_version() -> int:
    # Random start so a counter lost to eviction never revisits an old version.
    return secrets.randbits(48)


class CachePort:
    """Exception-safe cache facade with namespace TTLs and pattern invalidation."""

    def __init__(
        self,
        backend: BaseCache | None = None,
        ttl_policy: list[tuple[str, int]] | None = None,
        default_ttl: int = 300,
    ) -> None:
        self._backend = backend
        self._ttl_policy = ttl_policy
        self.default_ttl = default_ttl

    @property
    def backend(self) -> BaseCache:
        return self._backend if self._backend is not None else caches["default"]

    def ttl_for(self, key: str) -> int:
        """TTL in seconds for a key, chosen by its namespace."""
        policy = self._ttl_policy if self._ttl_policy is not None else _default_ttl_policy()
        for prefix, ttl in policy:
            if key.startswith(prefix):
                return ttl
        return self.default_ttl

    def get(self, key: str, default: Any = CACHE_MISS) -> Any:
        try:
            with self._isolated():
                return self.backend.get(self._versioned(key), default)
        except Exception:
            logger.warning("cache_get_failed", key=key, exc_info=True)
            return default

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        timeout = ttl if ttl is not None else self.ttl_for(key)
        try:
            with self._isolated():
                self.backend.set(self._versioned(key), value, timeout=timeout)
        except Exception:
            logger.warning("cache_set_failed", key=key, exc_info=True)
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            with self._isolated():
                self.backend.delete(self._versioned(key))
        except Exception:
            logger.warning("cache_delete_failed", key=key, exc_info=True)
            return False
        return True

    def delete_pattern(self, pattern: str) -> bool:
        """
        Invalidate every key matching ``pattern`` (a prefix ending in ``*``).

        Returns False if the backend failed; the caller's write has already
        happened, so a failure only widens the staleness window to the TTL.
        """
        if not pattern.endswith("*"):
            return self.delete(pattern)

        prefix = pattern[:-1]
        if not prefix.endswith(":"):
            raise ValueError(f"Pattern must end with ':*', got {pattern!r}")

        version_key = f"{VERSION_PREFIX}{prefix}"
        try:
            with self._isolated():
                self.backend.add(version_key, _initial_version(), timeout=None)
                try:
                    self.backend.incr(version_key)
                except ValueError:
                    # Evicted between add() and incr()
                    self.backend.set(version_key, _initial_version(), timeout=None)
        except Exception:
            logger.warning("cache_delete_pattern_failed", pattern=pattern, exc_info=True)
            return False

        logger.debug("cache_namespace_invalidated", pattern=pattern)
        return True

    def clear(self) -> None:
        try:
            with self._isolated():
                self.backend.clear()
        except Exception:
            logger.warning("cache_clear_failed", exc_info=True)

    def _isolated(self) -> Any:
        backend = self.backend
        if isinstance(backend, DatabaseCache):
            return transaction.atomic(using=router.db_for_write(backend.cache_model_class))
        return nullcontext()

    def _versioned(self, key: str) -> str:
        prefixes = _prefixes(key)
        if not prefixes:
            return key

        version_keys = [f"{VERSION_PREFIX}{prefix}" for prefix in prefixes]
        versions = self.backend.get_many(version_keys)
        for version_key in version_keys:
            if version_key not in versions:
                self.backend.add(version_key, _initial_version(), timeout=None)
                versions[version_key] = self.backend.get(version_key)
        return f"{key}@" + ".".join(str(versions[version_key]) for version_key in version_keys)


_cache_port: CachePort | None = None


def get_cache_port() -> CachePort:
    """Get the process-wide cache port (created lazily on first use)."""
    global _cache_port
    if _cache_port is None:
        _cache_port = CachePort()
    return _cache_port


def set_cache_port(port: CachePort | None) -> None:
    """Replace the process-wide cache port. Passing None restores the default."""
    global _cache_port
    _cache_port = port


def invalidate_now_and_on_commit(invalidate: Callable[[], Any]) -> None:
    """
    Run ``invalidate`` immediately and, inside a transaction, once more after
    it commits.

    The second run drops entries that concurrent readers repopulated from
    pre-commit rows while the transaction was still open.
    """
    invalidate()
    if transaction.get_connection().in_atomic_block:
        transaction.on_commit(invalidate, robust=True)
