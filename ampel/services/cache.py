"""Cache configuration built on aiocache.

Three aliases are configured: ``default`` and ``memory`` always live in
process memory, ``persistent`` uses Redis when ``cache_redis_host`` is set and
falls back to memory otherwise. Values are stored as JSON-compatible data so
both backends behave the same.
"""

from logging import getLogger
from typing import Any

from aiocache import BaseCache, caches

from ampel.settings import settings

logger = getLogger(__name__)


def _memory_config() -> dict[str, Any]:
    return {
        "cache": "aiocache.SimpleMemoryCache",
        "serializer": {"class": "aiocache.serializers.JsonSerializer"},
        "ttl": settings.cache_default_ttl,
    }


def configure_caches() -> None:
    """Register cache aliases from settings; safe to call more than once."""
    persistent = _memory_config()
    if settings.cache_redis_host:
        persistent = {
            "cache": "aiocache.RedisCache",
            "endpoint": settings.cache_redis_host,
            "port": settings.cache_redis_port,
            "serializer": {"class": "aiocache.serializers.JsonSerializer"},
            "ttl": settings.cache_default_ttl,
        }
        logger.info(f"Using Redis cache at {settings.cache_redis_host}:{settings.cache_redis_port}")

    caches.set_config(
        {
            "default": _memory_config(),
            "memory": _memory_config(),
            "persistent": persistent,
        }
    )


def get_cache(alias: str = "default") -> BaseCache:
    if alias not in caches.get_config():
        configure_caches()
    return caches.get(alias)
