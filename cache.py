"""
Redis cache layer

A thin get/set/delete wrapper with TTLs. It knows nothing about how entities
relate; callers decide what to invalidate. The cache is an optimization only:
any Redis failure is logged and treated as a miss (reads) or a no-op (writes).
"""
import json
import logging
from typing import Any, Iterable, Optional

import redis

from config import Settings

logger = logging.getLogger(__name__)


class Cache:
    def __init__(self, client: "redis.Redis"):
        self.client = client
        self.stats = {"hits": 0, "misses": 0, "errors": 0}

    def _failed(self, op: str, key: str, exc: Exception) -> None:
        self.stats["errors"] += 1
        logger.warning("Cache %s failed for %s: %s", op, key, exc)

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
            value = json.loads(raw) if raw is not None else None
        except (redis.RedisError, ValueError) as exc:
            self._failed("get", key, exc)
            self.stats["misses"] += 1
            return None
        if raw is None:
            self.stats["misses"] += 1
            return None
        self.stats["hits"] += 1
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value, default=str)
        try:
            if ttl:
                self.client.set(key, payload, ex=ttl)
            else:
                self.client.set(key, payload)
        except redis.RedisError as exc:
            self._failed("set", key, exc)

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self.client.delete(*keys)
        except redis.RedisError as exc:
            self._failed("delete", ",".join(keys), exc)

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern, e.g. ``products:*``."""
        removed = 0
        try:
            batch = []
            for key in self.client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += self.client.delete(*batch)
                    batch = []
            if batch:
                removed += self.client.delete(*batch)
        except redis.RedisError as exc:
            self._failed("delete_pattern", pattern, exc)
        return removed

    def exists(self, key: str) -> bool:
        # fails open: an unreachable cache reports the key as absent
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as exc:
            self._failed("exists", key, exc)
            return False

    def hit(self, key: str, window: int) -> Optional[int]:
        """Increment a fixed-window counter; None when the cache is unavailable."""
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = pipe.execute()
            # also repairs a counter left without expiry by an earlier failed call
            if ttl < 0:
                self.client.expire(key, window)
            return count
        except redis.RedisError as exc:
            self._failed("hit", key, exc)
            return None


def create_cache(settings: Settings) -> Cache:
    client = redis.Redis.from_url(
        settings.redis_url,
        socket_timeout=settings.cache_timeout,
        socket_connect_timeout=settings.cache_timeout,
        decode_responses=True,
    )
    return Cache(client)


# Key namespaces

def cart_key(user_id: str) -> str:
    return f"cart:{user_id}"


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


PRODUCTS_PATTERN = "products:*"
CATEGORIES_KEY = "products:categories"
FEATURED_KEY = "products:featured"


def products_list_key(page: int, limit: int, search: Optional[str], category: Optional[str],
                      sort_by: str, order: str) -> str:
    return f"products:list:{page}:{limit}:{search or ''}:{category or ''}:{sort_by}:{order}"


def products_info_key(ids: Iterable[str]) -> str:
    return "products:info:" + ",".join(sorted(ids))


def orders_key(user_id: str, page: int, limit: int, status: Optional[str]) -> str:
    return f"orders:{user_id}:{page}:{limit}:{status or ''}"


def orders_pattern(user_id: str) -> str:
    return f"orders:{user_id}:*"


def blacklist_key(token: str) -> str:
    return f"bl_{token}"


def rate_limit_key(scope: str, client_ip: str) -> str:
    return f"rl:{scope}:{client_ip}"
