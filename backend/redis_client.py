"""
Redis helpers: menu and restaurant caching, login rate limiting.

The cache is an optimisation only. When redis is unreachable (or
CACHE_ENABLED=false) every getter returns None and every setter is a no-op.
"""
import inspect
import json
import logging
import os
import time
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

import redis
from fastapi.concurrency import run_in_threadpool

from errors import OrderingError

logger = logging.getLogger(__name__)

FOODS_PREFIX = "foods:"
RESTAURANTS_KEY = "restaurants:all"


class RateLimitError(OrderingError):
    status_code = 429


class RedisClient:
    """Thin wrapper around redis.Redis that degrades gracefully."""

    def __init__(self, client=None):
        if client is not None:
            self.client = client
            return

        self.client = None
        if os.getenv("CACHE_ENABLED", "true").lower() in ("0", "false", "no"):
            logger.info("Redis cache disabled by CACHE_ENABLED")
            return

        self.redis_host = os.getenv("REDIS_HOST", "redis")
        redis_port_env = os.getenv("REDIS_SERVICE_PORT") or os.getenv("REDIS_PORT") or "6379"
        self.redis_port = int(str(redis_port_env).split(":")[-1])

        try:
            self.client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            self.client.ping()
        except redis.RedisError as e:
            logger.warning("Could not connect to Redis: %s", e)
            self.client = None

    def is_available(self) -> bool:
        if not self.client:
            return False
        try:
            self.client.ping()
            return True
        except redis.RedisError:
            return False

    # ========== Menu (foods) ==========

    @staticmethod
    def foods_key(restaurant_id: Optional[int] = None, category: Optional[str] = None) -> str:
        key = f"{FOODS_PREFIX}{restaurant_id if restaurant_id is not None else 'all'}"
        if category:
            key += f":{category}"
        return key

    def cache_foods(self, key: str, foods: List[Dict], ttl: int = 300) -> bool:
        return self._set_json(key, foods, ttl)

    def get_cached_foods(self, key: str) -> Optional[List[Dict]]:
        return self._get_json(key)

    def invalidate_foods_cache(self) -> bool:
        """Drop every cached menu; quantities change on each order."""
        return self._delete_pattern(f"{FOODS_PREFIX}*")

    # ========== Restaurants ==========

    def cache_restaurants(self, restaurants: List[Dict], ttl: int = 300) -> bool:
        return self._set_json(RESTAURANTS_KEY, restaurants, ttl)

    def get_cached_restaurants(self) -> Optional[List[Dict]]:
        return self._get_json(RESTAURANTS_KEY)

    def invalidate_restaurants_cache(self) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.delete(RESTAURANTS_KEY)
            return True
        except redis.RedisError as e:
            logger.warning("Failed to invalidate restaurants cache: %s", e)
            return False

    # ========== Rate limiting ==========

    def check_rate_limit(self, key: str, max_requests: int = 10, window: int = 60) -> Tuple[bool, int]:
        """Returns (allowed, remaining requests)."""
        if not self.is_available():
            return True, max_requests

        try:
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, window)
            remaining = max(0, max_requests - current)
            return current <= max_requests, remaining
        except redis.RedisError as e:
            logger.warning("Rate limit check failed: %s", e)
            return True, max_requests

    # ========== Utilities ==========

    def get_cache_info(self) -> Dict[str, Any]:
        if not self.is_available():
            return {"status": "unavailable"}
        try:
            return {
                "status": "available",
                "restaurants_cached": bool(self.client.exists(RESTAURANTS_KEY)),
                "cached_menus_count": len(self.client.keys(f"{FOODS_PREFIX}*")),
            }
        except redis.RedisError as e:
            return {"status": "error", "error": str(e)}

    def _set_json(self, key: str, value: Any, ttl: int) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except redis.RedisError as e:
            logger.warning("Failed to cache %s: %s", key, e)
            return False

    def _get_json(self, key: str):
        if not self.is_available():
            return None
        try:
            cached = self.client.get(key)
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.warning("Failed to read %s from cache: %s", key, e)
        return None

    def _delete_pattern(self, pattern: str) -> bool:
        if not self.is_available():
            return False
        try:
            keys = self.client.keys(pattern)
            if keys:
                self.client.delete(*keys)
            return True
        except redis.RedisError as e:
            logger.warning("Failed to invalidate %s: %s", pattern, e)
            return False


redis_client = RedisClient()


def rate_limit(max_requests: int = 10, window: int = 60, key_prefix: str = "rate_limit"):
    """
    Per-client rate limiting for FastAPI endpoints.
    The endpoint must accept a `request: Request` argument.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            client_host = request.client.host if request is not None and request.client else "global"
            rate_key = f"{key_prefix}:{func.__name__}:{client_host}"

            allowed, remaining = redis_client.check_rate_limit(rate_key, max_requests, window)
            if not allowed:
                raise RateLimitError(f"Rate limit exceeded. Try again in {window} seconds.")

            if inspect.iscoroutinefunction(func):
                response = await func(*args, **kwargs)
            else:
                response = await run_in_threadpool(func, *args, **kwargs)
            if hasattr(response, "headers"):
                response.headers["X-RateLimit-Limit"] = str(max_requests)
                response.headers["X-RateLimit-Remaining"] = str(remaining)
                response.headers["X-RateLimit-Reset"] = str(int(time.time()) + window)
            return response
        return wrapper
    return decorator
