"""Read-through / invalidate-on-write cache backed by Redis.

Key namespace:
    product:{product_id}          product detail
    search:{normalized params}    search results
    session:{session_id}          identity session projection
    user:{user_id}:*              per-user derived entries
    vendor:{vendor_id}:*          per-vendor derived entries

The cache is an optional capability. When constructed without a client, or
when Redis errors, every read is a miss and every write/invalidation is
logged and skipped so the primary write path never blocks on it.

Usage:
    cache = Cache(redis_client)
    product = await cache.get_product(product_id)
    if product is None:
        product = await load_product(...)
        await cache.set_product(product_id, product)
"""

import json
from typing import Any, Awaitable, Callable, Mapping, Optional

from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)

PRODUCT_KEY = "product:{}"
SEARCH_KEY = "search:{}"
SESSION_KEY = "session:{}"
USER_PATTERN = "user:{}:*"
VENDOR_PATTERN = "vendor:{}:*"


def normalize_query(params: Mapping[str, Any]) -> str:
    """Stable serialization of search parameters: sorted keys, empties dropped."""
    cleaned = {
        key: str(value)
        for key, value in params.items()
        if value is not None and value != ""
    }
    return json.dumps(cleaned, sort_keys=True, separators=(",", ":"))


class Cache:
    def __init__(self, client=None):
        self.client = client
        settings = get_settings()
        self.product_ttl = settings.PRODUCT_CACHE_TTL
        self.search_ttl = settings.SEARCH_CACHE_TTL
        self.session_ttl = settings.SESSION_CACHE_TTL

    @property
    def available(self) -> bool:
        return self.client is not None

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def _get_json(self, key: str) -> Optional[Any]:
        if self.client is None:
            return None
        try:
            raw = await self.client.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def _set_json(self, key: str, value: Any, ttl: int) -> bool:
        if self.client is None:
            return False
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def _delete(self, *keys: str) -> bool:
        if self.client is None:
            logger.debug(f"Cache unavailable, skipped invalidation of {keys}")
            return False
        try:
            await self.client.delete(*keys)
            return True
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {keys}: {e}")
            return False

    async def _delete_pattern(self, pattern: str) -> bool:
        if self.client is None:
            logger.debug(f"Cache unavailable, skipped invalidation of {pattern}")
            return False
        try:
            keys = [key async for key in self.client.scan_iter(match=pattern)]
            if keys:
                await self.client.delete(*keys)
            return True
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {pattern}: {e}")
            return False

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def get_product(self, product_id) -> Optional[dict]:
        return await self._get_json(PRODUCT_KEY.format(product_id))

    async def set_product(self, product_id, data: dict) -> bool:
        return await self._set_json(PRODUCT_KEY.format(product_id), data, self.product_ttl)

    async def invalidate_product(self, product_id) -> bool:
        return await self._delete(PRODUCT_KEY.format(product_id))

    async def invalidate_products(self, product_ids) -> bool:
        keys = [PRODUCT_KEY.format(pid) for pid in {str(p) for p in product_ids}]
        if not keys:
            return True
        return await self._delete(*keys)

    # ------------------------------------------------------------------
    # Search results
    # ------------------------------------------------------------------

    async def get_search(self, params: Mapping[str, Any]) -> Optional[Any]:
        return await self._get_json(SEARCH_KEY.format(normalize_query(params)))

    async def set_search(self, params: Mapping[str, Any], data: Any) -> bool:
        return await self._set_json(
            SEARCH_KEY.format(normalize_query(params)), data, self.search_ttl
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Optional[dict]:
        return await self._get_json(SESSION_KEY.format(session_id))

    async def set_session(self, session_id: str, data: dict) -> bool:
        return await self._set_json(SESSION_KEY.format(session_id), data, self.session_ttl)

    async def remove_session(self, session_id: str) -> bool:
        return await self._delete(SESSION_KEY.format(session_id))

    # ------------------------------------------------------------------
    # Owner-scoped invalidation
    # ------------------------------------------------------------------

    async def invalidate_user(self, user_id) -> bool:
        return await self._delete_pattern(USER_PATTERN.format(user_id))

    async def invalidate_vendor(self, vendor_id) -> bool:
        return await self._delete_pattern(VENDOR_PATTERN.format(vendor_id))

    async def read_through(
        self,
        getter: Callable[[], Awaitable[Optional[Any]]],
        loader: Callable[[], Awaitable[Optional[Any]]],
        setter: Callable[[Any], Awaitable[bool]],
    ) -> Optional[Any]:
        """Return the cached value, or load, store and return it."""
        cached = await getter()
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await setter(value)
        return value
