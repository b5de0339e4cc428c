"""Cache invalidation for finalized exam attempts"""
import logging

from app.core.cache import CacheManager
from app.core.cache_config import CACHE_KEYS, CACHE_PREFIXES

logger = logging.getLogger(__name__)

class AttemptCacheInvalidator:
    """Clears cached result views when an attempt reaches a terminal state"""

    def __init__(self, cache: CacheManager):
        self.cache = cache

    async def invalidate_attempt_results(self, attempt_id: int):
        await self.cache.delete(CACHE_KEYS["attempt_results"].format(attempt_id))
        logger.debug(f"Invalidated results cache for attempt {attempt_id}")

    async def invalidate_my_results(self, user_id: int):
        count = await self.cache.delete_prefix(CACHE_PREFIXES["my_results"].format(user_id))
        logger.debug(f"Invalidated {count} results listing entries for user {user_id}")

    async def invalidate_attempt(self, attempt_id: int, user_id: int):
        await self.invalidate_attempt_results(attempt_id)
        await self.invalidate_my_results(user_id)
        logger.info(f"Invalidated cache for attempt {attempt_id} of user {user_id}")
