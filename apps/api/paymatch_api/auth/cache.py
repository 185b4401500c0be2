"""Read-through cache of profile and organization rows on Redis.

Keys: ``{prefix}:{identifier}`` with TTLs from CACHE_TTL. Every operation is
best-effort: Redis failures are logged and reported as a miss / False.
"""

import logging
from typing import Any, Optional

import redis
from sqlalchemy.orm import Session

from paymatch_api.config.redis_config import CACHE_TTL, KEY_PREFIXES
from paymatch_api.db.models import OrganizationUser
from paymatch_api.db.redis_client import RedisClient, get_json, set_json

logger = logging.getLogger(__name__)


def cache_key(prefix_name: str, identifier: str) -> str:
    return f"{KEY_PREFIXES[prefix_name]}:{identifier}"


class CacheService:
    """Profile / organization cache bound to a Redis client."""

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis = redis_client or RedisClient.get_client()

    def _set(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        try:
            set_json(self.redis, key, value, ttl)
            return True
        except redis.RedisError as e:
            logger.warning("cache.set_failed", extra={"cache_key": key, "error": str(e)})
            return False

    def _get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            return get_json(self.redis, key)
        except redis.RedisError as e:
            logger.warning("cache.get_failed", extra={"cache_key": key, "error": str(e)})
            return None

    def _delete(self, *keys: str) -> bool:
        try:
            self.redis.delete(*keys)
            return True
        except redis.RedisError as e:
            logger.warning("cache.delete_failed", extra={"cache_keys": list(keys), "error": str(e)})
            return False

    # User profile

    def cache_user_profile(self, user_id: str, profile: dict[str, Any]) -> bool:
        return self._set(cache_key("USER_PROFILE", user_id), profile, CACHE_TTL["USER_PROFILE"])

    def get_cached_user_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        return self._get(cache_key("USER_PROFILE", user_id))

    def invalidate_user_profile_cache(self, user_id: str) -> bool:
        return self._delete(cache_key("USER_PROFILE", user_id))

    # Organization (stored per member so the lookup needs only the user id)

    def cache_organization(self, user_id: str, organization: dict[str, Any]) -> bool:
        return self._set(cache_key("ORGANIZATION", user_id), organization, CACHE_TTL["ORGANIZATION"])

    def get_cached_organization(self, user_id: str) -> Optional[dict[str, Any]]:
        return self._get(cache_key("ORGANIZATION", user_id))

    def invalidate_organization_cache(self, user_id: str) -> bool:
        return self._delete(cache_key("ORGANIZATION", user_id))

    def clear_organization_caches(self, member_user_ids: list[str]) -> bool:
        """Drop the cached organization of every member."""
        if not member_user_ids:
            return True
        return self._delete(*[cache_key("ORGANIZATION", uid) for uid in member_user_ids])

    def clear_user_caches(self, user_id: str) -> bool:
        """Drop every cache entry keyed by the user (profile, organization, session)."""
        return self._delete(
            cache_key("USER_PROFILE", user_id),
            cache_key("ORGANIZATION", user_id),
            cache_key("SESSION", user_id),
        )


def invalidate_organization_members(
    db: Session, organization_id: str, cache: Optional[CacheService] = None
) -> bool:
    """Invalidate the cached organization for every member of ``organization_id``."""
    try:
        cache = cache or CacheService()
        member_ids = [
            row.user_id
            for row in db.query(OrganizationUser.user_id)
            .filter(OrganizationUser.organization_id == organization_id)
            .all()
        ]
        return cache.clear_organization_caches(member_ids)
    except Exception as e:
        logger.warning(
            "cache.org_invalidation_failed",
            extra={"organization_id": organization_id, "error": str(e)},
        )
        return False
