"""Identity verification service — orchestrates client + Redis cache."""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from src.config import settings
from src.integrations.identity.client import IdentityClient, identity_client
from src.models.enums import Edition

logger = logging.getLogger(__name__)

_CACHE_KEY_PREFIX = "identity:"


def _cache_key(edition: Edition, handle: str) -> str:
    return f"{_CACHE_KEY_PREFIX}{edition.value}:{handle.lower()}"


class IdentityVerifier:
    """IdentityVerifier collaborator: ``exists(edition, handle) -> bool``.

    Only positive answers are cached: a "not found" may be a typo the
    applicant fixes a minute later, or a registry hiccup.
    """

    def __init__(self, client: IdentityClient | None = None, redis: aioredis.Redis | None = None) -> None:
        self._client = client or identity_client
        self._redis = redis

    def bind_cache(self, redis: aioredis.Redis | None) -> None:
        self._redis = redis

    async def exists(self, edition: Edition, handle: str) -> bool:
        handle = handle.strip()
        if not handle:
            return False

        key = _cache_key(edition, handle)
        if self._redis is not None:
            try:
                if await self._redis.get(key):
                    logger.debug("Identity cache hit: %s", key)
                    return True
            except Exception:
                logger.warning("Identity cache read failed for %s", key)

        found = await self._client.exists(edition, handle)

        if found and self._redis is not None:
            try:
                await self._redis.setex(key, settings.registry.identity_cache_ttl, "1")
            except Exception:
                logger.warning("Failed to cache identity result for %s", key)

        return found


# Module-level singleton; main binds the Redis connection at startup
identity_verifier = IdentityVerifier()
