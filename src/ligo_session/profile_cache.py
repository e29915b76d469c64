# src/ligo_session/profile_cache.py

import logging
import time
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from .credential_store import PROFILE_KEY, PROFILE_KEYS, PROFILE_TIME_KEY, CredentialStore
from .session_data import CacheEntry, Profile

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_TTL_SECONDS = 30 * 60

ProfileFetcher = Callable[[], Awaitable[Profile]]


class ProfileCache:
    """
    TTL cache for the user profile, persisted next to the tokens so every
    context shares it. Construct once per process and hand it to the controller.
    """

    def __init__(
        self,
        store: CredentialStore,
        ttl_seconds: float = DEFAULT_PROFILE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def read(self) -> Optional[CacheEntry[Profile]]:
        values = await self._store.get_many(PROFILE_KEYS)
        raw_profile = values.get(PROFILE_KEY)
        if not raw_profile:
            return None
        try:
            profile = Profile.model_validate(raw_profile)
        except ValidationError as e:
            logger.warning(f"PROFILE_CACHE: read - ignoring malformed cached profile: {e}")
            return None
        raw_time = values.get(PROFILE_TIME_KEY)
        fetched_at = raw_time / 1000.0 if isinstance(raw_time, (int, float)) else 0.0
        return CacheEntry[Profile](value=profile, fetched_at=fetched_at)

    def is_fresh(self, entry: Optional[CacheEntry[Profile]]) -> bool:
        # An incomplete profile is stale no matter how recent it is.
        if entry is None or not entry.value.is_complete:
            return False
        return self._clock() - entry.fetched_at < self.ttl_seconds

    async def write(self, profile: Profile) -> None:
        await self._store.set_many({
            PROFILE_KEY: profile.model_dump(mode="json"),
            PROFILE_TIME_KEY: int(self._clock() * 1000),
        })

    async def invalidate(self) -> None:
        await self._store.remove_many(PROFILE_KEYS)

    async def read_or_fetch(self, fetcher: ProfileFetcher, force_refresh: bool = False) -> Optional[Profile]:
        cached = await self.read()
        if not force_refresh and self.is_fresh(cached):
            return cached.value

        try:
            profile = await fetcher()
        except Exception as e:
            logger.warning(f"PROFILE_CACHE: read_or_fetch - fetch failed, falling back to cache ({'hit' if cached else 'miss'}): {e}")
            return cached.value if cached is not None else None

        await self.write(profile)
        return profile
