# src/ligo_session/context.py

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from .config import Settings, settings as default_settings
from .credential_store import CredentialStore, DirectoryBackend, StorageBackend
from .ligo_api import LigoApiClient
from .profile_cache import ProfileCache
from .request_client import AuthenticatedRequestClient
from .session_controller import SessionController

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """Everything one execution context (popup, side panel, ...) needs, wired together."""
    store: CredentialStore
    profile_cache: ProfileCache
    api: LigoApiClient
    client: AuthenticatedRequestClient
    controller: SessionController
    http_client: httpx.AsyncClient
    owns_http_client: bool
    settings: Settings
    watcher: Optional["asyncio.Task[None]"] = field(default=None)

    def start_store_watcher(self) -> Optional["asyncio.Task[None]"]:
        """Poll a directory store so writes from other processes reach this context."""
        backend = self.store.backend
        if self.watcher is None and isinstance(backend, DirectoryBackend):
            self.watcher = asyncio.create_task(backend.watch(self.settings.STORE_POLL_INTERVAL_SECONDS))
        return self.watcher

    async def aclose(self) -> None:
        if self.watcher is not None:
            self.watcher.cancel()
            await asyncio.gather(self.watcher, return_exceptions=True)
            self.watcher = None
        await self.controller.close()
        await self.store.close()
        if self.owns_http_client:
            await self.http_client.aclose()


def default_backend(settings: Optional[Settings] = None) -> DirectoryBackend:
    settings = settings or default_settings
    return DirectoryBackend(settings.CREDENTIAL_STORE_DIR)


def create_context(
    backend: StorageBackend,
    name: str,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Optional[Callable[[], float]] = None,
) -> SessionContext:
    settings = settings or default_settings
    owns_http_client = http_client is None
    http_client = http_client or httpx.AsyncClient(
        base_url=settings.BASE_API_URL,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )

    store = CredentialStore(backend, name=name)
    cache_kwargs = {"ttl_seconds": settings.PROFILE_CACHE_TTL_SECONDS}
    if clock is not None:
        cache_kwargs["clock"] = clock
    profile_cache = ProfileCache(store, **cache_kwargs)
    api = LigoApiClient(http_client=http_client, settings=settings)
    client = AuthenticatedRequestClient(store, api, http_client=http_client, settings=settings)
    controller = SessionController(store, profile_cache, api, client)

    logger.debug(f"CONTEXT: create_context - '{name}' wired against {settings.BASE_API_URL}")
    return SessionContext(
        store=store,
        profile_cache=profile_cache,
        api=api,
        client=client,
        controller=controller,
        http_client=http_client,
        owns_http_client=owns_http_client,
        settings=settings,
    )
