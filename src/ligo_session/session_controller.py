# src/ligo_session/session_controller.py

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

import httpx

from .auth_utils import SessionError, VerificationFailed, mask_token
from .credential_store import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    SESSION_KEYS,
    TOKEN_KEYS,
    Changes,
    CredentialStore,
    Subscription,
    apply_token_changes,
)
from .ligo_api import LigoApiClient
from .profile_cache import ProfileCache
from .request_client import AuthenticatedRequestClient
from .session_data import Profile, SessionState, TokenSet

logger = logging.getLogger(__name__)

StateListener = Callable[[SessionState], None]


class SessionController:
    """
    Reactive view of the session for one execution context.

    State is derived from the credential store: on start, after local
    mutations, and whenever another context writes a token key. Transitions
    after start-up are applied optimistically so `is_loading` is only ever
    True before the first check completes.
    """

    def __init__(
        self,
        store: CredentialStore,
        profile_cache: ProfileCache,
        api: LigoApiClient,
        client: AuthenticatedRequestClient,
    ):
        self._store = store
        self._cache = profile_cache
        self._api = api
        self._client = client
        self._client.set_logout_cascade(self.logout)
        self._state = SessionState()
        # Last token set seen in the store, kept current from change notifications.
        self._tokens = TokenSet()
        self._listeners: List[StateListener] = []
        self._subscription: Optional[Subscription] = None
        self._tasks: Set[asyncio.Task] = set()
        # Bumped on every logout so late profile results from before it are dropped.
        self._generation = 0

    # --- Observable state ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    @property
    def user(self) -> Optional[Profile]:
        return self._state.user

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, **changes: Any) -> None:
        new_state = self._state.model_copy(update=changes)
        if new_state == self._state:
            return
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.exception(f"SESSION[{self._store.name}]: state listener failed: {e}")

    # --- Lifecycle ---

    async def start(self) -> SessionState:
        if self._subscription is None:
            self._subscription = self._store.subscribe(self._on_store_change)
        return await self.check_auth()

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    async def __aenter__(self) -> "SessionController":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def wait_idle(self) -> None:
        """Wait for pending store notifications and the work they scheduled."""
        while True:
            await self._store.drain()
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Operations ---

    async def check_auth(self) -> SessionState:
        generation = self._generation
        try:
            self._tokens = await self._store.read_tokens()
            if self._tokens.current_token:
                self._set_state(is_authenticated=True)
                user = await self._cache.read_or_fetch(self._client.fetch_profile)
                if generation == self._generation:
                    self._set_state(user=user)
            else:
                self._set_state(is_authenticated=False, user=None)
                await self._cache.invalidate()
        finally:
            self._set_state(is_loading=False)
        return self._state

    async def refresh_user_profile(self, force_refresh: bool = True) -> Optional[Profile]:
        generation = self._generation
        if not (await self._store.read_tokens()).current_token:
            return None
        user = await self._cache.read_or_fetch(self._client.fetch_profile, force_refresh=force_refresh)
        if generation == self._generation:
            self._set_state(user=user)
        return user

    async def send_verification_code(self, email: str) -> bool:
        return await self._api.send_verification_code(email)

    async def verify(self, email: str, code: str) -> SessionState:
        try:
            result = await self._api.verify_code(email, code)
        except VerificationFailed as e:
            logger.info(f"SESSION[{self._store.name}]: verify - failed ({e.kind.value})")
            raise

        tokens = {ACCESS_TOKEN_KEY: result.access_token}
        if result.refresh_token:
            tokens[REFRESH_TOKEN_KEY] = result.refresh_token
        await self._store.set_many(tokens)
        logger.info(f"SESSION[{self._store.name}]: verify - signed in with {mask_token(result.access_token)}")

        self._generation += 1
        self._set_state(is_authenticated=True, is_loading=False)
        await self.refresh_user_profile(force_refresh=True)
        return self._state

    # Older names kept for callers still using the magic-link wording.
    send_magic_link = send_verification_code
    verify_magic_link = verify

    async def logout(self) -> SessionState:
        self._generation += 1
        self._tokens = TokenSet()
        self._set_state(is_authenticated=False, user=None, is_loading=False)
        if not await self._store.remove_many(SESSION_KEYS):
            logger.warning(f"SESSION[{self._store.name}]: logout - store unavailable, local state cleared anyway")
        logger.info(f"SESSION[{self._store.name}]: logout - session cleared")
        return self._state

    async def get_token(self) -> Optional[str]:
        return (await self._store.read_tokens()).current_token

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self._client.request(method, url, **kwargs)

    # --- Cross-context sync ---

    def _on_store_change(self, changes: Changes) -> None:
        if not any(key in changes for key in TOKEN_KEYS):
            return
        self._tokens = apply_token_changes(self._tokens, changes)
        if self._tokens.current_token:
            if not self._state.is_authenticated:
                logger.info(f"SESSION[{self._store.name}]: token appeared in store, re-checking auth")
                self._schedule(self.check_auth)
            return
        # No current token is left in the store.
        self._generation += 1
        self._set_state(is_authenticated=False, user=None, is_loading=False)
        self._schedule(self._reconcile_after_removal)

    async def _reconcile_after_removal(self) -> None:
        if (await self._store.read_tokens()).current_token:
            await self.check_auth()

    def _schedule(self, operation: Callable[[], Awaitable[Any]]) -> None:
        task = asyncio.ensure_future(self._guarded(operation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, operation: Callable[[], Awaitable[Any]]) -> None:
        try:
            await operation()
        except SessionError as e:
            logger.warning(f"SESSION[{self._store.name}]: background session update failed: {e}")
