# src/ligo_session/background.py

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from .auth_utils import SessionExpired, build_login_url, build_uninstall_url
from .config import Settings, settings as default_settings
from .credential_store import (
    ACCESS_TOKEN_KEY,
    LEGACY_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    Changes,
    CredentialStore,
    Subscription,
)
from .request_client import AuthenticatedRequestClient

logger = logging.getLogger(__name__)

UrlOpener = Callable[[str], Any]


def _log_url(url: str) -> None:
    logger.info(f"BACKGROUND: open_url - {url}")


class BackgroundService:
    """
    The long-lived background context. It owns no session state of its own;
    it only reads and writes the shared store on behalf of other contexts and
    keeps the uninstall URL in step with the current token.
    """

    def __init__(
        self,
        store: CredentialStore,
        client: AuthenticatedRequestClient,
        open_url: Optional[UrlOpener] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self._store = store
        self._client = client
        self._open_url = open_url or _log_url
        self._subscription: Optional[Subscription] = None
        self.uninstall_url = build_uninstall_url(self.settings.BASE_FRONTEND_URL, None, self._uninstall_key)

    @property
    def _uninstall_key(self) -> str:
        return self.settings.UNINSTALL_TOKEN_KEY.get_secret_value()

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = self._store.subscribe(self._on_store_change)
        await self.update_uninstall_url()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def update_uninstall_url(self) -> str:
        token = (await self._store.read_tokens()).current_token
        self.uninstall_url = build_uninstall_url(self.settings.BASE_FRONTEND_URL, token, self._uninstall_key)
        logger.debug(f"BACKGROUND: update_uninstall_url - token {'present' if token else 'absent'}")
        return self.uninstall_url

    async def _on_store_change(self, changes: Changes) -> None:
        if ACCESS_TOKEN_KEY in changes or LEGACY_TOKEN_KEY in changes:
            await self.update_uninstall_url()

    async def handle_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        action = message.get("action")
        if action == "SET_TOKEN":
            access_token = message.get("accessToken") or message.get("token")
            if not access_token:
                return {"status": "error", "error": "accessToken is required"}
            items = {ACCESS_TOKEN_KEY: access_token}
            if message.get("refreshToken"):
                items[REFRESH_TOKEN_KEY] = message["refreshToken"]
            stored = await self._store.set_many(items)
            return {"status": "success" if stored else "error"}

        if action == "REMOVE_TOKEN":
            removed = await self._store.remove_many([ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY])
            return {"status": "success" if removed else "error"}

        if action in ("GET_TOKEN", "getToken"):
            return {"token": (await self._store.read_tokens()).current_token}

        logger.warning(f"BACKGROUND: handle_message - unknown action: {action!r}")
        return {"status": "error", "error": f"Unknown action: {action}"}

    async def fetch_with_auth(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except SessionExpired:
            self._open_url(build_login_url(self.settings.BASE_FRONTEND_URL, session_expired=True))
            raise
