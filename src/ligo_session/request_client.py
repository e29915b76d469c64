# src/ligo_session/request_client.py

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from .auth_utils import (
    NetworkUnavailable,
    SessionExpired,
    Unauthenticated,
    build_request_headers,
    is_unauthenticated_endpoint,
    mask_token,
)
from .config import Settings, settings as default_settings
from .credential_store import ACCESS_TOKEN_KEY, CredentialStore
from .ligo_api import LigoApiClient
from .session_data import Profile

logger = logging.getLogger(__name__)

PROFILE_PATH = "/api/user-avatar"

LogoutCascade = Callable[[], Awaitable[Any]]


class AuthenticatedRequestClient:
    """
    Sends requests with the current bearer token and recovers from a 401 by
    refreshing the access token once and retrying the original request once.

    Concurrent 401s in the same context share one refresh per refresh token,
    so the backend never sees the same refresh token replayed.
    """

    def __init__(
        self,
        store: CredentialStore,
        api: LigoApiClient,
        http_client: Optional[httpx.AsyncClient] = None,
        on_session_expired: Optional[LogoutCascade] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self._store = store
        self._api = api
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.settings.BASE_API_URL,
            timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
        )
        self._on_session_expired = on_session_expired or store.clear_session
        self._inflight_refreshes: Dict[str, "asyncio.Future[str]"] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def set_logout_cascade(self, cascade: LogoutCascade) -> None:
        self._on_session_expired = cascade

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        tokens = await self._store.read_tokens()
        token = tokens.current_token
        if token is None and not is_unauthenticated_endpoint(url, self.settings.UNAUTHENTICATED_PATHS):
            logger.info(f"REQUEST_CLIENT: request - no token for {method} {url}, refusing to send")
            raise Unauthenticated()

        response = await self._send(method, url, token, kwargs)
        if response.status_code != httpx.codes.UNAUTHORIZED:
            return response

        # The only retry edge: one refresh, one resend, and whatever comes back is final.
        logger.info(f"REQUEST_CLIENT: request - 401 from {method} {url}, refreshing access token")
        await response.aclose()
        new_token = await self._refreshed_token(token, tokens.refresh_token)
        return await self._send(method, url, new_token, kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def fetch_profile(self) -> Profile:
        response = await self.get(PROFILE_PATH)
        if response.is_error:
            raise NetworkUnavailable(PROFILE_PATH, f"profile fetch returned status {response.status_code}")
        try:
            return Profile.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise NetworkUnavailable(PROFILE_PATH, f"malformed profile response: {e}") from e

    async def _send(self, method: str, url: str, token: Optional[str], options: Dict[str, Any]) -> httpx.Response:
        request_options = dict(options)
        headers = build_request_headers(token, request_options.pop("headers", None))
        try:
            return await self._http.request(method, url, headers=headers, **request_options)
        except httpx.RequestError as e:
            logger.error(f"REQUEST_CLIENT: _send - {method} {url} failed: {e}")
            raise NetworkUnavailable(url, str(e)) from e

    async def _refreshed_token(self, used_token: Optional[str], refresh_token: Optional[str]) -> str:
        if not refresh_token:
            logger.info("REQUEST_CLIENT: _refreshed_token - no refresh token, logging out")
            await self._expire_session()
            raise SessionExpired()

        inflight = self._inflight_refreshes.get(refresh_token)
        if inflight is None:
            # A refresh that finished between our read and our 401 already rotated the token.
            latest = await self._store.read_tokens()
            current = latest.current_token
            if current and current != used_token:
                logger.info(f"REQUEST_CLIENT: _refreshed_token - token already rotated to {mask_token(current)}")
                return current
            # ... or failed, and the logout cascade already cleared the session.
            if not latest.refresh_token:
                logger.info("REQUEST_CLIENT: _refreshed_token - session already cleared, not refreshing again")
                raise SessionExpired()
            refresh_token = latest.refresh_token
            inflight = self._inflight_refreshes.get(refresh_token)
        if inflight is None:
            inflight = asyncio.ensure_future(self._run_refresh(refresh_token))
            self._inflight_refreshes[refresh_token] = inflight
            inflight.add_done_callback(lambda fut: self._forget_refresh(refresh_token, fut))
        else:
            logger.debug(f"REQUEST_CLIENT: _refreshed_token - joining in-flight refresh for {mask_token(refresh_token)}")
        return await asyncio.shield(inflight)

    def _forget_refresh(self, refresh_token: str, future: "asyncio.Future[str]") -> None:
        if self._inflight_refreshes.get(refresh_token) is future:
            del self._inflight_refreshes[refresh_token]

    async def _run_refresh(self, refresh_token: str) -> str:
        try:
            new_token = await asyncio.wait_for(
                self._api.refresh_access_token(refresh_token),
                timeout=self.settings.REFRESH_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"REQUEST_CLIENT: _run_refresh - refresh timed out after {self.settings.REFRESH_TIMEOUT_SECONDS}s")
            await self._expire_session()
            raise SessionExpired() from e
        except Exception as e:
            logger.warning(f"REQUEST_CLIENT: _run_refresh - refresh failed: {e}")
            await self._expire_session()
            raise SessionExpired() from e

        # The retry must not go out before the new token is stored.
        await self._store.set(ACCESS_TOKEN_KEY, new_token)
        logger.info(f"REQUEST_CLIENT: _run_refresh - stored refreshed access token {mask_token(new_token)}")
        return new_token

    async def _expire_session(self) -> None:
        try:
            await self._on_session_expired()
        except Exception as e:
            logger.exception(f"REQUEST_CLIENT: _expire_session - logout cascade raised: {e}")
