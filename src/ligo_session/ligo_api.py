# src/ligo_session/ligo_api.py

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from .auth_utils import (
    NetworkUnavailable,
    RefreshFailed,
    VerificationFailed,
    VerificationKind,
    build_request_headers,
    mask_token,
)
from .config import Settings, settings as default_settings
from .session_data import VerificationResult

logger = logging.getLogger(__name__)

SEND_CODE_PATH = "/api/chrome-extension/send-verification-code"
VERIFY_CODE_PATH = "/api/chrome-extension/verify-code"
REFRESH_PATH = "/api/refresh"

_SERVER_ERROR_KINDS = {
    VerificationKind.NEW_USER_SIGNUP_REQUIRED.value,
    VerificationKind.EMAIL_SEND_FAILED.value,
    VerificationKind.INVALID_CODE.value,
    VerificationKind.RATE_LIMITED.value,
}


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _verification_error(response: httpx.Response, fallback_message: str, checks_code: bool = False) -> VerificationFailed:
    payload = _json_body(response)
    error_code = payload.get("error")
    message = payload.get("message") or error_code or fallback_message
    if isinstance(error_code, str) and error_code in _SERVER_ERROR_KINDS:
        kind = VerificationKind(error_code)
    elif response.status_code == 429:
        kind = VerificationKind.RATE_LIMITED
    elif checks_code and response.status_code in (400, 401, 403):
        kind = VerificationKind.INVALID_CODE
    else:
        kind = VerificationKind.OTHER
    return VerificationFailed(kind, str(message), status_code=response.status_code)


class LigoApiClient:
    """
    The unauthenticated calls of the LiGo API: the verification exchange and the
    token refresh. Authenticated traffic goes through AuthenticatedRequestClient.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.settings.BASE_API_URL,
            timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _post(self, path: str, token: Optional[str] = None, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.post(path, headers=build_request_headers(token), **kwargs)
        except httpx.RequestError as e:
            logger.error(f"LIGO_API: POST {path} - request error: {e}")
            raise NetworkUnavailable(path, str(e)) from e

    # --- Verification exchange ---

    async def send_verification_code(self, email: str) -> bool:
        try:
            response = await self._post(SEND_CODE_PATH, json={"email": email})
        except NetworkUnavailable as e:
            raise VerificationFailed(VerificationKind.OTHER, str(e)) from e
        if response.is_error:
            error = _verification_error(response, "Failed to send verification code")
            logger.warning(f"LIGO_API: send_verification_code - rejected ({error.kind.value}, status {response.status_code})")
            raise error
        logger.info("LIGO_API: send_verification_code - code sent")
        return True

    async def verify_code(self, email: str, code: str) -> VerificationResult:
        try:
            response = await self._post(VERIFY_CODE_PATH, json={"email": email, "code": code})
        except NetworkUnavailable as e:
            raise VerificationFailed(VerificationKind.OTHER, str(e)) from e
        if response.is_error:
            error = _verification_error(response, "Failed to verify code", checks_code=True)
            logger.warning(f"LIGO_API: verify_code - rejected ({error.kind.value}, status {response.status_code})")
            raise error
        try:
            result = VerificationResult.model_validate(_json_body(response))
        except ValidationError as e:
            raise VerificationFailed(VerificationKind.OTHER, "Verification response did not contain an access token") from e
        logger.info(f"LIGO_API: verify_code - tokens issued (refresh token: {'yes' if result.refresh_token else 'no'})")
        return result

    # --- Token refresh ---

    async def refresh_access_token(self, refresh_token: str) -> str:
        logger.info(f"LIGO_API: refresh_access_token - exchanging refresh token {mask_token(refresh_token)}")
        try:
            response = await self._post(REFRESH_PATH, token=refresh_token)
        except NetworkUnavailable as e:
            raise RefreshFailed(str(e)) from e
        if response.is_error:
            raise RefreshFailed(f"Refresh failed with status {response.status_code}", status_code=response.status_code)
        access_token = _json_body(response).get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise RefreshFailed("Refresh response did not contain an access token", status_code=response.status_code)
        return access_token
