# src/ligo_session/auth_utils.py

import base64
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional
from urllib.parse import urlencode

import httpx


# --- Error taxonomy ---

class SessionError(Exception):
    """Base class for everything the session layer raises to UI code."""


class Unauthenticated(SessionError):
    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class SessionExpired(SessionError):
    def __init__(self, message: str = "Session expired - please log in again"):
        super().__init__(message)


class NetworkUnavailable(SessionError):
    def __init__(self, url: str, error_description: Optional[str] = None):
        self.url = url
        self.error_description = error_description
        super().__init__(f"Could not reach {url}: {error_description or 'transport error'}")


class StoreUnavailable(SessionError):
    """Raised by storage backends; the CredentialStore never lets it escape."""


class RefreshFailed(SessionError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class VerificationKind(str, Enum):
    NEW_USER_SIGNUP_REQUIRED = "new_user_signup_required"
    EMAIL_SEND_FAILED = "email_send_failed"
    INVALID_CODE = "invalid_code"
    RATE_LIMITED = "rate_limited"
    OTHER = "other"


class VerificationFailed(SessionError):
    def __init__(self, kind: VerificationKind, message: Optional[str] = None, status_code: Optional[int] = None):
        self.kind = VerificationKind(kind)
        self.status_code = status_code
        super().__init__(message or self.kind.value)


# --- Token helpers ---

def resolve_current_token(access_token: Optional[str], legacy_token: Optional[str]) -> Optional[str]:
    """
    The one place token precedence is decided: access token first, then the
    legacy single token. Empty strings count as absent.
    """
    if access_token:
        return access_token
    if legacy_token:
        return legacy_token
    return None


def build_request_headers(token: Optional[str], headers: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    merged = dict(headers or {})
    merged["Content-Type"] = "application/json"
    if token:
        merged["Authorization"] = f"Bearer {token}"
    else:
        merged.pop("Authorization", None)
    return merged


def mask_token(token: Optional[str]) -> str:
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


def is_unauthenticated_endpoint(url: str, paths: Iterable[str]) -> bool:
    path = httpx.URL(url).path
    return any(marker in path for marker in paths)


# --- Frontend URL builders ---

def encrypt_token(token: str, key: str) -> str:
    """
    XOR the token with `key` and encode it as unpadded URL-safe base64.
    This is obfuscation for the uninstall link, not encryption in any real sense.
    """
    if not key:
        raise ValueError("encrypt_token requires a non-empty key")
    raw, secret = token.encode("utf-8"), key.encode("utf-8")
    mixed = bytes(b ^ secret[i % len(secret)] for i, b in enumerate(raw))
    return base64.urlsafe_b64encode(mixed).decode("ascii").rstrip("=")


def build_uninstall_url(frontend_url: str, token: Optional[str], key: str) -> str:
    base = f"{frontend_url.rstrip('/')}/uninstall-extension"
    if not token:
        return base
    return f"{base}?{urlencode({'data': encrypt_token(token, key)})}"


def build_login_url(frontend_url: str, session_expired: bool = False) -> str:
    params = {"action": "login", "utm_source": "extension-user"}
    if session_expired:
        params["session_expired"] = "true"
    return f"{frontend_url.rstrip('/')}/auth?{urlencode(params)}"
