# src/ligo_session/session_data.py

from typing import Any, Generic, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .auth_utils import resolve_current_token

T = TypeVar("T")


class TokenSet(BaseModel):
    """
    Credentials as persisted in the credential store.
    `access_token` wins over the legacy single `token` when both are present.
    """
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    legacy_token: Optional[str] = None

    @property
    def current_token(self) -> Optional[str]:
        return resolve_current_token(self.access_token, self.legacy_token)

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


class Profile(BaseModel):
    """
    The user profile served by the API. Only `name` and `avatar_url` matter
    to the session layer; everything else is kept as-is.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("avatar_url", "avatarUrl", "avatar"),
    )

    @property
    def is_complete(self) -> bool:
        return bool(self.name) and bool(self.avatar_url)


class CacheEntry(BaseModel, Generic[T]):
    value: T
    fetched_at: float  # epoch seconds


class SessionState(BaseModel):
    """Derived view of the session; recomputed from the store, never persisted."""
    model_config = ConfigDict(frozen=True)

    is_authenticated: bool = False
    user: Optional[Profile] = None
    is_loading: bool = True


class VerificationResult(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None


class StorageChange(BaseModel):
    key: str
    old_value: Any = None
    new_value: Any = None
