# src/ligo_session/config.py

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "ligo_session"

# .env is at the project root, two levels up from src/ligo_session/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    logger.info(f"LigoSession: Successfully loaded .env file from: {ENV_FILE_PATH}")
else:
    logger.debug(f"LigoSession: .env file not found at {ENV_FILE_PATH}. Relying on environment variables.")


# Per-environment endpoints, keyed by LIGO_ENVIRONMENT.
ENVIRONMENTS: Dict[str, Dict[str, str]] = {
    "development": {
        "API_URL": "http://localhost:5001",
        "FRONTEND_URL": "http://localhost:3000",
    },
    "staging": {
        "API_URL": "https://stage-ligo.ertiqah.com",
        "FRONTEND_URL": "https://stage-ligo.ertiqah.com",
    },
    "production": {
        "API_URL": "https://ligo.ertiqah.com",
        "FRONTEND_URL": "https://ligo.ertiqah.com",
    },
}

_ENVIRONMENT_ALIASES = {"dev": "development", "stage": "staging", "prod": "production"}


class Settings(BaseSettings):
    # === Environment selection ===
    LIGO_ENVIRONMENT: Literal["development", "staging", "production"] = "production"
    # Optional explicit overrides for the environment table
    API_URL: Optional[AnyHttpUrl] = None
    FRONTEND_URL: Optional[AnyHttpUrl] = None

    # === Session lifecycle ===
    PROFILE_CACHE_TTL_SECONDS: int = 30 * 60
    REFRESH_TIMEOUT_SECONDS: float = 10.0
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    # Requests to these paths may go out without a bearer token
    UNAUTHENTICATED_PATHS: Union[str, List[str]] = ["/auth", "/api/chrome-extension/"]

    # === Credential store ===
    CREDENTIAL_STORE_DIR: Path = Path.home() / ".ligo" / "storage"
    STORE_POLL_INTERVAL_SECONDS: float = 1.0

    # === Background context ===
    UNINSTALL_TOKEN_KEY: SecretStr = SecretStr("xwHEftxwqzwrh62rUaZuV1ZDGGiYyaDq")

    LOG_LEVEL: str = "INFO"

    @property
    def BASE_API_URL(self) -> str:
        if self.API_URL is not None:
            return str(self.API_URL).rstrip("/")
        return ENVIRONMENTS[self.LIGO_ENVIRONMENT]["API_URL"]

    @property
    def BASE_FRONTEND_URL(self) -> str:
        if self.FRONTEND_URL is not None:
            return str(self.FRONTEND_URL).rstrip("/")
        return ENVIRONMENTS[self.LIGO_ENVIRONMENT]["FRONTEND_URL"]

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("LIGO_ENVIRONMENT", mode='before')
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return _ENVIRONMENT_ALIASES.get(v, v)
        return v

    @field_validator("UNAUTHENTICATED_PATHS", mode='before')
    @classmethod
    def parse_comma_separated_paths(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            if not v.strip():
                return []
            return [path.strip() for path in v.split(',') if path.strip()]
        if isinstance(v, (list, tuple)):
            return list(v)
        raise TypeError('UNAUTHENTICATED_PATHS: Expected a comma-separated string or a list.')

    @model_validator(mode='after')
    def check_final_paths_type(self) -> 'Settings':
        if not isinstance(self.UNAUTHENTICATED_PATHS, list):
            raise ValueError(f"UNAUTHENTICATED_PATHS ended up as {type(self.UNAUTHENTICATED_PATHS)}, expected list.")
        if not all(isinstance(item, str) and item.startswith("/") for item in self.UNAUTHENTICATED_PATHS):
            raise ValueError("All items in UNAUTHENTICATED_PATHS must be absolute paths starting with '/'.")
        if self.REFRESH_TIMEOUT_SECONDS <= 0:
            raise ValueError("REFRESH_TIMEOUT_SECONDS must be positive.")
        return self


def configure_logging(level: Optional[str] = None) -> None:
    """
    Logging setup for the process embedding this package; call it once at start-up.
    The package itself never configures handlers.
    """
    resolved = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(PACKAGE_LOGGER).setLevel(resolved)


try:
    settings = Settings()
    logger.debug(f"LigoSession: environment={settings.LIGO_ENVIRONMENT} api={settings.BASE_API_URL}")
except Exception as e:
    logger.error(f"LigoSession: Error instantiating Settings: {e}")
    raise
