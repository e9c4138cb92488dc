import logging
from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

from app.core.errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

MIN_SESSION_SECRET_LENGTH = 32

# Only ever used outside production.
DEV_SESSION_SECRET = "complex_password_at_least_32_characters_long_for_dev"


class Settings(BaseSettings):
    PROJECT_NAME: str = "SIWE Auth"
    VERSION: str = "0.1.0"

    # Application settings
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = []

    # Session cookie
    SESSION_SECRET_KEY: Optional[str] = None
    SESSION_COOKIE_NAME: str = "siwe-session"
    SESSION_DURATION_DAYS: int = 7

    # Challenge message
    MESSAGE_EXPIRATION_MINUTES: int = 10
    STATEMENT: str = "Sign in with Ethereum to the app."

    # Chain access for smart-contract account signatures
    RPC_URLS: Dict[int, str] = {}
    DEFAULT_CHAIN_ID: int = 1
    STRICT_CHAIN_ORACLE: bool = False
    RPC_TIMEOUT_SECONDS: float = 10.0

    class Config:
        env_file = ".env"
        frozen = True

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        return (v or "development").strip().lower()

    @field_validator("SESSION_DURATION_DAYS", "MESSAGE_EXPIRATION_MINUTES")
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number")
        return v

    @field_validator("STATEMENT")
    @classmethod
    def single_line_statement(cls, v: str) -> str:
        # EIP-4361 statements cannot span lines
        v = (v or "").strip()
        if "\n" in v:
            raise ValueError("STATEMENT must be a single line")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def session_max_age_seconds(self) -> int:
        return 60 * 60 * 24 * self.SESSION_DURATION_DAYS


def resolve_session_secret(settings: Settings) -> str:
    """
    Return the secret used to encrypt session tokens.

    - A configured secret must be at least 32 characters long, in every environment.
    - Production requires a configured secret.
    - Other environments fall back to a fixed development secret.

    Raises:
        ConfigurationError: if the secret is too short, or missing in production
    """
    secret = settings.SESSION_SECRET_KEY
    if secret:
        if len(secret) < MIN_SESSION_SECRET_LENGTH:
            raise ConfigurationError(
                f"SESSION_SECRET_KEY must be at least {MIN_SESSION_SECRET_LENGTH} characters long. "
                "Generate a secure secret: `openssl rand -base64 32`"
            )
        return secret

    if settings.is_production:
        raise ConfigurationError(
            "SESSION_SECRET_KEY environment variable is required in production. "
            "Generate a secure 32+ character secret: `openssl rand -base64 32`"
        )

    logger.warning("SESSION_SECRET_KEY is not set, using the development fallback secret")
    return DEV_SESSION_SECRET


@lru_cache
def get_settings() -> Settings:
    return Settings()
