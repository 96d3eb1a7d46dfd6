
from typing import Annotated, List
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

class Settings(BaseSettings):
    ENV: str = "dev"
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///data/gmail_link.sqlite3"

    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_BASE: str = "http://localhost:8000"
    ALLOWED_REDIRECT_HOSTS: Annotated[List[str], NoDecode] = ["localhost", "127.0.0.1"]

    # urlsafe base64 of 32 bytes (Fernet key)
    ENCRYPTION_KEY: str = ""
    API_INTERNAL_KEY: str = ""
    INTERNAL_ALLOWED_IPS: Annotated[List[str], NoDecode] = []

    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_PER_KEY: int = 120
    RATE_LIMIT_MAX_PER_PRINCIPAL: int = 60

    OAUTH_STATE_TTL_SECONDS: int = 600
    TOKEN_REFRESH_THRESHOLD_SECONDS: int = 300
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    DEFAULT_SCOPES: Annotated[List[str], NoDecode] = ["read"]

    CORS_ORIGINS: Annotated[List[str], NoDecode] = []

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator(
        "ALLOWED_REDIRECT_HOSTS", "INTERNAL_ALLOWED_IPS", "CORS_ORIGINS", "DEFAULT_SCOPES",
        mode="before",
    )
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @property
    def oauth_redirect_uri(self) -> str:
        # single source of truth for the callback URL
        return f"{self.GOOGLE_REDIRECT_BASE.rstrip('/')}/oauth/callback"

settings = Settings()
