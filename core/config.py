"""Application configuration via environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.validators import split_csv

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_SECRET_KEY = "change-me-in-production-0123456789abcdef"


class Settings(BaseSettings):
    """Environment-based configuration. Validated at startup."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    APP_NAME: str = Field(default="pipeline-server", description="Service name for logs and pages")
    ENVIRONMENT: Literal["development", "test", "staging", "production"] = Field(
        default="production",
        validation_alias=AliasChoices("ENVIRONMENT", "NODE_ENV"),
        description="Deployment mode; stack traces are only rendered in development",
    )

    HOST: str = Field(default="0.0.0.0", description="Bind address; 0.0.0.0 for containers")
    PORT: int = Field(default=3000, ge=1, le=65535)

    DATABASE_URL: str = Field(
        default="postgresql://codespace:password@db:5432/mydatabase",
        description="SQLAlchemy connection URL; postgres:// is accepted",
    )

    SECRET_KEY: str = Field(default=DEFAULT_SECRET_KEY, min_length=32)
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_EXPIRE_MINUTES: int = Field(default=30, ge=1)
    ADMIN_USERNAME: str | None = Field(default=None, description="Login allowed to request tokens")
    ADMIN_PASSWORD_HASH: str | None = Field(default=None, description="bcrypt hash for ADMIN_USERNAME")

    ALLOWED_ORIGINS: str = Field(default="*", description="Comma-separated origins or *")
    CORS_METHODS: str = Field(default="GET,HEAD,PUT,PATCH,POST,DELETE")

    RATE_LIMIT_REQUESTS: int = Field(default=100, ge=1)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=15 * 60, ge=1)
    RATE_LIMIT_PREFIXES: str = Field(default="/api/,/users", description="Comma-separated path prefixes")
    RATE_LIMIT_MESSAGE: str = Field(
        default="Too many requests from this IP, please try again after 15 minutes"
    )
    PROTECTED_PREFIXES: str = Field(default="/users", description="Prefixes requiring a bearer token")

    TRUST_PROXY: bool = Field(default=False, description="Trust X-Forwarded-For for client IP")
    PROXY_HEADER_COUNT: int = Field(default=1, ge=0, description="Number of proxies in front")

    COMPRESSION_THRESHOLD_BYTES: int = Field(default=1024, ge=0)
    COMPRESSION_LEVEL: int = Field(default=6, ge=1, le=9)
    BODY_LIMIT_BYTES: int = Field(default=100 * 1024, ge=1)
    HPP_WHITELIST: str = Field(default="", description="Query keys allowed to repeat")

    STATIC_DIR: Path = Field(default=BASE_DIR / "client")
    TEMPLATES_DIR: Path = Field(default=BASE_DIR / "templates")

    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True, description="JSON logs for cloud aggregators")
    SLOW_REQUEST_MS: float = Field(default=500.0, ge=0)

    @model_validator(mode="after")
    def validate_secret(self) -> "Settings":
        if self.is_production and self.SECRET_KEY == DEFAULT_SECRET_KEY:
            raise ValueError("SECRET_KEY must be set explicitly in production")
        return self

    @property
    def allowed_origins_list(self) -> list[str]:
        if self.ALLOWED_ORIGINS.strip() == "*":
            return ["*"]
        return split_csv(self.ALLOWED_ORIGINS)

    @property
    def cors_methods_list(self) -> list[str]:
        return [m.upper() for m in split_csv(self.CORS_METHODS)]

    @property
    def rate_limit_prefixes_list(self) -> list[str]:
        return split_csv(self.RATE_LIMIT_PREFIXES)

    @property
    def protected_prefixes_list(self) -> list[str]:
        return split_csv(self.PROTECTED_PREFIXES)

    @property
    def hpp_whitelist_set(self) -> set[str]:
        return set(split_csv(self.HPP_WHITELIST))

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance. Use for DI; avoids re-reading env on every request."""
    return Settings()
