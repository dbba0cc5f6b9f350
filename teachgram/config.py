from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from teachgram.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the Teachgram auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/teachgram", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state between runs",
    )
    shared_fs_root: str = env_field("/srv/teachgram", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")

    # Session tokens
    jwt_issuer: str = env_field("teachgram-api", "JWT_ISSUER")
    jwt_expiration_minutes: int = env_field(
        60,
        "JWT_EXPIRATION_MINUTES",
        description="Lifetime of issued session tokens in minutes",
    )
    jwt_private_key: str | None = env_field(
        None, "JWT_PRIVATE_KEY", description="PEM encoded RSA private key"
    )
    jwt_public_key: str | None = env_field(
        None, "JWT_PUBLIC_KEY", description="PEM encoded RSA public key"
    )
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS")

    # Accounts
    default_role: str = env_field("ROLE_USER", "DEFAULT_ROLE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(
        None,
        "OAUTH_GOOGLE_CLIENT_ID",
        description="When set, Google ID tokens must carry this audience",
    )
    oauth_google_tokeninfo_url: str = env_field(
        GOOGLE_TOKENINFO_URL, "OAUTH_GOOGLE_TOKENINFO_URL"
    )
    oauth_http_timeout: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT")

    cors_allow_origins: str | None = env_field(
        None,
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed CORS origins",
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_expiration_minutes")
    @classmethod
    def _positive_expiration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("JWT_EXPIRATION_MINUTES must be positive")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("JWT_LEEWAY_SECONDS must not be negative")
        return value

    @field_validator("default_role")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("DEFAULT_ROLE must not be empty")
        return value

    @field_validator("jwt_private_key", "jwt_public_key")
    @classmethod
    def _unescape_pem(cls, value: str | None) -> str | None:
        # .env files commonly carry PEM blocks on one line with literal \n
        if value and "\\n" in value:
            return value.replace("\\n", "\n")
        return value

    def allowed_origins(self) -> list[str]:
        if not self.cors_allow_origins:
            return []
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
