from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tasknest.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment (and ``.env``)."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tasknest", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/tasknest", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow resetting the runtime singleton between tests.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tasknest", "JWT_ISSUER")
    jwt_audience: str = env_field("tasknest-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Absolute lifetime of bearer tokens",
    )
    verification_code_ttl_minutes: int = env_field(
        5,
        "VERIFICATION_CODE_TTL_MINUTES",
        description="Lifetime of the code sent at registration",
    )
    reset_code_ttl_minutes: int = env_field(
        10,
        "RESET_CODE_TTL_MINUTES",
        description="Lifetime of the code sent for password resets",
    )
    require_email_verification: bool = env_field(
        True,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Refuse login until the registration code has been verified",
    )
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")
    # Email service settings; when smtp_host is unset codes are only logged
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="STARTTLS when true, implicit TLS otherwise"
    )
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TaskNest", "EMAIL_FROM_NAME")
    max_avatar_bytes: int = env_field(
        2 * 1024 * 1024, "MAX_AVATAR_BYTES", description="Upload limit for profile photos"
    )
    default_avatar_url: str = env_field(
        "https://via.placeholder.com/150", "DEFAULT_AVATAR_URL"
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "verification_code_ttl_minutes",
        "reset_code_ttl_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _warn_short_secret(cls, value: str | None) -> str | None:
        if not value:
            # Token operations fail with a server error until this is set
            logger.warning("jwt_secret_missing")
            return None
        if len(value) < 32:
            logger.warning("jwt_secret_short", length=len(value))
        return value


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
