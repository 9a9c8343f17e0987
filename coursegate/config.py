from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from coursegate.service.security import MAX_PASSWORD_COST, MIN_PASSWORD_COST


def env_field(default: Any, env: str, **kwargs: Any):
    """Declare a settings field bound to an environment variable name."""
    return Field(default, json_schema_extra={"env": env}, **kwargs)


class Settings(BaseModel):
    # Infrastructure
    database_url: str = env_field(
        "postgresql://localhost:5432/coursegate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_socket_timeout_seconds: float = env_field(
        5.0, "REDIS_SOCKET_TIMEOUT_SECONDS"
    )
    database_connect_timeout_seconds: int = env_field(
        5, "DATABASE_CONNECT_TIMEOUT_SECONDS"
    )
    database_statement_timeout_ms: int = env_field(
        5000, "DATABASE_STATEMENT_TIMEOUT_MS"
    )
    database_pool_min_size: int = env_field(2, "DATABASE_POOL_MIN_SIZE")
    database_pool_max_size: int = env_field(10, "DATABASE_POOL_MAX_SIZE")

    # Password hashing: log2 work factor, same scale as bcrypt salt rounds
    password_hash_cost: int = env_field(
        12,
        "BCRYPT_SALT_ROUNDS",
        description="Adaptive hash work factor (log2); 12 maps to 64 MiB argon2 memory",
    )

    # Sessions
    session_cache_ttl_seconds: int = env_field(300, "SESSION_CACHE_TTL_SECONDS")
    session_max_age_days: int = env_field(30, "SESSION_MAX_AGE_DAYS")
    session_revoked_retention_days: int = env_field(
        7, "SESSION_REVOKED_RETENTION_DAYS"
    )
    session_cleanup_enabled: bool = env_field(True, "SESSION_CLEANUP_ENABLED")
    session_cleanup_interval_seconds: int = env_field(
        60 * 60, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )
    session_cleanup_batch_size: int = env_field(1000, "SESSION_CLEANUP_BATCH_SIZE")
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    admin_session_cookie_name: str = env_field(
        "admin_session_id", "ADMIN_SESSION_COOKIE_NAME"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Password reset
    password_reset_token_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TOKEN_TTL_MINUTES"
    )
    password_reset_cooldown_seconds: int = env_field(
        60, "PASSWORD_RESET_COOLDOWN_SECONDS"
    )
    password_reset_max_attempts: int = env_field(5, "PASSWORD_RESET_MAX_ATTEMPTS")

    # OAuth (Google)
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")

    # Frontends (reset links, OAuth landing)
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    admin_frontend_url: str = env_field("http://localhost:3001", "ADMIN_FRONTEND_URL")

    # SMTP / Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Coursegate", "EMAIL_FROM_NAME")

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

    @field_validator("password_hash_cost")
    @classmethod
    def _validate_hash_cost(cls, value: int) -> int:
        if not MIN_PASSWORD_COST <= value <= MAX_PASSWORD_COST:
            raise ValueError(
                f"BCRYPT_SALT_ROUNDS must be between {MIN_PASSWORD_COST} and {MAX_PASSWORD_COST}"
            )
        return value

    @field_validator(
        "session_cache_ttl_seconds",
        "session_max_age_days",
        "session_cleanup_interval_seconds",
        "session_cleanup_batch_size",
        "password_reset_token_ttl_minutes",
        "password_reset_max_attempts",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be a positive integer")
        return value

    @field_validator("session_revoked_retention_days", "password_reset_cooldown_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @field_validator("frontend_url", "admin_frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def google_oauth_configured(self) -> bool:
        return bool(
            self.google_client_id
            and self.google_client_secret
            and self.google_redirect_uri
        )


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
