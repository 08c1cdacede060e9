from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from claimdesk.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the claimdesk API."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    test_mode: bool = env_field(
        False, "TEST_MODE", description="Use throwaway state and skip persistence"
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/claimdesk", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/claimdesk", "SHARED_FS_ROOT")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("claimdesk", "JWT_ISSUER")
    jwt_audience: str = env_field("claimdesk-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", gt=0, description="Access token lifetime"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", gt=0, description="Refresh token and session lifetime"
    )
    token_clock_skew_seconds: int = env_field(0, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)

    lockout_threshold: int = env_field(
        5, "LOCKOUT_THRESHOLD", gt=0, description="Failed logins before the account locks"
    )
    lockout_duration_minutes: int = env_field(
        30, "LOCKOUT_DURATION_MINUTES", gt=0, description="How long a lock lasts"
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _check_secret_length(cls, value: str | None) -> str | None:
        if value is not None and len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if self.environment is Environment.PRODUCTION:
            raise ValueError("JWT_SECRET must be set when APP_ENV=production")
        self.jwt_secret = _load_or_create_secret(Path(self.shared_fs_root))
        return self


def _load_or_create_secret(fs_root: Path) -> str:
    """Reuse the development secret under ``fs_root`` or write a new one."""
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted

    generated = secrets.token_urlsafe(64)
    try:
        # write to a temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(secret_path))
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return generated


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
