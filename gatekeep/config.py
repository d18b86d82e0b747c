from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationInfo,
    field_validator,
)

from gatekeep.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Credential store implementations."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session authority."""

    app_name: str = env_field("Gatekeep", "APP_NAME")
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/srv/gatekeep", "STATE_DIR")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Snapshot the in-memory store to STATE_DIR after each write",
    )
    store_timeout_seconds: float = env_field(
        5.0, "STORE_TIMEOUT_SECONDS", description="Upper bound for a single store call"
    )
    notifier_timeout_seconds: float = env_field(
        30.0,
        "NOTIFIER_TIMEOUT_SECONDS",
        description="Upper bound for a single email delivery",
    )

    # Tokens
    jwt_secret: SecretStr = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gatekeep", "JWT_ISSUER")
    jwt_audience: str = env_field("gatekeep-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(7 * 24 * 60, "TOKEN_TTL_MINUTES", gt=0)
    token_refresh_ratio: float = env_field(
        2 / 7,
        "TOKEN_REFRESH_RATIO",
        ge=0.0,
        lt=1.0,
        description="Reissue once remaining lifetime drops below this share of the total",
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS", ge=0)

    # Lockout and recovery
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", gt=0)
    lockout_minutes: int = env_field(10, "LOCKOUT_MINUTES", gt=0)
    reset_code_ttl_minutes: int = env_field(10, "RESET_CODE_TTL_MINUTES", gt=0)
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH", ge=1)
    reset_code_cleanup_interval_seconds: int = env_field(
        300,
        "RESET_CODE_CLEANUP_INTERVAL_SECONDS",
        ge=0,
        description="Sweep expired reset codes this often; 0 disables the sweep",
    )

    # argon2id cost parameters (argon2-cffi defaults)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: SecretStr | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatekeep", "EMAIL_FROM_NAME")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    diagnostic_errors: bool = env_field(
        False,
        "DIAGNOSTIC_ERRORS",
        description="Include sanitized internal detail in 5xx error bodies",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        state_dir = Path(info.data.get("state_dir") or "/srv/gatekeep")
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist signing secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @property
    def token_ttl_seconds(self) -> int:
        return self.token_ttl_minutes * 60

    @property
    def lockout_seconds(self) -> int:
        return self.lockout_minutes * 60


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
