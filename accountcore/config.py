from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from accountcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account-security core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/accountcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/accountcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_cache_fallback: bool = env_field(
        False,
        "ALLOW_CACHE_FALLBACK",
        description="Fall back to the in-process session cache when Redis is unreachable",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("accountcore", "JWT_ISSUER")
    jwt_audience: str = env_field("marketplace-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    two_factor_token_ttl_minutes: int = env_field(
        5,
        "TWO_FACTOR_TOKEN_TTL_MINUTES",
        description="Lifetime of the temporary token handed out while a 2FA code is pending",
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS")
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    rotate_refresh_tokens: bool = env_field(False, "ROTATE_REFRESH_TOKENS")

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS")
    two_factor_lockout_minutes: int = env_field(5, "TWO_FACTOR_LOCKOUT_MINUTES")
    login_rate_limit_per_minute: int = env_field(
        20,
        "LOGIN_RATE_LIMIT_PER_MINUTE",
        description="Login attempts allowed per origin address per minute; 0 disables",
    )

    two_factor_issuer: str = env_field("Marketplace", "TWO_FACTOR_ISSUER")
    two_factor_window_steps: int = env_field(2, "TWO_FACTOR_WINDOW_STEPS")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    two_factor_encryption_key: str | None = env_field(
        None,
        "TWO_FACTOR_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    require_email_verification: bool = env_field(True, "REQUIRE_EMAIL_VERIFICATION")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Marketplace", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    notification_webhook_url: str | None = env_field(
        None,
        "NOTIFICATION_WEBHOOK_URL",
        description="Deliver notification events to this endpoint instead of SMTP",
    )
    notification_webhook_secret: str | None = env_field(None, "NOTIFICATION_WEBHOOK_SECRET")
    notification_timeout_seconds: float = env_field(5.0, "NOTIFICATION_TIMEOUT_SECONDS")

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("max_login_attempts", "two_factor_max_attempts", "backup_code_count")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/accountcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

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
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
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
