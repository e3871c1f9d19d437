from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from accesscore.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_generate_secret(filename: str) -> str:
    """Return a signing secret persisted under SHARED_FS_ROOT, creating it once."""

    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/accesscore"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Atomic write: temp file in the same directory, then rename
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Environment-level configuration consumed by the access-control core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/accesscore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/accesscore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, memory fallbacks).",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("accesscore", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    token_clock_skew_seconds: int = env_field(
        0,
        "TOKEN_CLOCK_SKEW_SECONDS",
        description="Leeway applied to exp checks during verification",
    )
    refresh_token_hash_key: str | None = env_field(
        None,
        "REFRESH_TOKEN_HASH_KEY",
        description="Key for the stored refresh-token digest; defaults to the refresh secret",
    )
    revoke_chain_on_reuse: bool = env_field(
        False,
        "REVOKE_CHAIN_ON_REUSE",
        description="Revoke every refresh token of a principal when reuse is detected",
    )

    # Sessions
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS")
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    remember_me_ttl_days: int = env_field(30, "REMEMBER_ME_TTL_DAYS")
    suspicious_inactivity_hours: int = env_field(24, "SUSPICIOUS_INACTIVITY_HOURS")

    # MFA
    enable_mfa: bool = env_field(True, "ENABLE_MFA")
    mfa_issuer: str = env_field("AccessCore", "MFA_ISSUER")
    mfa_time_step_seconds: int = env_field(30, "MFA_TIME_STEP_SECONDS")
    mfa_window_steps: int = env_field(1, "MFA_WINDOW_STEPS")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_attempt_window_minutes: int = env_field(15, "MFA_ATTEMPT_WINDOW_MINUTES")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # RBAC / tenancy
    permission_cache_ttl_seconds: int = env_field(30, "PERMISSION_CACHE_TTL_SECONDS")
    cross_tenant_role: str = env_field("Super Admin", "CROSS_TENANT_ROLE")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_generate_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_generate_secret(".jwt_refresh_secret")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_concurrent_sessions",
        "session_ttl_hours",
        "remember_me_ttl_days",
        "mfa_time_step_seconds",
        "mfa_max_attempts",
        "mfa_attempt_window_minutes",
        "mfa_backup_code_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("mfa_window_steps", "token_clock_skew_seconds", "permission_cache_ttl_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _distinct_audience_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def token_hash_key(self) -> str:
        return self.refresh_token_hash_key or self.jwt_refresh_secret


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
