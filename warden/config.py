from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)


class AuditSinkKind(str, Enum):
    """Where audit entries are mirrored besides the in-memory log."""

    NONE = "none"
    CONSOLE = "console"
    FILE = "file"


MIN_JWT_SECRET_LENGTH = 32
_SECRET_FILE = ".jwt_secret"


def _load_or_create_secret(fs_root: Path) -> str:
    """Return the persisted signing secret under ``fs_root``, creating it once.

    Written through a 0600 temp file renamed into place; a reader never sees
    a partial secret.
    """
    secret_path = fs_root / _SECRET_FILE
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= MIN_JWT_SECRET_LENGTH:
                return persisted

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(generated)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        Path(tmp_path).unlink(missing_ok=True)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin authentication core."""

    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis URL for shared rate-limit counters; in-memory counters when unset",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no account persistence, lenient Redis fallback)",
    )
    persist_accounts: bool = env_field(
        True,
        "PERSIST_ACCOUNTS",
        description="Persist the in-memory account store under SHARED_FS_ROOT/state",
    )
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Refresh token signing key; derived from JWT_SECRET when unset",
    )
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("admin-panel", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1)

    # Sessions and lockout
    session_ttl_minutes: int = env_field(15, "SESSION_TTL_MINUTES", ge=1)
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    account_lookup_timeout_seconds: float = env_field(
        5.0, "ACCOUNT_LOOKUP_TIMEOUT_SECONDS", gt=0
    )

    # Login rate limiting (sliding log per email+ip)
    login_rate_limit_attempts: int = env_field(10, "LOGIN_RATE_LIMIT_ATTEMPTS", ge=1)
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    login_rate_limit_skip_successful: bool = env_field(
        True, "LOGIN_RATE_LIMIT_SKIP_SUCCESSFUL"
    )

    # Maintenance intervals
    session_cleanup_interval_seconds: int = env_field(
        60 * 60, "SESSION_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    rate_limit_cleanup_interval_seconds: int = env_field(
        60, "RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    monitor_check_interval_seconds: int = env_field(
        5 * 60, "MONITOR_CHECK_INTERVAL_SECONDS", ge=1
    )
    monitor_cleanup_interval_seconds: int = env_field(
        60 * 60, "MONITOR_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")

    # Audit trail
    audit_sink: AuditSinkKind = env_field(AuditSinkKind.CONSOLE, "AUDIT_SINK")
    audit_log_path: str | None = env_field(
        None,
        "AUDIT_LOG_PATH",
        description="JSON lines file for the file sink; defaults to SHARED_FS_ROOT/audit/audit.jsonl",
    )
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS", ge=1)

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use X-Forwarded-For as the client IP (only behind a trusted proxy)",
    )

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

    @field_validator("audit_sink", mode="before")
    @classmethod
    def _validate_audit_sink(cls, value: Any) -> AuditSinkKind:
        if isinstance(value, str):
            value = value.strip().lower()
        return AuditSinkKind(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Unset: one generated secret persisted under SHARED_FS_ROOT
        return _load_or_create_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/warden")))

    def resolved_audit_log_path(self) -> Path:
        if self.audit_log_path:
            return Path(self.audit_log_path)
        return Path(self.shared_fs_root) / "audit" / "audit.jsonl"


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
