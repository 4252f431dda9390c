from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from credvault.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/credvault", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/credvault", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, local rate limits).",
    )

    # Token issuance
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("credvault", "JWT_ISSUER")
    jwt_audience: str = env_field("credvault-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token TTL in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL in minutes",
    )
    temporary_token_ttl_minutes: int = env_field(
        20,
        "TEMPORARY_TOKEN_TTL_MINUTES",
        description="Lifetime of email verification and password reset links",
    )
    token_clock_skew_seconds: int = env_field(
        30,
        "TOKEN_CLOCK_SKEW_SECONDS",
        description="Leeway applied to exp/iat when verifying tokens",
    )
    refresh_token_gc_grace_days: int = env_field(
        30,
        "REFRESH_TOKEN_GC_GRACE_DAYS",
        description="Keep expired refresh rows this long so replays are still recognised",
    )
    refresh_token_gc_interval_seconds: int = env_field(
        3600, "REFRESH_TOKEN_GC_INTERVAL_SECONDS"
    )

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_success_redirect_url: str | None = env_field(
        None,
        "OAUTH_SUCCESS_REDIRECT_URL",
        description="Where the browser lands after a successful provider login",
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Credvault", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cookie_secure: bool = env_field(
        True,
        "COOKIE_SECURE",
        description="Mark the refresh cookie Secure; disable only for plain-http local development",
    )
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed browser origins",
    )

    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    admin_rate_limit_per_minute: int = env_field(30, "ADMIN_RATE_LIMIT_PER_MINUTE")

    profile_cache_ttl_seconds: int = env_field(
        3600,
        "PROFILE_CACHE_TTL_SECONDS",
        description="TTL of the cached /me projection",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, falling back to ``.env``."""
        dotenv = dotenv_values(".env")
        values: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            key = _env_name(name, field.json_schema_extra)
            raw = os.environ.get(key, dotenv.get(key))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes", "temporary_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            return _load_or_create_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/credvault")))
        if len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters")
        return value


def _env_name(field_name: str, extra: Any) -> str:
    if isinstance(extra, dict) and extra.get("env"):
        return extra["env"]
    return field_name.upper()


def _load_or_create_secret(root: Path) -> str:
    """Return the signing secret stored under ``root``, creating it on first use.

    Tokens signed with a generated secret stay valid across restarts as long as
    ``root`` is persistent and shared between workers.
    """
    path = root / ".jwt_secret"
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        pass  # mounted volume owned by another uid
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup_failed", path=str(root), error=str(exc))

    if path.is_file() and not path.is_symlink():
        try:
            stored = path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(path), error=str(exc))
        else:
            if len(stored) >= _MIN_SECRET_LENGTH:
                return stored

    secret = secrets.token_urlsafe(64)
    staging: str | None = None
    try:
        fd, staging = tempfile.mkstemp(dir=str(root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(staging, path)
    except OSError as exc:
        if staging and os.path.exists(staging):
            os.unlink(staging)
        logger.error("jwt_secret_persist_failed", path=str(path), error=str(exc))
        raise RuntimeError(
            "could not store a generated JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(path))
    return secret


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
