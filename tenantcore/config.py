from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantcore.logging import get_logger

logger = get_logger(__name__)


class DomainVerificationMode(str, Enum):
    """How tenant domain ownership is checked."""

    MANUAL = "manual"
    DNS_OVER_HTTPS = "dns_over_https"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and access core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, test-only resets).",
    )

    # Sessions issued by the built-in identity provider
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tenantcore", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")

    # Ephemeral secrets
    magic_link_ttl_minutes: int = env_field(15, "MAGIC_LINK_TTL_MINUTES")
    magic_link_max_per_hour: int = env_field(3, "MAGIC_LINK_MAX_PER_HOUR")
    magic_link_base_url: str = env_field(
        "http://localhost:8000/auth/verify", "MAGIC_LINK_BASE_URL"
    )
    bootstrap_token_ttl_seconds: int = env_field(120, "BOOTSTRAP_TOKEN_TTL_SECONDS")
    webauthn_challenge_ttl_minutes: int = env_field(5, "WEBAUTHN_CHALLENGE_TTL_MINUTES")

    # WebAuthn relying party
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("TenantCore", "WEBAUTHN_RP_NAME")
    webauthn_allowed_origins: str = env_field(
        "http://localhost:8000",
        "WEBAUTHN_ALLOWED_ORIGINS",
        description="Comma separated list of origins accepted in clientDataJSON",
    )

    # Invites and membership
    invite_expiration_days: int = env_field(7, "INVITE_EXPIRATION_DAYS")
    invite_max_resends: int = env_field(5, "INVITE_MAX_RESENDS")
    invite_base_url: str = env_field(
        "http://localhost:8000/invite", "INVITE_BASE_URL"
    )
    member_retention_days: int = env_field(30, "MEMBER_RETENTION_DAYS")
    trusted_device_days: int = env_field(30, "TRUSTED_DEVICE_DAYS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantCore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Domain verification
    domain_verification_mode: DomainVerificationMode = env_field(
        DomainVerificationMode.MANUAL, "DOMAIN_VERIFICATION_MODE"
    )
    dns_over_https_url: str = env_field(
        "https://cloudflare-dns.com/dns-query", "DNS_OVER_HTTPS_URL"
    )

    # HTTP surface
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")
    enforce_rate_limits: bool = env_field(True, "ENFORCE_RATE_LIMITS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    maintenance_interval_seconds: int = env_field(900, "MAINTENANCE_INTERVAL_SECONDS")

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

    @property
    def allowed_origins(self) -> list[str]:
        return [
            origin.strip().rstrip("/")
            for origin in self.webauthn_allowed_origins.split(",")
            if origin.strip()
        ]

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("domain_verification_mode")
    @classmethod
    def _validate_domain_mode(
        cls, value: DomainVerificationMode
    ) -> DomainVerificationMode:
        return DomainVerificationMode(value)

    @field_validator(
        "magic_link_ttl_minutes",
        "bootstrap_token_ttl_seconds",
        "webauthn_challenge_ttl_minutes",
        "invite_expiration_days",
        "trusted_device_days",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL settings must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
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
