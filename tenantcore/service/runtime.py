from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tenantcore.config import DomainVerificationMode, get_settings, reset_settings_cache
from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.auth import AuthService
from tenantcore.service.bootstrap import BootstrapTokenService
from tenantcore.service.devices import TrustedDeviceService
from tenantcore.service.domains import (
    DnsOverHttpsChecker,
    DomainVerificationService,
    ManualOnlyChecker,
)
from tenantcore.service.invites import InviteService
from tenantcore.service.magic_link import MagicLinkService
from tenantcore.service.membership import MembershipService
from tenantcore.service.notifications import EmailService, NotificationDispatcher
from tenantcore.service.permissions import PERMISSIONS
from tenantcore.service.rate_limit import RateLimitResult, SlidingWindowRateLimiter
from tenantcore.service.rbac import RBACService
from tenantcore.service.vault import TokenVault
from tenantcore.service.webauthn import WebAuthnService
from tenantcore.storage.memory import MemoryStore
from tenantcore.storage.postgres import PostgresStore
from tenantcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for single-use tokens and rate limits; start Redis "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; single-use tokens and "
                    "rate limits are per-process only."
                ),
                mode=fallback_mode,
            )

        self.store.upsert_permissions(PERMISSIONS.values())

        self.audit = AuditSink(self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.notifications = NotificationDispatcher(self.email)
        self.auth = AuthService(self.store, self.settings)
        self.rate_limiter = SlidingWindowRateLimiter(self.cache)

        self.rbac = RBACService(self.store, self.audit)
        self.membership = MembershipService(
            self.store,
            self.rbac,
            self.audit,
            retention_days=self.settings.member_retention_days,
        )
        self.invites = InviteService(
            self.store,
            self.membership,
            self.audit,
            self.notifications,
            expiration_days=self.settings.invite_expiration_days,
            max_resends=self.settings.invite_max_resends,
            accept_url=self.settings.invite_base_url,
        )
        self.magic_links = MagicLinkService(
            self.store,
            TokenVault(self.cache, namespace="magic_link"),
            self.auth,
            self.audit,
            self.notifications,
            ttl_minutes=self.settings.magic_link_ttl_minutes,
            max_per_hour=self.settings.magic_link_max_per_hour,
            verify_url=self.settings.magic_link_base_url,
            app_base_url=self.settings.app_base_url,
        )
        self.bootstrap = BootstrapTokenService(
            self.store,
            TokenVault(self.cache, namespace="bootstrap"),
            self.audit,
            ttl_seconds=self.settings.bootstrap_token_ttl_seconds,
            debug=self.settings.test_mode,
        )
        self.webauthn = WebAuthnService(
            self.store,
            TokenVault(self.cache, namespace="webauthn"),
            self.auth,
            self.audit,
            rp_id=self.settings.webauthn_rp_id,
            rp_name=self.settings.webauthn_rp_name,
            allowed_origins=self.settings.allowed_origins,
            challenge_ttl_seconds=self.settings.webauthn_challenge_ttl_minutes * 60,
        )
        self.devices = TrustedDeviceService(
            self.store, self.audit, trust_days=self.settings.trusted_device_days
        )
        if self.settings.domain_verification_mode == DomainVerificationMode.DNS_OVER_HTTPS:
            checker = DnsOverHttpsChecker(self.settings.dns_over_https_url)
        else:
            checker = ManualOnlyChecker()
        self.domains = DomainVerificationService(self.store, self.audit, checker)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            domain_verification_mode=self.settings.domain_verification_mode.value,
        )

    async def run_maintenance(self) -> dict:
        """Storage hygiene. Nothing here is needed for correctness."""
        return {
            "invites_expired": self.invites.expire_old_invites(),
            "secondary_roles_expired": self.rbac.expire_secondary_assignments(),
            "magic_links_removed": self.magic_links.cleanup_expired(),
            "trusted_devices_removed": self.devices.cleanup_expired(),
            "rate_limit_keys_removed": self.rate_limiter.cleanup_expired(),
            "ephemeral_tokens_removed": (
                self.bootstrap.vault.cleanup_expired() + self.webauthn.vault.cleanup_expired()
            ),
        }

    async def close(self) -> None:
        await self.notifications.drain()
        if self.cache is not None:
            await self.cache.close()
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
) -> RateLimitResult:
    """Count one request against ``key`` using the sliding-window limiter.

    Args:
        runtime: Runtime instance with the limiter
        key: Rate limit subject, e.g. ``user:<id>:POST:/v1/invites``
        limit: Maximum requests per window
        window_seconds: Window duration in seconds

    Returns:
        RateLimitResult with the decision and header values
    """
    if limit <= 0:
        return RateLimitResult(allowed=True, limit=limit, remaining=0, reset_at=0)
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    return await runtime.rate_limiter.hit(key, limit, window_seconds)
