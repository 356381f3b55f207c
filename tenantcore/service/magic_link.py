from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode, urlparse

from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.auth import AuthService
from tenantcore.service.errors import (
    AuthenticationError,
    ExpiredError,
    ForbiddenError,
    RateLimitedError,
    ValidationError,
)
from tenantcore.service.invites import normalize_email
from tenantcore.service.notifications import NotificationDispatcher
from tenantcore.service.vault import TokenVault, hash_token
from tenantcore.storage.models import MagicLinkIssue, utcnow

logger = get_logger(__name__)

_THROTTLE_WINDOW = timedelta(hours=1)


class MagicLinkService:
    """Passwordless email sign-in.

    The raw token lives only in the emailed URL; the vault keys it by hash
    and hands it out once. Issuance records are kept in the relational
    store purely to throttle requests per address.
    """

    def __init__(
        self,
        store,
        vault: TokenVault,
        auth: AuthService,
        audit: AuditSink,
        notifications: NotificationDispatcher,
        *,
        ttl_minutes: int = 15,
        max_per_hour: int = 3,
        verify_url: str = "http://localhost:3000/magic-link/verify",
        app_base_url: str = "http://localhost:8000",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.vault = vault
        self.auth = auth
        self.audit = audit
        self.notifications = notifications
        self.ttl_minutes = ttl_minutes
        self.max_per_hour = max_per_hour
        self.verify_url = verify_url
        self.app_base_url = app_base_url
        self._clock = clock

    def _check_redirect(self, redirect_url: Optional[str]) -> Optional[str]:
        if not redirect_url:
            return None
        parsed = urlparse(redirect_url)
        if not parsed.scheme and not parsed.netloc:
            if redirect_url.startswith("/") and not redirect_url.startswith("//"):
                return redirect_url
        else:
            app = urlparse(self.app_base_url)
            if (parsed.scheme, parsed.netloc) == (app.scheme, app.netloc):
                return redirect_url
        raise ValidationError(
            "Redirect URL must stay on this site", detail={"field": "redirect_url"}
        )

    async def request_magic_link(
        self,
        email: str,
        *,
        redirect_url: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Issue and email a sign-in link.

        Unknown addresses get the same response as known ones so the endpoint
        cannot be used to enumerate accounts.
        """
        normalized = normalize_email(email)
        redirect = self._check_redirect(redirect_url)
        now = self._clock()
        expires_at = now + timedelta(minutes=self.ttl_minutes)

        user = self.store.get_user_by_email(normalized)
        if not user:
            logger.info("magic_link_unknown_email")
            return {"expires_at": expires_at}

        recent = self.store.count_magic_links_since(normalized, now - _THROTTLE_WINDOW)
        if recent >= self.max_per_hour:
            logger.warning("magic_link_throttled", user_id=user.id, recent=recent)
            raise RateLimitedError(
                "Too many sign-in links requested. Please try again later.",
                retry_after=int(_THROTTLE_WINDOW.total_seconds()),
            )

        token = await self.vault.issue(
            {"email": normalized, "redirect_url": redirect},
            self.ttl_minutes * 60,
            owner_key=user.id,
        )
        self.store.record_magic_link(
            MagicLinkIssue(
                token_hash=hash_token(token),
                email=normalized,
                created_at=now,
                expires_at=expires_at,
                ip_address=ip_address,
            )
        )
        query = {"token": token}
        if redirect:
            query["redirect"] = redirect
        self.notifications.dispatch(
            "magic_link",
            normalized,
            {
                "url": f"{self.verify_url}?{urlencode(query)}",
                "expires_in_minutes": self.ttl_minutes,
            },
        )
        self.audit.record(
            "magic_link_requested",
            actor_id=user.id,
            resource_type="magic_link",
            details={"expires_at": expires_at.isoformat()},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return {"expires_at": expires_at}

    async def verify_magic_link(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Consume a link and open a session. A second call with the same token fails."""
        entry = await self.vault.consume(token)
        if entry is None:
            raise ExpiredError(
                "This sign-in link is invalid or has expired. Please request a new one.",
                error_code="invalid_token",
            )
        self.store.mark_magic_link_used(hash_token(token), self._clock())

        email = entry.payload.get("email")
        user = self.store.get_user_by_email(email) if email else None
        if not user:
            raise AuthenticationError("User not found")
        if user.status in {"suspended", "deleted"}:
            self.audit.record(
                "login_failed",
                actor_id=user.id,
                resource_type="magic_link",
                details={"reason": "account_disabled"},
                ip_address=ip_address,
                user_agent=user_agent,
                status="failure",
            )
            raise ForbiddenError("This account is disabled", error_code="account_disabled")

        session = self.auth.issue_session(
            user,
            auth_method="magic_link",
            user_agent=user_agent,
            ip_addr=ip_address,
        )
        self.audit.record(
            "magic_link_verified",
            actor_id=user.id,
            resource_type="magic_link",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return {
            "user_id": user.id,
            "email": user.email,
            "redirect_url": entry.payload.get("redirect_url"),
            **session,
        }

    def cleanup_expired(self) -> int:
        """Drop issuance records older than the throttle window and stale local entries."""
        cutoff = self._clock() - _THROTTLE_WINDOW
        removed = self.store.delete_magic_links_before(cutoff)
        removed += self.vault.cleanup_expired()
        return removed
