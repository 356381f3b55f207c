from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantcore.service.membership import MembershipService
from tenantcore.service.notifications import NotificationDispatcher
from tenantcore.service.permissions import OWNER_SLUG
from tenantcore.service.vault import generate_token, hash_token
from tenantcore.storage.errors import ConstraintViolation
from tenantcore.storage.models import INVITE_STATUSES, TenantInvite, TenantMember, new_id, utcnow

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized) or len(normalized) > 320:
        raise ValidationError("Invalid email address", detail={"field": "email"})
    return normalized


class InviteService:
    """Tenant invitations: pending -> accepted | expired | cancelled.

    Only the SHA-256 of an invite token is persisted; the raw value leaves
    this service once, inside the invitation notification (and to the
    caller of ``create_invite``/``resend_invite`` so it can be surfaced in
    dev tooling). Expiry is detected lazily on listing and on acceptance.
    """

    def __init__(
        self,
        store,
        membership: MembershipService,
        audit: AuditSink,
        notifications: NotificationDispatcher,
        *,
        expiration_days: int = 7,
        max_resends: int = 5,
        accept_url: str = "http://localhost:3000/invite/accept",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.membership = membership
        self.audit = audit
        self.notifications = notifications
        self.expiration_days = expiration_days
        self.max_resends = max_resends
        self.accept_url = accept_url
        self._clock = clock
        self.logger = get_logger(__name__)

    def _expires_at(self) -> datetime:
        return self._clock() + timedelta(days=self.expiration_days)

    def _get_invite(self, tenant_id: str, invite_id: str) -> TenantInvite:
        invite = self.store.get_invite(invite_id)
        if not invite or invite.tenant_id != tenant_id:
            raise NotFoundError("Invite not found", detail={"invite_id": invite_id})
        return invite

    def _send(self, template: str, invite: TenantInvite, token: str) -> None:
        tenant = self.store.get_tenant(invite.tenant_id)
        role = self.store.get_role(invite.role_id)
        inviter = self.store.get_user(invite.invited_by) if invite.invited_by else None
        inviter_name = None
        if inviter:
            full = f"{inviter.first_name or ''} {inviter.last_name or ''}".strip()
            inviter_name = full or inviter.email
        self.notifications.dispatch(
            template,
            invite.email,
            {
                "url": f"{self.accept_url}?{urlencode({'token': token})}",
                "tenant_name": tenant.name if tenant else None,
                "role_name": role.name if role else None,
                "inviter_name": inviter_name,
                "message": invite.message,
                "expires_in_days": self.expiration_days,
            },
        )

    def create_invite(
        self,
        tenant_id: str,
        email: str,
        role_id: str,
        *,
        actor_id: str,
        message: Optional[str] = None,
    ) -> Tuple[TenantInvite, str]:
        """Create a pending invite and dispatch the invitation email.

        Checks run in a fixed order: seat limit, pending duplicate, existing
        membership, then the role. Returns the invite and its raw token.
        """
        normalized = normalize_email(email)
        if message is not None and len(message) > 1000:
            raise ValidationError("Message is too long", detail={"field": "message"})

        self.membership.ensure_seat_available(tenant_id)

        self.expire_old_invites(tenant_id)
        if self.store.get_pending_invite(tenant_id, normalized):
            raise ConflictError("An active invite already exists for this email address.")

        user = self.store.get_user_by_email(normalized)
        if user:
            existing = self.store.get_member(tenant_id, user.id)
            if existing and existing.status == "active":
                raise ConflictError("This user is already a member of this workspace.")
            if existing and existing.status == "suspended":
                raise ConflictError(
                    "This user is currently suspended. Unsuspend them instead of "
                    "sending a new invite."
                )

        role = self.store.get_role(role_id)
        if not role or role.tenant_id != tenant_id:
            raise NotFoundError("Invalid role for this workspace.", detail={"role_id": role_id})
        if role.slug == OWNER_SLUG:
            raise ForbiddenError(
                "Cannot invite users with the Owner role.", error_code="owner_immutable"
            )

        token = generate_token()
        invite = TenantInvite(
            id=new_id(),
            tenant_id=tenant_id,
            email=normalized,
            role_id=role.id,
            token_hash=hash_token(token),
            expires_at=self._expires_at(),
            invited_by=actor_id,
            message=message,
            created_at=self._clock(),
        )
        try:
            invite = self.store.create_invite(invite)
        except ConstraintViolation as exc:
            raise ConflictError(
                "An active invite already exists for this email address.", detail=exc.detail
            )
        self._send("tenant_invite", invite, token)
        self.audit.record(
            "user_invite",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="invite",
            resource_id=invite.id,
            details={"role_id": role.id},
        )
        self.logger.info("invite_created", tenant_id=tenant_id, invite_id=invite.id)
        return invite, token

    def list_invites(self, tenant_id: str, status: Optional[str] = None) -> List[TenantInvite]:
        if status is not None and status not in INVITE_STATUSES:
            raise ValidationError("Unknown invite status", detail={"status": status})
        self.expire_old_invites(tenant_id)
        return self.store.list_invites(tenant_id, status)

    def get_pending_invites(self, tenant_id: str) -> List[TenantInvite]:
        self.expire_old_invites(tenant_id)
        invites = self.store.list_invites(tenant_id, "pending")
        return sorted(invites, key=lambda i: i.created_at)

    def expire_old_invites(self, tenant_id: Optional[str] = None) -> int:
        count = self.store.expire_invites(self._clock(), tenant_id)
        if count:
            self.logger.info("invites_expired", tenant_id=tenant_id, count=count)
        return count

    def get_invite_stats(self, tenant_id: str) -> Dict[str, int]:
        self.expire_old_invites(tenant_id)
        stats = {status: 0 for status in INVITE_STATUSES}
        for invite in self.store.list_invites(tenant_id):
            if invite.status in stats:
                stats[invite.status] += 1
        return stats

    def resend_invite(
        self, tenant_id: str, invite_id: str, *, actor_id: str
    ) -> Tuple[TenantInvite, str]:
        """Rotate the token and push the expiry. The previous link stops working."""
        invite = self._get_invite(tenant_id, invite_id)
        if invite.status == "pending" and invite.expires_at <= self._clock():
            self.store.update_invite(invite.id, status="expired")
            invite.status = "expired"
        if invite.status != "pending":
            raise ConflictError(f"Cannot resend invite with status '{invite.status}'.")
        if invite.resend_count >= self.max_resends:
            raise ConflictError(
                f"Maximum resend limit ({self.max_resends}) reached. Please cancel "
                "and create a new invite.",
                error_code="resend_limit_exceeded",
                detail={"resend_count": invite.resend_count},
            )
        token = generate_token()
        now = self._clock()
        updated = self.store.update_invite(
            invite.id,
            token_hash=hash_token(token),
            expires_at=self._expires_at(),
            resend_count=invite.resend_count + 1,
            last_resent_at=now,
        )
        self._send("tenant_invite_resend", updated, token)
        self.audit.record(
            "invite_resend",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="invite",
            resource_id=invite.id,
            details={"resend_count": updated.resend_count},
        )
        return updated, token

    def cancel_invite(self, tenant_id: str, invite_id: str, *, actor_id: str) -> TenantInvite:
        invite = self._get_invite(tenant_id, invite_id)
        if invite.status != "pending":
            raise ConflictError(f"Cannot cancel invite with status '{invite.status}'.")
        updated = self.store.update_invite(
            invite.id,
            status="cancelled",
            cancelled_at=self._clock(),
            cancelled_by=actor_id,
        )
        self.audit.record(
            "invite_cancel",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="invite",
            resource_id=invite.id,
        )
        return updated

    def _lookup_token(self, token: str) -> TenantInvite:
        if not token:
            raise ValidationError("Invite token is required", detail={"field": "token"})
        invite = self.store.get_invite_by_token_hash(hash_token(token))
        if not invite:
            raise NotFoundError("Invalid or expired invite link.", error_code="invalid_token")
        return invite

    def _ensure_open(self, invite: TenantInvite) -> None:
        if invite.status == "pending" and invite.expires_at <= self._clock():
            self.store.update_invite(invite.id, status="expired")
            invite.status = "expired"
        if invite.status == "expired":
            raise ExpiredError("This invite has expired. Please request a new invitation.")
        if invite.status != "pending":
            raise ConflictError(f"This invite has already been {invite.status}.")

    def preview_invite(self, token: str) -> Dict[str, object]:
        """Read-only view for the acceptance page. Does not consume the token."""
        invite = self._lookup_token(token)
        self._ensure_open(invite)
        tenant = self.store.get_tenant(invite.tenant_id)
        role = self.store.get_role(invite.role_id)
        return {
            "invite_id": invite.id,
            "email": invite.email,
            "tenant_id": invite.tenant_id,
            "tenant_name": tenant.name if tenant else None,
            "role_name": role.name if role else None,
            "expires_at": invite.expires_at,
        }

    def accept_invite(self, token: str, user_id: str) -> Tuple[TenantInvite, TenantMember]:
        """Consume an invite for ``user_id``.

        Sequence: validate, mutate membership, mark the invite accepted, then
        audit. The invite flips to accepted only after the membership write,
        so a crash in between leaves the token usable and the retry finds
        the membership it already created.
        """
        invite = self._lookup_token(token)
        self._ensure_open(invite)

        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        if user.email.strip().lower() != invite.email.lower():
            raise ForbiddenError(
                "This invite was sent to a different email address.",
                error_code="email_mismatch",
            )

        existing = self.store.get_member(invite.tenant_id, user.id)
        if existing and existing.status == "active" and existing.invite_id == invite.id:
            member = existing
        elif existing and existing.status == "active":
            raise ConflictError("You are already a member of this workspace.")
        else:
            member = self.membership.add_member(
                invite.tenant_id,
                user.id,
                invite.role_id,
                actor_id=invite.invited_by,
                invite_id=invite.id,
            )

        accepted_at = self._clock()
        if not self.store.mark_invite_accepted(
            invite.id,
            invite.token_hash,
            user_id=user.id,
            member_id=member.id,
            accepted_at=accepted_at,
        ):
            raise ConflictError("This invite has already been accepted.")

        self.audit.record(
            "invite_accept",
            actor_id=user.id,
            tenant_id=invite.tenant_id,
            resource_type="invite",
            resource_id=invite.id,
            details={"member_id": member.id},
        )
        self.logger.info("invite_accepted", tenant_id=invite.tenant_id, invite_id=invite.id)
        return self.store.get_invite(invite.id), member
