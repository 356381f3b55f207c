from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

MEMBER_STATUSES = ("active", "suspended", "removed")
INVITE_STATUSES = ("pending", "accepted", "expired", "cancelled")
SECONDARY_STATUSES = ("active", "expired", "revoked")
USER_STATUSES = ("active", "suspended", "deleted")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    status: str = "active"
    webauthn_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    plan: str = "core"
    license_count: int = 1
    owner_user_id: Optional[str] = None
    domain: Optional[str] = None
    domain_verified: bool = False
    domain_verification_token: Optional[str] = None
    domain_verification_method: Optional[str] = None
    domain_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    tenant_id: str
    name: str
    slug: str
    hierarchy_level: int
    is_system: bool = False
    is_protected: bool = False
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    key: str
    name: str
    category: str
    description: str = ""
    requires_mfa: bool = False
    is_critical: bool = False


@dataclass
class RolePermission:
    tenant_id: str
    role_id: str
    permission_key: str
    granted_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantMember:
    id: str
    tenant_id: str
    user_id: str
    role_id: str
    is_owner: bool = False
    status: str = "active"
    joined_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    invited_by: Optional[str] = None
    invite_id: Optional[str] = None
    suspended_at: Optional[datetime] = None
    suspended_by: Optional[str] = None
    suspension_reason: Optional[str] = None
    removed_at: Optional[datetime] = None
    removed_by: Optional[str] = None
    removal_reason: Optional[str] = None
    retention_expires_at: Optional[datetime] = None


@dataclass
class SecondaryRoleAssignment:
    id: str
    tenant_id: str
    user_id: str
    role_id: str
    status: str = "active"
    expires_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    assigned_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    def is_effective(self, now: datetime) -> bool:
        """Active status alone is not enough; expiry is checked at read time."""
        if self.status != "active":
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass
class TenantInvite:
    id: str
    tenant_id: str
    email: str
    role_id: str
    token_hash: str
    expires_at: datetime
    status: str = "pending"
    invited_by: Optional[str] = None
    message: Optional[str] = None
    resend_count: int = 0
    last_resent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    accepted_by_user_id: Optional[str] = None
    member_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MagicLinkIssue:
    """Durable record of a magic link issuance, used for per-email throttling."""

    token_hash: str
    email: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    device_hash: str
    trusted_until: datetime
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class PasskeyCredential:
    id: str
    user_id: str
    credential_id: str
    public_key: bytes
    algorithm: int
    counter: int = 0
    transports: List[str] = field(default_factory=list)
    device_type: str = "singleDevice"
    backed_up: bool = False
    name: Optional[str] = None
    aaguid: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class AuditEvent:
    id: str
    action: str
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str = "success"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    tenant_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    mfa_verified: bool = False
    auth_method: str = "magic_link"
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        tenant_id: str | None = None,
        mfa_verified: bool = False,
        auth_method: str = "magic_link",
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            tenant_id=tenant_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
            mfa_verified=mfa_verified,
            auth_method=auth_method,
            meta=meta,
        )
