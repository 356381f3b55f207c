from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tenantcore.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_a_member",
    "permission_denied",
    "plan_limit_exceeded",
    "mfa_required",
    "owner_immutable",
    "account_disabled",
    "email_mismatch",
    "possible_clone",
    "not_found",
    "conflict",
    "resend_limit_exceeded",
    "expired",
    "invalid_token",
    "challenge_expired",
    "verification_failed",
    "credential_not_found",
    "rate_limited",
    "validation_error",
    "server_error",
    "upstream_unavailable",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?$")


def _validate_email(value: str) -> str:
    """Lowercase and syntax-check an email address."""
    normalized = unicodedata.normalize("NFKC", (value or "").strip()).lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if normalized.count("@") != 1:
        raise ValueError("invalid email address format")
    local, domain = normalized.split("@")
    if not local or not domain:
        raise ValueError("invalid email address format")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_slug(value: str) -> str:
    value = (value or "").strip().lower()
    if not _SLUG_PATTERN.match(value):
        raise ValueError("slug must be lowercase letters, digits and hyphens")
    return value


# auth


class MagicLinkRequest(BaseModel):
    email: str = Field(..., max_length=254)
    redirect_url: Optional[str] = Field(None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class MagicLinkRequestResponse(BaseModel):
    sent: bool = True
    expires_at: Optional[datetime] = None


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)


class AuthResponse(BaseModel):
    user_id: str
    email: str
    session_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: Optional[str] = None
    redirect_url: Optional[str] = None


class BootstrapCreateRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)
    upstream_session: Optional[Dict[str, Any]] = None


class BootstrapTokenResponse(BaseModel):
    token: str
    expires_in: int


# webauthn


class WebAuthnRegisterRequest(BaseModel):
    credential_id: str = Field(..., min_length=1, max_length=1024)
    client_data_json: str = Field(..., min_length=1, max_length=8192)
    authenticator_data: str = Field(..., min_length=1, max_length=8192)
    public_key: str = Field(..., min_length=1, max_length=4096)
    public_key_algorithm: int
    transports: List[str] = Field(default_factory=list, max_length=8)
    name: Optional[str] = Field(None, max_length=100)


class WebAuthnAuthOptionsRequest(BaseModel):
    email: Optional[str] = Field(None, max_length=254)


class WebAuthnAuthenticateRequest(BaseModel):
    ceremony_id: str = Field(..., min_length=1, max_length=128)
    credential_id: str = Field(..., min_length=1, max_length=1024)
    client_data_json: str = Field(..., min_length=1, max_length=8192)
    authenticator_data: str = Field(..., min_length=1, max_length=8192)
    signature: str = Field(..., min_length=1, max_length=2048)


class PasskeyResponse(BaseModel):
    id: str
    name: Optional[str] = None
    device_type: str
    backed_up: bool
    transports: List[str] = Field(default_factory=list)
    aaguid: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None


class PasskeyRenameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


# tenants and members


class TenantCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=64)
    plan: str = Field("core", max_length=32)
    license_count: int = Field(1, ge=1, le=100000)

    @field_validator("slug")
    @classmethod
    def _check_slug(cls, value: str) -> str:
        return _validate_slug(value)


class TenantPlanRequest(BaseModel):
    plan: Optional[str] = Field(None, max_length=32)
    license_count: Optional[int] = Field(None, ge=1, le=100000)


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    plan: str
    license_count: int
    owner_user_id: Optional[str] = None
    domain: Optional[str] = None
    domain_verified: bool = False
    created_at: datetime


class SeatCheckResponse(BaseModel):
    allowed: bool
    current_count: int
    limit: int
    plan: str
    reason: Optional[str] = None


class MemberAddRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    role_id: str = Field(..., min_length=1, max_length=64)


class MemberRoleRequest(BaseModel):
    role_id: str = Field(..., min_length=1, max_length=64)


class MemberStatusRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class MemberResponse(BaseModel):
    id: str
    tenant_id: str
    user_id: str
    role_id: str
    is_owner: bool
    status: str
    joined_at: datetime
    suspended_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None
    retention_expires_at: Optional[datetime] = None


# invites


class InviteCreateRequest(BaseModel):
    email: str = Field(..., max_length=254)
    role_id: str = Field(..., min_length=1, max_length=64)
    message: Optional[str] = Field(None, max_length=1000)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class InviteResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    role_id: str
    status: str
    expires_at: datetime
    resend_count: int = 0
    invited_by: Optional[str] = None
    created_at: datetime
    accepted_at: Optional[datetime] = None


class InviteAcceptResponse(BaseModel):
    invite: InviteResponse
    member: MemberResponse


# roles and permissions


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=64)
    hierarchy_level: int = Field(..., ge=1, le=99)
    permissions: List[str] = Field(default_factory=list, max_length=200)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("slug")
    @classmethod
    def _check_slug(cls, value: str) -> str:
        return _validate_slug(value)


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    hierarchy_level: Optional[int] = Field(None, ge=1, le=99)


class RolePermissionsRequest(BaseModel):
    permissions: List[str] = Field(default_factory=list, max_length=200)


class RoleResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    slug: str
    hierarchy_level: int
    is_system: bool
    is_protected: bool
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class PermissionResponse(BaseModel):
    key: str
    name: str
    category: str
    description: str = ""
    requires_mfa: bool = False
    is_critical: bool = False


class EffectivePermissionsResponse(BaseModel):
    tenant_id: str
    permissions: List[str]
    by_category: Dict[str, List[str]]


class SecondaryRoleRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    role_id: str = Field(..., min_length=1, max_length=64)
    expires_at: Optional[datetime] = None


class SecondaryRoleResponse(BaseModel):
    id: str
    tenant_id: str
    user_id: str
    role_id: str
    status: str
    expires_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    assigned_at: datetime


# devices, domains, audit


class TrustedDeviceResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    trusted_until: datetime
    created_at: datetime
    last_used_at: Optional[datetime] = None


class DomainStartRequest(BaseModel):
    domain: str = Field(..., min_length=3, max_length=253)


class DomainOverrideRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class DomainStatusResponse(BaseModel):
    domain: Optional[str] = None
    verified: bool
    method: Optional[str] = None
    verified_at: Optional[datetime] = None
    record_type: Optional[str] = None
    record_name: Optional[str] = None
    record_value: Optional[str] = None


class AuditEventResponse(BaseModel):
    id: str
    action: str
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    status: str
    created_at: datetime
