from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from tenantcore.api.schemas import (
    AuditEventResponse,
    AuthResponse,
    BootstrapCreateRequest,
    BootstrapTokenResponse,
    DomainOverrideRequest,
    DomainStartRequest,
    DomainStatusResponse,
    EffectivePermissionsResponse,
    Envelope,
    InviteAcceptResponse,
    InviteCreateRequest,
    InviteResponse,
    MagicLinkRequest,
    MagicLinkRequestResponse,
    MemberAddRequest,
    MemberResponse,
    MemberRoleRequest,
    MemberStatusRequest,
    PasskeyRenameRequest,
    PasskeyResponse,
    PermissionResponse,
    RoleCreateRequest,
    RolePermissionsRequest,
    RoleResponse,
    RoleUpdateRequest,
    SecondaryRoleRequest,
    SecondaryRoleResponse,
    SeatCheckResponse,
    TenantCreateRequest,
    TenantPlanRequest,
    TenantResponse,
    TokenRequest,
    TrustedDeviceResponse,
    WebAuthnAuthenticateRequest,
    WebAuthnAuthOptionsRequest,
    WebAuthnRegisterRequest,
)
from tenantcore.logging import get_logger
from tenantcore.service.auth import AuthContext
from tenantcore.service.domains import DomainVerificationService
from tenantcore.service.permissions import PERMISSIONS, validate_permission_keys
from tenantcore.service.rate_limit import RATE_LIMITS, RateLimitResult
from tenantcore.service.runtime import check_rate_limit, get_runtime
from tenantcore.storage.models import (
    AuditEvent,
    PasskeyCredential,
    Role,
    SecondaryRoleAssignment,
    Tenant,
    TenantInvite,
    TenantMember,
    TrustedDevice,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Keys checked by the handlers below; a typo fails at import
ROUTE_PERMISSIONS = (
    "canAssignRoles",
    "canDeleteUsers",
    "canInviteUsers",
    "canManageBilling",
    "canManageDomains",
    "canManageRoles",
    "canManageSecurity",
    "canManageUsers",
    "canSuspendUsers",
    "canViewAuditLogs",
    "canViewRoles",
    "canViewTenantSettings",
    "canViewUsers",
)
validate_permission_keys(ROUTE_PERMISSIONS)


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


async def _enforce_rate_limit(
    runtime,
    key: str,
    preset: str,
    *,
    response: Optional[Response] = None,
) -> Optional[RateLimitResult]:
    """Count the request against a named preset and apply the rate limit headers.

    Args:
        runtime: Application runtime context
        key: Rate limit subject, e.g. ``user:<id>`` or ``ip:<addr>``
        preset: Name of an entry in ``RATE_LIMITS``
        response: Optional response to add rate limit headers to

    Raises:
        HTTPException with 429 and Retry-After if the limit is exceeded
    """
    if not runtime.settings.enforce_rate_limits:
        return None
    rule = RATE_LIMITS[preset]
    result = await check_rate_limit(runtime, key, rule.limit, rule.window_seconds)
    if response is not None:
        for name, value in result.headers().items():
            response.headers[name] = value
    if not result.allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": result.retry_after},
            headers=result.headers(),
        )
    return result


def _rate_key(request: Request, subject: str) -> str:
    return f"{subject}:{request.method}:{request.url.path}"


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


def _require(principal: AuthContext, tenant_id: str, permission_key: str) -> TenantMember:
    runtime = get_runtime()
    return runtime.rbac.require_permission(
        principal.user_id,
        tenant_id,
        permission_key,
        mfa_verified=principal.mfa_verified,
    )


def _tenant_to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        slug=tenant.slug,
        plan=tenant.plan,
        license_count=tenant.license_count,
        owner_user_id=tenant.owner_user_id,
        domain=tenant.domain,
        domain_verified=tenant.domain_verified,
        created_at=tenant.created_at,
    )


def _member_to_response(member: TenantMember) -> MemberResponse:
    return MemberResponse(
        id=member.id,
        tenant_id=member.tenant_id,
        user_id=member.user_id,
        role_id=member.role_id,
        is_owner=member.is_owner,
        status=member.status,
        joined_at=member.joined_at,
        suspended_at=member.suspended_at,
        removed_at=member.removed_at,
        retention_expires_at=member.retention_expires_at,
    )


def _invite_to_response(invite: TenantInvite) -> InviteResponse:
    return InviteResponse(
        id=invite.id,
        tenant_id=invite.tenant_id,
        email=invite.email,
        role_id=invite.role_id,
        status=invite.status,
        expires_at=invite.expires_at,
        resend_count=invite.resend_count,
        invited_by=invite.invited_by,
        created_at=invite.created_at,
        accepted_at=invite.accepted_at,
    )


def _role_to_response(runtime, role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        tenant_id=role.tenant_id,
        name=role.name,
        slug=role.slug,
        hierarchy_level=role.hierarchy_level,
        is_system=role.is_system,
        is_protected=role.is_protected,
        description=role.description,
        permissions=sorted(runtime.rbac.get_role_permissions(role.tenant_id, role.id)),
    )


def _assignment_to_response(assignment: SecondaryRoleAssignment) -> SecondaryRoleResponse:
    return SecondaryRoleResponse(
        id=assignment.id,
        tenant_id=assignment.tenant_id,
        user_id=assignment.user_id,
        role_id=assignment.role_id,
        status=assignment.status,
        expires_at=assignment.expires_at,
        assigned_by=assignment.assigned_by,
        assigned_at=assignment.assigned_at,
    )


def _passkey_to_response(passkey: PasskeyCredential) -> PasskeyResponse:
    return PasskeyResponse(
        id=passkey.id,
        name=passkey.name,
        device_type=passkey.device_type,
        backed_up=passkey.backed_up,
        transports=list(passkey.transports or []),
        aaguid=passkey.aaguid,
        created_at=passkey.created_at,
        last_used_at=passkey.last_used_at,
    )


def _device_to_response(device: TrustedDevice) -> TrustedDeviceResponse:
    return TrustedDeviceResponse(
        id=device.id,
        device_name=device.device_name,
        browser=device.browser,
        os=device.os,
        trusted_until=device.trusted_until,
        created_at=device.created_at,
        last_used_at=device.last_used_at,
    )


def _domain_status(tenant: Tenant) -> DomainStatusResponse:
    instructions = DomainVerificationService.instructions(tenant)
    return DomainStatusResponse(
        domain=tenant.domain,
        verified=tenant.domain_verified,
        method=tenant.domain_verification_method,
        verified_at=tenant.domain_verified_at,
        record_type=instructions["record_type"] if tenant.domain else None,
        record_name=instructions["record_name"],
        record_value=None if tenant.domain_verified else instructions["record_value"],
    )


def _audit_to_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        action=event.action,
        actor_id=event.actor_id,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        details=event.details,
        status=event.status,
        created_at=event.created_at,
    )


# ---------------------------------------------------------------------------
# Auth: magic links, sessions, bootstrap hand-off
# ---------------------------------------------------------------------------


@router.post("/auth/magic-link", response_model=Envelope, status_code=202, tags=["auth"])
async def request_magic_link(body: MagicLinkRequest, request: Request, response: Response):
    """Email a single-use sign-in link.

    The response is identical whether or not the address has an account.

    Raises:
        400: If the redirect URL points off-site
        429: If the per-address or per-IP limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"ip:{_client_ip(request)}"), "auth", response=response
    )
    result = await runtime.magic_links.request_magic_link(
        body.email,
        redirect_url=body.redirect_url,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok",
        data=MagicLinkRequestResponse(sent=True, expires_at=result.get("expires_at")),
    )


@router.post("/auth/magic-link/verify", response_model=Envelope, tags=["auth"])
async def verify_magic_link(body: TokenRequest, request: Request, response: Response):
    """Consume a magic-link token and open a session."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"ip:{_client_ip(request)}"), "sensitive", response=response
    )
    result = await runtime.magic_links.verify_magic_link(
        body.token, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data=AuthResponse(**result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.revoke(principal.session_id)
    runtime.audit.record(
        "logout",
        actor_id=principal.user_id,
        resource_type="session",
        resource_id=principal.session_id,
    )
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/bootstrap", response_model=Envelope, status_code=201, tags=["auth"])
async def create_bootstrap_token(
    body: BootstrapCreateRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Mint a short-lived hand-off token carrying the caller's session context.

    Raises:
        403: If the caller is not an active member of the tenant
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"user:{principal.user_id}"), "sensitive", response=response
    )
    token = await runtime.bootstrap.create_bootstrap_token(
        principal.user_id, body.tenant_id, upstream_session=body.upstream_session
    )
    return Envelope(
        status="ok",
        data=BootstrapTokenResponse(token=token, expires_in=runtime.bootstrap.ttl_seconds),
    )


@router.post("/auth/bootstrap/exchange", response_model=Envelope, tags=["auth"])
async def exchange_bootstrap_token(body: TokenRequest, request: Request, response: Response):
    """Redeem a hand-off token exactly once and return its snapshot."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"ip:{_client_ip(request)}"), "sensitive", response=response
    )
    snapshot = await runtime.bootstrap.exchange_bootstrap_token(body.token)
    return Envelope(status="ok", data=snapshot)


@router.post("/auth/bootstrap/invalidate", response_model=Envelope, tags=["auth"])
async def invalidate_bootstrap_token(
    body: TokenRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    removed = await runtime.bootstrap.invalidate(body.token)
    return Envelope(status="ok", data={"invalidated": removed})


# ---------------------------------------------------------------------------
# WebAuthn
# ---------------------------------------------------------------------------


@router.post("/webauthn/register/options", response_model=Envelope, tags=["webauthn"])
async def webauthn_registration_options(
    request: Request, response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"user:{principal.user_id}"), "sensitive", response=response
    )
    options = await runtime.webauthn.registration_options(principal.user_id)
    return Envelope(status="ok", data=options)


@router.post(
    "/webauthn/register/verify", response_model=Envelope, status_code=201, tags=["webauthn"]
)
async def webauthn_register(
    body: WebAuthnRegisterRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    """Verify a registration ceremony and store the new passkey.

    Raises:
        401: If the ceremony fails verification
        409: If the credential is already registered
        410: If the challenge expired or was already used
    """
    runtime = get_runtime()
    passkey = await runtime.webauthn.verify_registration(
        principal.user_id,
        credential_id=body.credential_id,
        client_data_json=body.client_data_json,
        authenticator_data=body.authenticator_data,
        public_key=body.public_key,
        public_key_algorithm=body.public_key_algorithm,
        transports=body.transports,
        name=body.name,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_passkey_to_response(passkey))


@router.post("/webauthn/authenticate/options", response_model=Envelope, tags=["webauthn"])
async def webauthn_authentication_options(
    body: WebAuthnAuthOptionsRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"ip:{_client_ip(request)}"), "auth", response=response
    )
    options = await runtime.webauthn.authentication_options(body.email)
    return Envelope(status="ok", data=options)


@router.post("/webauthn/authenticate/verify", response_model=Envelope, tags=["webauthn"])
async def webauthn_authenticate(
    body: WebAuthnAuthenticateRequest, request: Request, response: Response
):
    """Verify an assertion and open a passkey session.

    Raises:
        401: If the credential is unknown or the signature is invalid
        403: If the signature counter did not advance
        410: If the ceremony expired or was already used
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"ip:{_client_ip(request)}"), "sensitive", response=response
    )
    result = await runtime.webauthn.verify_authentication(
        body.ceremony_id,
        credential_id=body.credential_id,
        client_data_json=body.client_data_json,
        authenticator_data=body.authenticator_data,
        signature=body.signature,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=AuthResponse(**result))


@router.get("/webauthn/credentials", response_model=Envelope, tags=["webauthn"])
async def list_passkeys(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    passkeys = runtime.webauthn.list_credentials(principal.user_id)
    return Envelope(status="ok", data={"items": [_passkey_to_response(p) for p in passkeys]})


@router.patch("/webauthn/credentials/{passkey_id}", response_model=Envelope, tags=["webauthn"])
async def rename_passkey(
    passkey_id: str, body: PasskeyRenameRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    passkey = runtime.webauthn.rename_credential(principal.user_id, passkey_id, body.name)
    return Envelope(status="ok", data=_passkey_to_response(passkey))


@router.delete("/webauthn/credentials/{passkey_id}", response_model=Envelope, tags=["webauthn"])
async def delete_passkey(passkey_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.webauthn.delete_credential(principal.user_id, passkey_id)
    return Envelope(status="ok", data={"deleted": passkey_id})


# ---------------------------------------------------------------------------
# Tenants and members
# ---------------------------------------------------------------------------


@router.post("/tenants", response_model=Envelope, status_code=201, tags=["tenants"])
async def create_tenant(
    body: TenantCreateRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Create a workspace owned by the caller, with the system roles seeded."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"user:{principal.user_id}"), "strict", response=response
    )
    tenant, owner = runtime.membership.create_tenant(
        name=body.name,
        slug=body.slug,
        owner_user_id=principal.user_id,
        plan=body.plan,
        license_count=body.license_count,
    )
    return Envelope(
        status="ok",
        data={"tenant": _tenant_to_response(tenant), "owner": _member_to_response(owner)},
    )


@router.get("/tenants/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def get_tenant(tenant_id: str, principal: AuthContext = Depends(get_user)):
    _require(principal, tenant_id, "canViewTenantSettings")
    runtime = get_runtime()
    return Envelope(status="ok", data=_tenant_to_response(runtime.membership.get_tenant(tenant_id)))


@router.patch("/tenants/{tenant_id}/plan", response_model=Envelope, tags=["tenants"])
async def update_tenant_plan(
    tenant_id: str, body: TenantPlanRequest, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canManageBilling")
    runtime = get_runtime()
    tenant = runtime.membership.update_plan(
        tenant_id, plan=body.plan, license_count=body.license_count
    )
    runtime.audit.record(
        "tenant_plan_update",
        actor_id=principal.user_id,
        tenant_id=tenant_id,
        resource_type="tenant",
        resource_id=tenant_id,
        details={"plan": tenant.plan, "license_count": tenant.license_count},
    )
    return Envelope(status="ok", data=_tenant_to_response(tenant))


@router.get("/tenants/{tenant_id}/seats", response_model=Envelope, tags=["tenants"])
async def check_seats(tenant_id: str, principal: AuthContext = Depends(get_user)):
    _require(principal, tenant_id, "canViewUsers")
    runtime = get_runtime()
    check = runtime.membership.can_add_member(tenant_id)
    return Envelope(status="ok", data=SeatCheckResponse(**check.to_dict()))


@router.get("/tenants/{tenant_id}/members", response_model=Envelope, tags=["members"])
async def list_members(
    tenant_id: str,
    status: Optional[str] = Query(None, pattern="^(active|suspended|removed)$"),
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canViewUsers")
    runtime = get_runtime()
    members = runtime.membership.list_members(tenant_id, status=status)
    return Envelope(status="ok", data={"items": [_member_to_response(m) for m in members]})


@router.post(
    "/tenants/{tenant_id}/members", response_model=Envelope, status_code=201, tags=["members"]
)
async def add_member(
    tenant_id: str,
    body: MemberAddRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Attach an existing user directly, bypassing the invite flow.

    Raises:
        403: If the seat limit is reached or the role is the owner role
        409: If the user is already an active or suspended member
    """
    _require(principal, tenant_id, "canManageUsers")
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"user:{principal.user_id}"), "write", response=response
    )
    member = runtime.membership.add_member(
        tenant_id, body.user_id, body.role_id, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=_member_to_response(member))


@router.patch(
    "/tenants/{tenant_id}/members/{user_id}/role", response_model=Envelope, tags=["members"]
)
async def change_member_role(
    tenant_id: str,
    user_id: str,
    body: MemberRoleRequest,
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canAssignRoles")
    runtime = get_runtime()
    member = runtime.membership.update_member_role(
        tenant_id, user_id, body.role_id, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=_member_to_response(member))


@router.post(
    "/tenants/{tenant_id}/members/{user_id}/suspend", response_model=Envelope, tags=["members"]
)
async def suspend_member(
    tenant_id: str,
    user_id: str,
    body: MemberStatusRequest,
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canSuspendUsers")
    runtime = get_runtime()
    member = runtime.membership.suspend_member(
        tenant_id, user_id, actor_id=principal.user_id, reason=body.reason
    )
    return Envelope(status="ok", data=_member_to_response(member))


@router.post(
    "/tenants/{tenant_id}/members/{user_id}/unsuspend", response_model=Envelope, tags=["members"]
)
async def unsuspend_member(
    tenant_id: str, user_id: str, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canSuspendUsers")
    runtime = get_runtime()
    member = runtime.membership.unsuspend_member(tenant_id, user_id, actor_id=principal.user_id)
    return Envelope(status="ok", data=_member_to_response(member))


@router.delete(
    "/tenants/{tenant_id}/members/{user_id}", response_model=Envelope, tags=["members"]
)
async def remove_member(
    tenant_id: str,
    user_id: str,
    reason: Optional[str] = Query(None, max_length=500),
    principal: AuthContext = Depends(get_user),
):
    """Soft-remove a member. The row is kept for the retention window."""
    _require(principal, tenant_id, "canDeleteUsers")
    runtime = get_runtime()
    member = runtime.membership.remove_member(
        tenant_id, user_id, actor_id=principal.user_id, reason=reason
    )
    return Envelope(status="ok", data=_member_to_response(member))


@router.post(
    "/tenants/{tenant_id}/members/{user_id}/restore", response_model=Envelope, tags=["members"]
)
async def restore_member(
    tenant_id: str, user_id: str, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canManageUsers")
    runtime = get_runtime()
    member = runtime.membership.restore_member(tenant_id, user_id, actor_id=principal.user_id)
    return Envelope(status="ok", data=_member_to_response(member))


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


@router.post(
    "/tenants/{tenant_id}/invites", response_model=Envelope, status_code=201, tags=["invites"]
)
async def create_invite(
    tenant_id: str,
    body: InviteCreateRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Invite an email address. The token travels only in the email.

    Raises:
        403: If no seat is available or the role is the owner role
        409: If a pending invite or membership already exists
    """
    _require(principal, tenant_id, "canInviteUsers")
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"user:{principal.user_id}"), "bulk", response=response
    )
    invite, _token = runtime.invites.create_invite(
        tenant_id, body.email, body.role_id, actor_id=principal.user_id, message=body.message
    )
    return Envelope(status="ok", data=_invite_to_response(invite))


@router.get("/tenants/{tenant_id}/invites", response_model=Envelope, tags=["invites"])
async def list_invites(
    tenant_id: str,
    status: Optional[str] = Query(None, pattern="^(pending|accepted|expired|cancelled)$"),
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canViewUsers")
    runtime = get_runtime()
    runtime.invites.expire_old_invites(tenant_id)
    invites = runtime.invites.list_invites(tenant_id, status=status)
    return Envelope(status="ok", data={"items": [_invite_to_response(i) for i in invites]})


@router.get("/tenants/{tenant_id}/invites/stats", response_model=Envelope, tags=["invites"])
async def invite_stats(tenant_id: str, principal: AuthContext = Depends(get_user)):
    _require(principal, tenant_id, "canViewUsers")
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.invites.get_invite_stats(tenant_id))


@router.post(
    "/tenants/{tenant_id}/invites/{invite_id}/resend", response_model=Envelope, tags=["invites"]
)
async def resend_invite(
    tenant_id: str,
    invite_id: str,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canInviteUsers")
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"user:{principal.user_id}"), "strict", response=response
    )
    invite, _token = runtime.invites.resend_invite(
        tenant_id, invite_id, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=_invite_to_response(invite))


@router.delete(
    "/tenants/{tenant_id}/invites/{invite_id}", response_model=Envelope, tags=["invites"]
)
async def cancel_invite(
    tenant_id: str, invite_id: str, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canInviteUsers")
    runtime = get_runtime()
    invite = runtime.invites.cancel_invite(tenant_id, invite_id, actor_id=principal.user_id)
    return Envelope(status="ok", data=_invite_to_response(invite))


@router.post("/invites/preview", response_model=Envelope, tags=["invites"])
async def preview_invite(body: TokenRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"ip:{_client_ip(request)}"), "standard", response=response
    )
    return Envelope(status="ok", data=runtime.invites.preview_invite(body.token))


@router.post("/invites/accept", response_model=Envelope, tags=["invites"])
async def accept_invite(
    body: TokenRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Join the inviting workspace as the signed-in user.

    Raises:
        403: If the signed-in email differs from the invited one
        409: If the caller is already a member or the invite was used
        410: If the invite expired
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"user:{principal.user_id}"), "sensitive", response=response
    )
    invite, member = runtime.invites.accept_invite(body.token, principal.user_id)
    return Envelope(
        status="ok",
        data=InviteAcceptResponse(
            invite=_invite_to_response(invite), member=_member_to_response(member)
        ),
    )


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=Envelope, tags=["roles"])
async def list_permission_catalog(principal: AuthContext = Depends(get_user)):
    items = [
        PermissionResponse(
            key=p.key,
            name=p.name,
            category=p.category,
            description=p.description,
            requires_mfa=p.requires_mfa,
            is_critical=p.is_critical,
        )
        for p in PERMISSIONS.values()
    ]
    return Envelope(status="ok", data={"items": items})


@router.get("/tenants/{tenant_id}/permissions/me", response_model=Envelope, tags=["roles"])
async def my_permissions(tenant_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    permissions = runtime.rbac.get_effective_permissions(principal.user_id, tenant_id)
    return Envelope(
        status="ok",
        data=EffectivePermissionsResponse(
            tenant_id=tenant_id,
            permissions=sorted(permissions),
            by_category=runtime.rbac.get_permissions_by_category(principal.user_id, tenant_id),
        ),
    )


@router.get("/tenants/{tenant_id}/roles", response_model=Envelope, tags=["roles"])
async def list_roles(tenant_id: str, principal: AuthContext = Depends(get_user)):
    _require(principal, tenant_id, "canViewRoles")
    runtime = get_runtime()
    roles = runtime.rbac.list_roles(tenant_id)
    return Envelope(status="ok", data={"items": [_role_to_response(runtime, r) for r in roles]})


@router.post(
    "/tenants/{tenant_id}/roles", response_model=Envelope, status_code=201, tags=["roles"]
)
async def create_role(
    tenant_id: str, body: RoleCreateRequest, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canManageRoles")
    runtime = get_runtime()
    role = runtime.rbac.create_role(
        tenant_id,
        name=body.name,
        slug=body.slug,
        hierarchy_level=body.hierarchy_level,
        permission_keys=body.permissions,
        description=body.description,
        actor_id=principal.user_id,
    )
    return Envelope(status="ok", data=_role_to_response(runtime, role))


@router.get("/tenants/{tenant_id}/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(tenant_id: str, role_id: str, principal: AuthContext = Depends(get_user)):
    _require(principal, tenant_id, "canViewRoles")
    runtime = get_runtime()
    return Envelope(
        status="ok", data=_role_to_response(runtime, runtime.rbac.get_role(tenant_id, role_id))
    )


@router.patch("/tenants/{tenant_id}/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    tenant_id: str,
    role_id: str,
    body: RoleUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canManageRoles")
    runtime = get_runtime()
    role = runtime.rbac.update_role(
        tenant_id,
        role_id,
        name=body.name,
        description=body.description,
        hierarchy_level=body.hierarchy_level,
        actor_id=principal.user_id,
    )
    return Envelope(status="ok", data=_role_to_response(runtime, role))


@router.put(
    "/tenants/{tenant_id}/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"]
)
async def set_role_permissions(
    tenant_id: str,
    role_id: str,
    body: RolePermissionsRequest,
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canManageRoles")
    runtime = get_runtime()
    keys = runtime.rbac.set_role_permissions(
        tenant_id, role_id, body.permissions, actor_id=principal.user_id
    )
    return Envelope(status="ok", data={"role_id": role_id, "permissions": sorted(keys)})


@router.delete("/tenants/{tenant_id}/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(tenant_id: str, role_id: str, principal: AuthContext = Depends(get_user)):
    _require(principal, tenant_id, "canManageRoles")
    runtime = get_runtime()
    runtime.rbac.delete_role(tenant_id, role_id, actor_id=principal.user_id)
    return Envelope(status="ok", data={"deleted": role_id})


@router.get("/tenants/{tenant_id}/secondary-roles", response_model=Envelope, tags=["roles"])
async def list_secondary_roles(
    tenant_id: str,
    user_id: Optional[str] = Query(None, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canViewRoles")
    runtime = get_runtime()
    assignments = runtime.rbac.list_secondary_roles(tenant_id, user_id)
    return Envelope(
        status="ok", data={"items": [_assignment_to_response(a) for a in assignments]}
    )


@router.post(
    "/tenants/{tenant_id}/secondary-roles",
    response_model=Envelope,
    status_code=201,
    tags=["roles"],
)
async def assign_secondary_role(
    tenant_id: str, body: SecondaryRoleRequest, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canAssignRoles")
    runtime = get_runtime()
    assignment = runtime.rbac.assign_secondary_role(
        tenant_id,
        body.user_id,
        body.role_id,
        expires_at=body.expires_at,
        actor_id=principal.user_id,
    )
    return Envelope(status="ok", data=_assignment_to_response(assignment))


@router.delete(
    "/tenants/{tenant_id}/secondary-roles/{user_id}/{role_id}",
    response_model=Envelope,
    tags=["roles"],
)
async def revoke_secondary_role(
    tenant_id: str, user_id: str, role_id: str, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canAssignRoles")
    runtime = get_runtime()
    runtime.rbac.revoke_secondary_role(tenant_id, user_id, role_id, actor_id=principal.user_id)
    return Envelope(status="ok", data={"revoked": role_id})


# ---------------------------------------------------------------------------
# Trusted devices
# ---------------------------------------------------------------------------


@router.post("/devices/trust", response_model=Envelope, status_code=201, tags=["devices"])
async def trust_current_device(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    device = runtime.devices.trust_device(
        principal.user_id,
        user_agent=_user_agent(request),
        accept_language=request.headers.get("accept-language"),
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data=_device_to_response(device))


@router.get("/devices/current", response_model=Envelope, tags=["devices"])
async def current_device_status(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    trusted = runtime.devices.is_device_trusted(
        principal.user_id,
        user_agent=_user_agent(request),
        accept_language=request.headers.get("accept-language"),
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data={"trusted": trusted})


@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_trusted_devices(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    devices = runtime.devices.list_devices(principal.user_id)
    return Envelope(status="ok", data={"items": [_device_to_response(d) for d in devices]})


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def untrust_device(
    device_id: str, request: Request, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.devices.untrust_device(
        principal.user_id,
        device_id,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data={"deleted": device_id})


@router.delete("/devices", response_model=Envelope, tags=["devices"])
async def untrust_all_devices(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = runtime.devices.untrust_all(
        principal.user_id, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data={"deleted": count})


# ---------------------------------------------------------------------------
# Domain verification
# ---------------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/domain", response_model=Envelope, tags=["domains"])
async def domain_status(tenant_id: str, principal: AuthContext = Depends(get_user)):
    _require(principal, tenant_id, "canViewTenantSettings")
    runtime = get_runtime()
    return Envelope(status="ok", data=_domain_status(runtime.membership.get_tenant(tenant_id)))


@router.post("/tenants/{tenant_id}/domain", response_model=Envelope, tags=["domains"])
async def start_domain_verification(
    tenant_id: str, body: DomainStartRequest, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canManageDomains")
    runtime = get_runtime()
    runtime.domains.start_domain_verification(tenant_id, body.domain, actor_id=principal.user_id)
    return Envelope(status="ok", data=_domain_status(runtime.membership.get_tenant(tenant_id)))


@router.post("/tenants/{tenant_id}/domain/check", response_model=Envelope, tags=["domains"])
async def check_domain_verification(
    tenant_id: str,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canManageDomains")
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _rate_key(request, f"user:{principal.user_id}"), "strict", response=response
    )
    await runtime.domains.check_domain_verification(tenant_id, actor_id=principal.user_id)
    return Envelope(status="ok", data=_domain_status(runtime.membership.get_tenant(tenant_id)))


@router.post("/tenants/{tenant_id}/domain/override", response_model=Envelope, tags=["domains"])
async def override_domain_verification(
    tenant_id: str, body: DomainOverrideRequest, principal: AuthContext = Depends(get_user)
):
    _require(principal, tenant_id, "canManageSecurity")
    runtime = get_runtime()
    tenant = runtime.domains.override_domain_verification(
        tenant_id, actor_id=principal.user_id, reason=body.reason
    )
    return Envelope(status="ok", data=_domain_status(tenant))


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/audit", response_model=Envelope, tags=["audit"])
async def list_audit_events(
    tenant_id: str,
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_user),
):
    _require(principal, tenant_id, "canViewAuditLogs")
    runtime = get_runtime()
    events = runtime.audit.list_events(tenant_id, limit=limit)
    return Envelope(status="ok", data={"items": [_audit_to_response(e) for e in events]})
