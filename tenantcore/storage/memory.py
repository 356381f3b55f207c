from __future__ import annotations

import base64
import dataclasses
import json
import threading
import typing
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from tenantcore.logging import get_logger
from tenantcore.storage.errors import ConstraintViolation
from tenantcore.storage.models import (
    AuditEvent,
    MagicLinkIssue,
    PasskeyCredential,
    Permission,
    Role,
    SecondaryRoleAssignment,
    Session,
    Tenant,
    TenantInvite,
    TenantMember,
    TrustedDevice,
    User,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every public method takes ``_data_lock`` so read-modify-write sequences
    are serialized the way a relational transaction would serialize them.
    State is snapshotted to ``fs_root/state/memory_store.json`` after each
    mutation so a restarted dev server keeps its tenants.
    """

    def __init__(self, fs_root: str = "/tmp/tenantcore") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        # (role_id, permission_key) pairs keep grants unique per role
        self.role_permissions: Dict[tuple[str, str], str] = {}
        self.members: Dict[str, TenantMember] = {}
        self.secondary_roles: Dict[str, SecondaryRoleAssignment] = {}
        self.invites: Dict[str, TenantInvite] = {}
        self.magic_links: Dict[str, MagicLinkIssue] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.passkeys: Dict[str, PasskeyCredential] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        status: str = "active",
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                avatar_url=avatar_url,
                status=status,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            self._persist_state()
            return user

    def set_webauthn_enabled(self, user_id: str, enabled: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.webauthn_enabled = enabled
            self._persist_state()

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        tenant_id: str | None = None,
        mfa_verified: bool = False,
        auth_method: str = "magic_link",
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                tenant_id=tenant_id,
                mfa_verified=mfa_verified,
                auth_method=auth_method,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._persist_state()

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()

    def mark_session_verified(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.mfa_verified = True
            self._persist_state()

    # tenants
    def create_tenant(
        self,
        name: str,
        slug: str,
        *,
        plan: str = "core",
        license_count: int = 1,
        owner_user_id: Optional[str] = None,
    ) -> Tenant:
        with self._data_lock:
            if any(t.slug == slug for t in self.tenants.values()):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            tenant = Tenant(
                id=new_id(),
                name=name,
                slug=slug,
                plan=plan,
                license_count=license_count,
                owner_user_id=owner_user_id,
            )
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def update_tenant(self, tenant_id: str, **fields: Any) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            for key, value in fields.items():
                if not hasattr(tenant, key):
                    raise ValueError(f"unknown tenant field {key}")
                setattr(tenant, key, value)
            self._persist_state()
            return tenant

    # permission catalog
    def upsert_permissions(self, permissions: Iterable[Permission]) -> None:
        with self._data_lock:
            for perm in permissions:
                self.permissions[perm.key] = perm
            self._persist_state()

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda p: (p.category, p.key))

    # roles
    def create_role(
        self,
        tenant_id: str,
        name: str,
        slug: str,
        hierarchy_level: int,
        *,
        is_system: bool = False,
        is_protected: bool = False,
        description: Optional[str] = None,
    ) -> Role:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            if any(r.tenant_id == tenant_id and r.slug == slug for r in self.roles.values()):
                raise ConstraintViolation("role slug already exists", {"field": "slug"})
            role = Role(
                id=new_id(),
                tenant_id=tenant_id,
                name=name,
                slug=slug,
                hierarchy_level=hierarchy_level,
                is_system=is_system,
                is_protected=is_protected,
                description=description,
            )
            self.roles[role.id] = role
            self._persist_state()
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_slug(self, tenant_id: str, slug: str) -> Optional[Role]:
        with self._data_lock:
            return next(
                (r for r in self.roles.values() if r.tenant_id == tenant_id and r.slug == slug),
                None,
            )

    def list_roles(self, tenant_id: str) -> List[Role]:
        with self._data_lock:
            roles = [r for r in self.roles.values() if r.tenant_id == tenant_id]
            return sorted(roles, key=lambda r: (r.hierarchy_level, r.name))

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            for key in ("name", "description", "hierarchy_level"):
                if key in fields and fields[key] is not None:
                    setattr(role, key, fields[key])
            self._persist_state()
            return role

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            role = self.roles.pop(role_id, None)
            if not role:
                return False
            for key in [k for k in self.role_permissions if k[0] == role_id]:
                self.role_permissions.pop(key, None)
            self._persist_state()
            return True

    def count_role_usage(self, role_id: str) -> int:
        with self._data_lock:
            primary = sum(
                1
                for m in self.members.values()
                if m.role_id == role_id and m.status != "removed"
            )
            secondary = sum(
                1
                for a in self.secondary_roles.values()
                if a.role_id == role_id and a.status == "active"
            )
            return primary + secondary

    def set_role_permissions(
        self, tenant_id: str, role_id: str, permission_keys: Iterable[str]
    ) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            keys = set(permission_keys)
            unknown = keys - set(self.permissions)
            if unknown:
                raise ConstraintViolation(
                    "unknown permission", {"permission_keys": sorted(unknown)}
                )
            for key in [k for k in self.role_permissions if k[0] == role_id]:
                self.role_permissions.pop(key, None)
            for perm_key in keys:
                self.role_permissions[(role_id, perm_key)] = tenant_id
            self._persist_state()

    def get_role_permission_keys(self, role_ids: Sequence[str]) -> Set[str]:
        wanted = set(role_ids)
        with self._data_lock:
            return {perm for (role_id, perm) in self.role_permissions if role_id in wanted}

    # members
    def add_member(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        is_owner: bool = False,
        invited_by: Optional[str] = None,
        invite_id: Optional[str] = None,
    ) -> TenantMember:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if self._find_member(tenant_id, user_id):
                raise ConstraintViolation(
                    "membership already exists", {"tenant_id": tenant_id, "user_id": user_id}
                )
            if is_owner and any(
                m.tenant_id == tenant_id and m.is_owner for m in self.members.values()
            ):
                raise ConstraintViolation("tenant already has an owner", {"field": "is_owner"})
            member = TenantMember(
                id=new_id(),
                tenant_id=tenant_id,
                user_id=user_id,
                role_id=role_id,
                is_owner=is_owner,
                invited_by=invited_by,
                invite_id=invite_id,
            )
            self.members[member.id] = member
            self._persist_state()
            return member

    def activate_member_within_cap(
        self,
        tenant_id: str,
        limit: int,
        *,
        member_id: Optional[str] = None,
        user_id: Optional[str] = None,
        role_id: Optional[str] = None,
        invited_by: Optional[str] = None,
        invite_id: Optional[str] = None,
        **fields: Any,
    ) -> Tuple[Optional[TenantMember], int]:
        """Count and activate under one lock hold; negative ``limit`` is unlimited."""
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            current = self.count_members(tenant_id)
            if 0 <= limit <= current:
                return None, current
            if member_id is None:
                member = self.add_member(
                    tenant_id,
                    user_id,
                    role_id,
                    invited_by=invited_by,
                    invite_id=invite_id,
                )
                return member, current
            if role_id is not None:
                if role_id not in self.roles:
                    raise ConstraintViolation("role does not exist", {"role_id": role_id})
                fields["role_id"] = role_id
            if invited_by is not None:
                fields["invited_by"] = invited_by
            if invite_id is not None:
                fields["invite_id"] = invite_id
            return self.update_member(member_id, status="active", **fields), current

    def _find_member(self, tenant_id: str, user_id: str) -> Optional[TenantMember]:
        return next(
            (
                m
                for m in self.members.values()
                if m.tenant_id == tenant_id and m.user_id == user_id
            ),
            None,
        )

    def get_member(self, tenant_id: str, user_id: str) -> Optional[TenantMember]:
        with self._data_lock:
            return self._find_member(tenant_id, user_id)

    def get_member_by_id(self, member_id: str) -> Optional[TenantMember]:
        with self._data_lock:
            return self.members.get(member_id)

    def list_members(
        self, tenant_id: str, status: Optional[str] = None
    ) -> List[TenantMember]:
        with self._data_lock:
            members = [
                m
                for m in self.members.values()
                if m.tenant_id == tenant_id and (status is None or m.status == status)
            ]
            return sorted(members, key=lambda m: m.joined_at)

    def list_user_memberships(
        self, user_id: str, status: Optional[str] = "active"
    ) -> List[TenantMember]:
        with self._data_lock:
            return [
                m
                for m in self.members.values()
                if m.user_id == user_id and (status is None or m.status == status)
            ]

    def count_members(self, tenant_id: str, status: str = "active") -> int:
        with self._data_lock:
            return sum(
                1
                for m in self.members.values()
                if m.tenant_id == tenant_id and m.status == status
            )

    def update_member(self, member_id: str, **fields: Any) -> Optional[TenantMember]:
        with self._data_lock:
            member = self.members.get(member_id)
            if not member:
                return None
            for key, value in fields.items():
                if key in {"id", "tenant_id", "user_id", "is_owner"}:
                    raise ValueError(f"member field {key} is immutable")
                if not hasattr(member, key):
                    raise ValueError(f"unknown member field {key}")
                setattr(member, key, value)
            member.updated_at = utcnow()
            self._persist_state()
            return member

    # secondary roles
    def upsert_secondary_role(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        expires_at: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
    ) -> SecondaryRoleAssignment:
        with self._data_lock:
            existing = next(
                (
                    a
                    for a in self.secondary_roles.values()
                    if a.tenant_id == tenant_id and a.user_id == user_id and a.role_id == role_id
                ),
                None,
            )
            if existing:
                existing.status = "active"
                existing.expires_at = expires_at
                existing.assigned_by = assigned_by
                existing.assigned_at = utcnow()
                existing.revoked_at = None
                existing.revoked_by = None
                self._persist_state()
                return existing
            assignment = SecondaryRoleAssignment(
                id=new_id(),
                tenant_id=tenant_id,
                user_id=user_id,
                role_id=role_id,
                expires_at=expires_at,
                assigned_by=assigned_by,
            )
            self.secondary_roles[assignment.id] = assignment
            self._persist_state()
            return assignment

    def list_secondary_roles(
        self, tenant_id: str, user_id: Optional[str] = None
    ) -> List[SecondaryRoleAssignment]:
        with self._data_lock:
            return [
                a
                for a in self.secondary_roles.values()
                if a.tenant_id == tenant_id and (user_id is None or a.user_id == user_id)
            ]

    def revoke_secondary_role(
        self, tenant_id: str, user_id: str, role_id: str, *, revoked_by: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            for assignment in self.secondary_roles.values():
                if (
                    assignment.tenant_id == tenant_id
                    and assignment.user_id == user_id
                    and assignment.role_id == role_id
                    and assignment.status == "active"
                ):
                    assignment.status = "revoked"
                    assignment.revoked_at = utcnow()
                    assignment.revoked_by = revoked_by
                    self._persist_state()
                    return True
            return False

    def expire_secondary_roles(self, now: datetime) -> int:
        with self._data_lock:
            expired = 0
            for assignment in self.secondary_roles.values():
                if (
                    assignment.status == "active"
                    and assignment.expires_at is not None
                    and assignment.expires_at <= now
                ):
                    assignment.status = "expired"
                    expired += 1
            if expired:
                self._persist_state()
            return expired

    # invites
    def create_invite(self, invite: TenantInvite) -> TenantInvite:
        with self._data_lock:
            if any(
                i.tenant_id == invite.tenant_id
                and i.email == invite.email
                and i.status == "pending"
                for i in self.invites.values()
            ):
                raise ConstraintViolation(
                    "pending invite already exists", {"field": "email"}
                )
            self.invites[invite.id] = invite
            self._persist_state()
            return invite

    def get_invite(self, invite_id: str) -> Optional[TenantInvite]:
        with self._data_lock:
            return self.invites.get(invite_id)

    def get_invite_by_token_hash(self, token_hash: str) -> Optional[TenantInvite]:
        with self._data_lock:
            return next(
                (i for i in self.invites.values() if i.token_hash == token_hash), None
            )

    def get_pending_invite(self, tenant_id: str, email: str) -> Optional[TenantInvite]:
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.invites.values()
                    if i.tenant_id == tenant_id and i.email == email and i.status == "pending"
                ),
                None,
            )

    def list_invites(
        self, tenant_id: str, status: Optional[str] = None
    ) -> List[TenantInvite]:
        with self._data_lock:
            invites = [
                i
                for i in self.invites.values()
                if i.tenant_id == tenant_id and (status is None or i.status == status)
            ]
            return sorted(invites, key=lambda i: i.created_at, reverse=True)

    def update_invite(self, invite_id: str, **fields: Any) -> Optional[TenantInvite]:
        with self._data_lock:
            invite = self.invites.get(invite_id)
            if not invite:
                return None
            for key, value in fields.items():
                if not hasattr(invite, key):
                    raise ValueError(f"unknown invite field {key}")
                setattr(invite, key, value)
            self._persist_state()
            return invite

    def mark_invite_accepted(
        self,
        invite_id: str,
        token_hash: str,
        *,
        user_id: str,
        member_id: str,
        accepted_at: datetime,
    ) -> bool:
        """Conditional transition; only a pending invite with the same hash wins."""
        with self._data_lock:
            invite = self.invites.get(invite_id)
            if not invite or invite.status != "pending" or invite.token_hash != token_hash:
                return False
            invite.status = "accepted"
            invite.accepted_at = accepted_at
            invite.accepted_by_user_id = user_id
            invite.member_id = member_id
            self._persist_state()
            return True

    def expire_invites(self, now: datetime, tenant_id: Optional[str] = None) -> int:
        with self._data_lock:
            expired = 0
            for invite in self.invites.values():
                if tenant_id and invite.tenant_id != tenant_id:
                    continue
                if invite.status == "pending" and invite.expires_at <= now:
                    invite.status = "expired"
                    expired += 1
            if expired:
                self._persist_state()
            return expired

    # magic links
    def record_magic_link(self, issue: MagicLinkIssue) -> None:
        with self._data_lock:
            self.magic_links[issue.token_hash] = issue
            self._persist_state()

    def count_magic_links_since(self, email: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for link in self.magic_links.values()
                if link.email == email and link.created_at >= since
            )

    def mark_magic_link_used(self, token_hash: str, used_at: datetime) -> None:
        with self._data_lock:
            link = self.magic_links.get(token_hash)
            if link:
                link.used_at = used_at
                self._persist_state()

    def delete_magic_links_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [h for h, link in self.magic_links.items() if link.expires_at < cutoff]
            for token_hash in stale:
                self.magic_links.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # trusted devices
    def upsert_trusted_device(
        self,
        user_id: str,
        device_hash: str,
        trusted_until: datetime,
        *,
        device_name: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TrustedDevice:
        with self._data_lock:
            existing = next(
                (
                    d
                    for d in self.trusted_devices.values()
                    if d.user_id == user_id and d.device_hash == device_hash
                ),
                None,
            )
            if existing:
                existing.trusted_until = trusted_until
                existing.ip_address = ip_address
                existing.last_used_at = utcnow()
                if device_name:
                    existing.device_name = device_name
                self._persist_state()
                return existing
            device = TrustedDevice(
                id=new_id(),
                user_id=user_id,
                device_hash=device_hash,
                trusted_until=trusted_until,
                device_name=device_name,
                browser=browser,
                os=os,
                ip_address=ip_address,
            )
            self.trusted_devices[device.id] = device
            self._persist_state()
            return device

    def get_trusted_device(self, user_id: str, device_hash: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            return next(
                (
                    d
                    for d in self.trusted_devices.values()
                    if d.user_id == user_id and d.device_hash == device_hash
                ),
                None,
            )

    def list_trusted_devices(self, user_id: str, now: datetime) -> List[TrustedDevice]:
        with self._data_lock:
            devices = [
                d
                for d in self.trusted_devices.values()
                if d.user_id == user_id and d.trusted_until > now
            ]
            return sorted(devices, key=lambda d: d.created_at, reverse=True)

    def delete_trusted_device(self, user_id: str, device_id: str) -> bool:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device or device.user_id != user_id:
                return False
            self.trusted_devices.pop(device_id, None)
            self._persist_state()
            return True

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._data_lock:
            stale = [i for i, d in self.trusted_devices.items() if d.user_id == user_id]
            for device_id in stale:
                self.trusted_devices.pop(device_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_trusted_devices(self, now: datetime) -> int:
        with self._data_lock:
            stale = [i for i, d in self.trusted_devices.items() if d.trusted_until <= now]
            for device_id in stale:
                self.trusted_devices.pop(device_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # passkeys
    def create_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        with self._data_lock:
            if any(
                p.credential_id == credential.credential_id for p in self.passkeys.values()
            ):
                raise ConstraintViolation(
                    "credential already registered", {"field": "credential_id"}
                )
            self.passkeys[credential.id] = credential
            self._persist_state()
            return credential

    def get_passkey_by_credential_id(
        self, credential_id: str
    ) -> Optional[PasskeyCredential]:
        with self._data_lock:
            return next(
                (p for p in self.passkeys.values() if p.credential_id == credential_id),
                None,
            )

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        with self._data_lock:
            creds = [p for p in self.passkeys.values() if p.user_id == user_id]
            return sorted(creds, key=lambda p: p.created_at, reverse=True)

    def update_passkey_counter(
        self, credential_id: str, expected: int, new_counter: int, used_at: datetime
    ) -> bool:
        """Compare-and-set on the signature counter."""
        with self._data_lock:
            cred = next(
                (p for p in self.passkeys.values() if p.credential_id == credential_id),
                None,
            )
            if not cred or cred.counter != expected:
                return False
            cred.counter = new_counter
            cred.last_used_at = used_at
            self._persist_state()
            return True

    def rename_passkey(
        self, user_id: str, passkey_id: str, name: str
    ) -> Optional[PasskeyCredential]:
        with self._data_lock:
            cred = self.passkeys.get(passkey_id)
            if not cred or cred.user_id != user_id:
                return None
            cred.name = name
            self._persist_state()
            return cred

    def delete_passkey(self, user_id: str, passkey_id: str) -> bool:
        with self._data_lock:
            cred = self.passkeys.get(passkey_id)
            if not cred or cred.user_id != user_id:
                return False
            self.passkeys.pop(passkey_id, None)
            self._persist_state()
            return True

    def count_passkeys(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for p in self.passkeys.values() if p.user_id == user_id)

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()

    def list_audit_events(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e for e in self.audit_events if tenant_id is None or e.tenant_id == tenant_id
            ]
            return list(reversed(events))[:limit]

    # persistence
    _COLLECTIONS = {
        "users": User,
        "sessions": Session,
        "tenants": Tenant,
        "roles": Role,
        "permissions": Permission,
        "members": TenantMember,
        "secondary_roles": SecondaryRoleAssignment,
        "invites": TenantInvite,
        "magic_links": MagicLinkIssue,
        "trusted_devices": TrustedDevice,
        "passkeys": PasskeyCredential,
    }

    def _persist_state(self) -> None:
        state: Dict[str, Any] = {
            name: [self._serialize(obj) for obj in getattr(self, name).values()]
            for name in self._COLLECTIONS
        }
        state["role_permissions"] = [
            {"role_id": role_id, "permission_key": perm, "tenant_id": tenant_id}
            for (role_id, perm), tenant_id in self.role_permissions.items()
        ]
        state["audit_events"] = [self._serialize(e) for e in self.audit_events]
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, cls in self._COLLECTIONS.items():
            key_attr = "key" if cls is Permission else (
                "token_hash" if cls is MagicLinkIssue else "id"
            )
            items = [self._deserialize(cls, raw) for raw in data.get(name, [])]
            setattr(self, name, {getattr(item, key_attr): item for item in items})
        self.role_permissions = {
            (row["role_id"], row["permission_key"]): row["tenant_id"]
            for row in data.get("role_permissions", [])
        }
        self.audit_events = [
            self._deserialize(AuditEvent, raw) for raw in data.get("audit_events", [])
        ]
        return True

    @staticmethod
    def _serialize(obj: Any) -> dict:
        out = {}
        for f in dataclasses.fields(obj):
            value = getattr(obj, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, bytes):
                value = base64.b64encode(value).decode("ascii")
            out[f.name] = value
        return out

    @staticmethod
    def _deserialize(cls: type, data: dict) -> Any:
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            hint = str(hints.get(f.name))
            if value is not None and "datetime" in hint:
                value = datetime.fromisoformat(value)
            elif value is not None and "bytes" in hint:
                value = base64.b64decode(value)
            kwargs[f.name] = value
        return cls(**kwargs)
