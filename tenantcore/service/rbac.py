from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.errors import (
    ConflictError,
    ForbiddenError,
    NotAMemberError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from tenantcore.service.permissions import (
    OWNER_SLUG,
    PERMISSIONS,
    ROLE_TEMPLATES,
    UnknownPermissionError,
    get_permission,
    validate_permission_keys,
)
from tenantcore.storage.errors import ConstraintViolation
from tenantcore.storage.models import Role, SecondaryRoleAssignment, TenantMember, utcnow

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")

# Level reported for users without an active membership
NON_MEMBER_LEVEL = 100


class RBACService:
    """Resolves effective permissions and manages tenant roles.

    Effective permissions are rebuilt on every call from the primary role
    plus every secondary assignment that is active and unexpired right now.
    There is no permission cache, so grant edits apply to the next request.
    """

    def __init__(
        self,
        store,
        audit: AuditSink,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self._clock = clock
        self.logger = get_logger(__name__)

    # resolution
    def _active_member(self, user_id: str, tenant_id: str) -> Optional[TenantMember]:
        member = self.store.get_member(tenant_id, user_id)
        if not member or member.status != "active":
            return None
        return member

    def get_effective_permissions(self, user_id: str, tenant_id: str) -> Set[str]:
        member = self._active_member(user_id, tenant_id)
        if not member:
            return set()
        now = self._clock()
        role_ids = [member.role_id]
        for assignment in self.store.list_secondary_roles(tenant_id, user_id):
            # Expiry is judged here, never trusted from the stored status
            if assignment.is_effective(now):
                role_ids.append(assignment.role_id)
        return self.store.get_role_permission_keys(role_ids)

    def has_permission(self, user_id: str, tenant_id: str, permission_key: str) -> bool:
        return permission_key in self.get_effective_permissions(user_id, tenant_id)

    def has_any_permission(
        self, user_id: str, tenant_id: str, permission_keys: Iterable[str]
    ) -> bool:
        effective = self.get_effective_permissions(user_id, tenant_id)
        return any(key in effective for key in permission_keys)

    def has_all_permissions(
        self, user_id: str, tenant_id: str, permission_keys: Iterable[str]
    ) -> bool:
        effective = self.get_effective_permissions(user_id, tenant_id)
        return all(key in effective for key in permission_keys)

    def get_permissions_by_category(
        self, user_id: str, tenant_id: str
    ) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for key in sorted(self.get_effective_permissions(user_id, tenant_id)):
            perm = PERMISSIONS.get(key)
            if perm is None:
                # Stale grant for a key no longer in the catalog
                self.logger.warning("rbac_unknown_grant", permission_key=key)
                continue
            grouped.setdefault(perm.category, []).append(key)
        return grouped

    def require_permission(
        self,
        user_id: str,
        tenant_id: str,
        permission_key: str,
        *,
        mfa_verified: bool = False,
    ) -> TenantMember:
        """Return the caller's active membership or raise.

        Raises:
            NotAMemberError: no active membership in the tenant
            PermissionDeniedError: permission missing, or MFA required
        """
        perm = get_permission(permission_key)
        member = self._active_member(user_id, tenant_id)
        if not member:
            raise NotAMemberError(
                "You are not a member of this workspace",
                detail={"tenant_id": tenant_id},
            )
        if permission_key not in self.get_effective_permissions(user_id, tenant_id):
            raise PermissionDeniedError(
                "You don't have permission to perform this action",
                detail={"required_permission": permission_key},
            )
        if perm.requires_mfa and not mfa_verified:
            raise PermissionDeniedError(
                "This action requires multi-factor verification",
                error_code="mfa_required",
                detail={"required_permission": permission_key},
            )
        return member

    # roles
    def seed_tenant_roles(self, tenant_id: str) -> Dict[str, Role]:
        seeded: Dict[str, Role] = {}
        for slug, name, level, protected, keys in ROLE_TEMPLATES:
            role = self.store.get_role_by_slug(tenant_id, slug)
            if role is None:
                role = self.store.create_role(
                    tenant_id,
                    name,
                    slug,
                    level,
                    is_system=True,
                    is_protected=protected,
                )
            self.store.set_role_permissions(tenant_id, role.id, keys)
            seeded[slug] = role
        return seeded

    # hierarchy
    def _member_level(self, member: Optional[TenantMember]) -> int:
        if not member:
            return NON_MEMBER_LEVEL
        role = self.store.get_role(member.role_id)
        return role.hierarchy_level if role else NON_MEMBER_LEVEL

    def get_user_hierarchy_level(self, user_id: str, tenant_id: str) -> int:
        """Primary role level of an active member; lower numbers outrank higher ones."""
        return self._member_level(self._active_member(user_id, tenant_id))

    def ensure_outranks(
        self,
        actor_id: Optional[str],
        tenant_id: str,
        level: int,
        *,
        message: str = "Cannot manage a role at or above your hierarchy level",
    ) -> None:
        """Reject actors whose own level is not strictly above ``level``.

        The owner is exempt. ``actor_id=None`` marks an internal call and is
        not checked.
        """
        if actor_id is None:
            return
        member = self._active_member(actor_id, tenant_id)
        if member and member.is_owner:
            return
        actor_level = self._member_level(member)
        if level <= actor_level:
            self.logger.info(
                "hierarchy_violation",
                tenant_id=tenant_id,
                actor_id=actor_id,
                actor_level=actor_level,
                target_level=level,
            )
            raise ForbiddenError(
                message,
                error_code="hierarchy_violation",
                detail={"hierarchy_level": level, "actor_level": actor_level},
            )

    def get_role(self, tenant_id: str, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role or role.tenant_id != tenant_id:
            raise NotFoundError("Role not found", detail={"role_id": role_id})
        return role

    def list_roles(self, tenant_id: str) -> List[Role]:
        return self.store.list_roles(tenant_id)

    def get_role_permissions(self, tenant_id: str, role_id: str) -> Set[str]:
        role = self.get_role(tenant_id, role_id)
        return self.store.get_role_permission_keys([role.id])

    def create_role(
        self,
        tenant_id: str,
        *,
        name: str,
        slug: str,
        hierarchy_level: int,
        permission_keys: Iterable[str] = (),
        description: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Role:
        slug = slug.strip().lower()
        if not _SLUG_RE.match(slug):
            raise ValidationError(
                "Role slug must be lowercase letters, digits and dashes",
                detail={"field": "slug"},
            )
        if slug == OWNER_SLUG:
            raise ValidationError("The owner role is reserved", detail={"field": "slug"})
        if hierarchy_level <= 1:
            raise ValidationError(
                "Hierarchy level 1 is reserved for the owner",
                detail={"field": "hierarchy_level"},
            )
        self.ensure_outranks(
            actor_id,
            tenant_id,
            hierarchy_level,
            message=f"Cannot create a role at hierarchy level {hierarchy_level}",
        )
        keys = sorted(set(permission_keys))
        self._validate_keys(keys)
        try:
            role = self.store.create_role(
                tenant_id, name.strip(), slug, hierarchy_level, description=description
            )
        except ConstraintViolation as exc:
            raise ConflictError("A role with this slug already exists", detail=exc.detail)
        self.store.set_role_permissions(tenant_id, role.id, keys)
        self.audit.record(
            "role_create",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="role",
            resource_id=role.id,
            details={"slug": slug, "permissions": keys},
        )
        return role

    def update_role(
        self,
        tenant_id: str,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        hierarchy_level: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Role:
        role = self.get_role(tenant_id, role_id)
        if role.is_protected:
            raise ConflictError("Protected roles cannot be edited", detail={"role_id": role_id})
        self.ensure_outranks(actor_id, tenant_id, role.hierarchy_level)
        if hierarchy_level is not None and hierarchy_level <= 1:
            raise ValidationError(
                "Hierarchy level 1 is reserved for the owner",
                detail={"field": "hierarchy_level"},
            )
        if hierarchy_level is not None:
            self.ensure_outranks(
                actor_id,
                tenant_id,
                hierarchy_level,
                message=f"Cannot move a role to hierarchy level {hierarchy_level}",
            )
        updated = self.store.update_role(
            role_id, name=name, description=description, hierarchy_level=hierarchy_level
        )
        self.audit.record(
            "role_update",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="role",
            resource_id=role_id,
        )
        return updated

    def set_role_permissions(
        self,
        tenant_id: str,
        role_id: str,
        permission_keys: Iterable[str],
        *,
        actor_id: Optional[str] = None,
    ) -> Set[str]:
        role = self.get_role(tenant_id, role_id)
        if role.is_protected:
            raise ConflictError(
                "Protected role permissions cannot be changed", detail={"role_id": role_id}
            )
        self.ensure_outranks(actor_id, tenant_id, role.hierarchy_level)
        keys = sorted(set(permission_keys))
        self._validate_keys(keys)
        self.store.set_role_permissions(tenant_id, role_id, keys)
        self.audit.record(
            "role_update",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="role",
            resource_id=role_id,
            details={"permissions": keys},
        )
        return set(keys)

    def delete_role(
        self, tenant_id: str, role_id: str, *, actor_id: Optional[str] = None
    ) -> None:
        role = self.get_role(tenant_id, role_id)
        if role.is_system or role.is_protected:
            raise ConflictError("System roles cannot be deleted", detail={"role_id": role_id})
        self.ensure_outranks(actor_id, tenant_id, role.hierarchy_level)
        in_use = self.store.count_role_usage(role_id)
        if in_use:
            raise ConflictError(
                "Role is still assigned to members",
                detail={"role_id": role_id, "assigned_count": in_use},
            )
        self.store.delete_role(role_id)
        self.audit.record(
            "role_delete",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="role",
            resource_id=role_id,
            details={"slug": role.slug},
        )

    @staticmethod
    def _validate_keys(keys: Iterable[str]) -> None:
        try:
            validate_permission_keys(keys)
        except UnknownPermissionError as exc:
            raise ValidationError(
                "Unknown permission keys", detail={"unknown_permissions": exc.keys}
            )

    # secondary roles
    def assign_secondary_role(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> SecondaryRoleAssignment:
        role = self.get_role(tenant_id, role_id)
        if role.slug == OWNER_SLUG:
            raise ValidationError(
                "The owner role cannot be granted as a secondary role",
                detail={"role_id": role_id},
            )
        self.ensure_outranks(
            actor_id,
            tenant_id,
            role.hierarchy_level,
            message="Cannot assign a role at or above your hierarchy level",
        )
        member = self.store.get_member(tenant_id, user_id)
        if not member or member.status == "removed":
            raise NotAMemberError("User is not a member of this workspace")
        if member.role_id == role_id:
            raise ConflictError("User already holds this role as primary role")
        if expires_at is not None and expires_at <= self._clock():
            raise ValidationError(
                "Expiry must be in the future", detail={"field": "expires_at"}
            )
        assignment = self.store.upsert_secondary_role(
            tenant_id, user_id, role_id, expires_at=expires_at, assigned_by=actor_id
        )
        self.audit.record(
            "secondary_role_assign",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="member",
            resource_id=member.id,
            details={
                "role_id": role_id,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        return assignment

    def revoke_secondary_role(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> None:
        role = self.get_role(tenant_id, role_id)
        self.ensure_outranks(
            actor_id,
            tenant_id,
            role.hierarchy_level,
            message="Cannot modify role assignments at or above your hierarchy level",
        )
        if not self.store.revoke_secondary_role(
            tenant_id, user_id, role_id, revoked_by=actor_id
        ):
            raise NotFoundError(
                "No active secondary role assignment", detail={"role_id": role_id}
            )
        self.audit.record(
            "secondary_role_revoke",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="user",
            resource_id=user_id,
            details={"role_id": role_id},
        )

    def list_secondary_roles(
        self, tenant_id: str, user_id: Optional[str] = None
    ) -> List[SecondaryRoleAssignment]:
        return self.store.list_secondary_roles(tenant_id, user_id)

    def expire_secondary_assignments(self) -> int:
        """Flip lapsed assignments to ``expired``. Resolution does not depend on it."""
        count = self.store.expire_secondary_roles(self._clock())
        if count:
            self.logger.info("secondary_roles_expired", count=count)
        return count
