from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    PlanLimitError,
    ServiceError,
    UpstreamError,
    ValidationError,
)
from tenantcore.service.permissions import OWNER_SLUG
from tenantcore.service.rbac import RBACService
from tenantcore.storage.errors import ConstraintViolation
from tenantcore.storage.models import Role, Tenant, TenantMember, utcnow

# -1 means unlimited
PLAN_USER_LIMITS: Dict[str, int] = {
    "core": 1,
    "flow": 50,
    "scale": 200,
    "enterprise": -1,
}


def get_plan_user_limit(plan: str) -> int:
    return PLAN_USER_LIMITS.get(plan, PLAN_USER_LIMITS["core"])


@dataclass
class SeatCheck:
    allowed: bool
    current_count: int
    limit: int
    plan: str
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class MembershipService:
    """Tenant membership state machine with plan seat enforcement.

    Transitions: active <-> suspended, active|suspended -> removed, and
    removed -> active until the retention window closes. The owner member
    never leaves ``active`` and never changes role.
    """

    def __init__(
        self,
        store,
        rbac: RBACService,
        audit: AuditSink,
        *,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rbac = rbac
        self.audit = audit
        self.retention_days = retention_days
        self._clock = clock
        self.logger = get_logger(__name__)

    # tenants
    def create_tenant(
        self,
        *,
        name: str,
        slug: str,
        owner_user_id: str,
        plan: str = "core",
        license_count: int = 1,
    ) -> Tuple[Tenant, TenantMember]:
        """Create a tenant, seed its system roles and attach the owner."""
        if plan not in PLAN_USER_LIMITS:
            raise ValidationError("Unknown plan", detail={"plan": plan})
        if license_count < 1:
            raise ValidationError("License count must be at least 1")
        if not self.store.get_user(owner_user_id):
            raise NotFoundError("Owner user not found", detail={"user_id": owner_user_id})
        try:
            tenant = self.store.create_tenant(
                name,
                slug,
                plan=plan,
                license_count=license_count,
                owner_user_id=owner_user_id,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Tenant slug already taken", detail=exc.detail)
        roles = self.rbac.seed_tenant_roles(tenant.id)
        owner = self.store.add_member(
            tenant.id, owner_user_id, roles[OWNER_SLUG].id, is_owner=True
        )
        self.audit.record(
            "tenant_create",
            actor_id=owner_user_id,
            tenant_id=tenant.id,
            resource_type="tenant",
            resource_id=tenant.id,
            details={"plan": plan},
        )
        self.logger.info("tenant_created", tenant_id=tenant.id, plan=plan)
        return tenant, owner

    def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        return tenant

    def update_plan(
        self, tenant_id: str, *, plan: Optional[str] = None, license_count: Optional[int] = None
    ) -> Tenant:
        fields = {}
        if plan is not None:
            if plan not in PLAN_USER_LIMITS:
                raise ValidationError("Unknown plan", detail={"plan": plan})
            fields["plan"] = plan
        if license_count is not None:
            if license_count < 1:
                raise ValidationError("License count must be at least 1")
            fields["license_count"] = license_count
        tenant = self.store.update_tenant(tenant_id, **fields)
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        return tenant

    # seat limits
    def can_add_member(self, tenant_id: str) -> SeatCheck:
        """Evaluate the seat cap. Never fails open: store errors raise UpstreamError."""
        try:
            tenant = self.store.get_tenant(tenant_id)
            current = self.store.count_members(tenant_id, "active") if tenant else 0
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error("seat_check_store_failed", tenant_id=tenant_id, error=str(exc))
            raise UpstreamError(
                "Unable to verify seat availability, please retry",
                detail={"tenant_id": tenant_id},
            ) from exc
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})

        base = get_plan_user_limit(tenant.plan)
        limit = base if base == -1 else max(base, tenant.license_count or base)
        return self._evaluate_seats(tenant.plan, limit, current)

    @staticmethod
    def _evaluate_seats(plan: str, limit: int, current: int) -> SeatCheck:
        if limit == -1:
            return SeatCheck(allowed=True, current_count=current, limit=-1, plan=plan)
        if limit <= 1:
            return SeatCheck(
                allowed=False,
                current_count=current,
                limit=1,
                plan=plan,
                reason=(
                    "Core plan allows only 1 user (owner). Please upgrade to Flow "
                    "or higher to invite team members."
                ),
            )
        if current >= limit:
            return SeatCheck(
                allowed=False,
                current_count=current,
                limit=limit,
                plan=plan,
                reason=(
                    f"You have reached the maximum of {limit} users for your "
                    f"{plan} plan. Please upgrade or purchase more licenses."
                ),
            )
        return SeatCheck(allowed=True, current_count=current, limit=limit, plan=plan)

    def ensure_seat_available(self, tenant_id: str) -> SeatCheck:
        check = self.can_add_member(tenant_id)
        if not check.allowed:
            raise PlanLimitError(check.reason or "Seat limit reached", detail=check.to_dict())
        return check

    def _activate_within_cap(self, tenant_id: str, **kwargs) -> TenantMember:
        """Take a seat and activate in one store call.

        The pre-check fails fast; the store call recounts under its own lock
        so two concurrent activations cannot both take the last seat.
        """
        check = self.ensure_seat_available(tenant_id)
        try:
            member, current = self.store.activate_member_within_cap(
                tenant_id, check.limit, **kwargs
            )
        except (ServiceError, ConstraintViolation):
            raise
        except Exception as exc:
            self.logger.error("seat_claim_store_failed", tenant_id=tenant_id, error=str(exc))
            raise UpstreamError(
                "Unable to verify seat availability, please retry",
                detail={"tenant_id": tenant_id},
            ) from exc
        if member is None:
            refused = self._evaluate_seats(check.plan, check.limit, current)
            self.logger.info(
                "seat_claim_refused", tenant_id=tenant_id, current=current, limit=check.limit
            )
            raise PlanLimitError(refused.reason or "Seat limit reached", detail=refused.to_dict())
        return member

    # lookups
    def get_member(self, tenant_id: str, user_id: str) -> TenantMember:
        member = self.store.get_member(tenant_id, user_id)
        if not member:
            raise NotFoundError("Member not found", detail={"user_id": user_id})
        return member

    def list_members(self, tenant_id: str, status: Optional[str] = None) -> List[TenantMember]:
        if status is not None and status not in {"active", "suspended", "removed"}:
            raise ValidationError("Unknown member status", detail={"status": status})
        return self.store.list_members(tenant_id, status)

    def _assignable_role(self, tenant_id: str, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role or role.tenant_id != tenant_id:
            raise NotFoundError("Invalid role for this workspace", detail={"role_id": role_id})
        if role.slug == OWNER_SLUG:
            raise ForbiddenError(
                "Cannot assign Owner role. Use ownership transfer instead.",
                error_code="owner_immutable",
            )
        return role

    @staticmethod
    def _guard_owner(member: TenantMember, action: str) -> None:
        if member.is_owner:
            raise ForbiddenError(
                f"The workspace owner cannot be {action}",
                error_code="owner_immutable",
            )

    # transitions
    def add_member(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        actor_id: Optional[str] = None,
        invite_id: Optional[str] = None,
    ) -> TenantMember:
        """Add a user, or reactivate a removed membership in place."""
        role = self._assignable_role(tenant_id, role_id)
        if not self.store.get_user(user_id):
            raise NotFoundError("User not found", detail={"user_id": user_id})
        existing = self.store.get_member(tenant_id, user_id)
        if existing and existing.status == "active":
            raise ConflictError("User is already a member of this workspace")
        if existing and existing.status == "suspended":
            raise ConflictError(
                "User is suspended in this workspace. Reactivate them instead."
            )
        if existing:
            member = self._activate_within_cap(
                tenant_id,
                member_id=existing.id,
                role_id=role.id,
                invited_by=actor_id,
                invite_id=invite_id,
                joined_at=self._clock(),
                removed_at=None,
                removed_by=None,
                removal_reason=None,
                retention_expires_at=None,
            )
            action = "member_restore"
        else:
            try:
                member = self._activate_within_cap(
                    tenant_id,
                    user_id=user_id,
                    role_id=role.id,
                    invited_by=actor_id,
                    invite_id=invite_id,
                )
            except ConstraintViolation as exc:
                raise ConflictError("User is already a member of this workspace", detail=exc.detail)
            action = "member_add"
        self.audit.record(
            action,
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="member",
            resource_id=member.id,
            details={"user_id": user_id, "role_id": role.id, "invite_id": invite_id},
        )
        return member

    def update_member_role(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> TenantMember:
        member = self.get_member(tenant_id, user_id)
        self._guard_owner(member, "reassigned")
        if member.status == "removed":
            raise ConflictError("Member has been removed")
        role = self._assignable_role(tenant_id, role_id)
        current_role = self.store.get_role(member.role_id)
        if current_role:
            self.rbac.ensure_outranks(
                actor_id,
                tenant_id,
                current_role.hierarchy_level,
                message="Cannot change the role of a member at or above your hierarchy level",
            )
        self.rbac.ensure_outranks(
            actor_id,
            tenant_id,
            role.hierarchy_level,
            message="Cannot assign a role at or above your hierarchy level",
        )
        previous = member.role_id
        updated = self.store.update_member(member.id, role_id=role.id)
        self.audit.record(
            "member_role_change",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="member",
            resource_id=member.id,
            details={"from_role_id": previous, "to_role_id": role.id},
        )
        return updated

    def suspend_member(
        self,
        tenant_id: str,
        user_id: str,
        *,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TenantMember:
        member = self.get_member(tenant_id, user_id)
        self._guard_owner(member, "suspended")
        if member.status != "active":
            raise ConflictError(
                f"Only active members can be suspended (status is {member.status})"
            )
        updated = self.store.update_member(
            member.id,
            status="suspended",
            suspended_at=self._clock(),
            suspended_by=actor_id,
            suspension_reason=reason,
        )
        self.audit.record(
            "member_suspend",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="member",
            resource_id=member.id,
            details={"reason": reason},
        )
        return updated

    def unsuspend_member(
        self, tenant_id: str, user_id: str, *, actor_id: Optional[str] = None
    ) -> TenantMember:
        member = self.get_member(tenant_id, user_id)
        if member.status != "suspended":
            raise ConflictError("Member is not suspended")
        # Suspended members do not hold a seat, so coming back needs one
        updated = self._activate_within_cap(
            tenant_id,
            member_id=member.id,
            suspended_at=None,
            suspended_by=None,
            suspension_reason=None,
        )
        self.audit.record(
            "member_unsuspend",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="member",
            resource_id=member.id,
        )
        return updated

    def remove_member(
        self,
        tenant_id: str,
        user_id: str,
        *,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TenantMember:
        member = self.get_member(tenant_id, user_id)
        self._guard_owner(member, "removed")
        if member.status == "removed":
            raise ConflictError("Member has already been removed")
        now = self._clock()
        updated = self.store.update_member(
            member.id,
            status="removed",
            removed_at=now,
            removed_by=actor_id,
            removal_reason=reason,
            retention_expires_at=now + timedelta(days=self.retention_days),
        )
        self.audit.record(
            "member_remove",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="member",
            resource_id=member.id,
            details={"reason": reason},
        )
        return updated

    def restore_member(
        self, tenant_id: str, user_id: str, *, actor_id: Optional[str] = None
    ) -> TenantMember:
        member = self.get_member(tenant_id, user_id)
        if member.status != "removed":
            raise ConflictError("Only removed members can be restored")
        if member.retention_expires_at and member.retention_expires_at <= self._clock():
            raise ExpiredError(
                "The retention period for this member has ended",
                detail={"retention_expires_at": member.retention_expires_at.isoformat()},
            )
        role = self.store.get_role(member.role_id)
        if not role or role.tenant_id != tenant_id:
            raise NotFoundError("The member's previous role no longer exists")
        updated = self._activate_within_cap(
            tenant_id,
            member_id=member.id,
            removed_at=None,
            removed_by=None,
            removal_reason=None,
            retention_expires_at=None,
        )
        self.audit.record(
            "member_restore",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="member",
            resource_id=member.id,
        )
        return updated
