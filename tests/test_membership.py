"""Unit tests for tenant membership and plan seat limits."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from tenantcore.service.audit import AuditSink
from tenantcore.service.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    PlanLimitError,
    UpstreamError,
    ValidationError,
)
from tenantcore.service.membership import (
    PLAN_USER_LIMITS,
    MembershipService,
    get_plan_user_limit,
)
from tenantcore.service.permissions import PERMISSIONS
from tenantcore.service.rbac import RBACService
from tenantcore.storage.memory import MemoryStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.upsert_permissions(PERMISSIONS.values())
    return store


@pytest.fixture
def membership(memory_store, clock):
    audit = AuditSink(memory_store)
    rbac = RBACService(memory_store, audit, clock=clock)
    return MembershipService(memory_store, rbac, audit, retention_days=30, clock=clock)


@pytest.fixture
def owner(memory_store):
    return memory_store.create_user("owner@example.com")


def _workspace(membership, memory_store, owner, plan="flow", license_count=1):
    tenant, _ = membership.create_tenant(
        name="Acme", slug="acme", owner_user_id=owner.id, plan=plan, license_count=license_count
    )
    roles = {r.slug: r for r in memory_store.list_roles(tenant.id)}
    return tenant, roles


def _users(memory_store, count, prefix="user"):
    return [memory_store.create_user(f"{prefix}{i}@example.com") for i in range(count)]


class TestPlanLimits:
    def test_known_limits(self):
        assert PLAN_USER_LIMITS == {"core": 1, "flow": 50, "scale": 200, "enterprise": -1}

    def test_unknown_plan_falls_back_to_core(self):
        assert get_plan_user_limit("platinum") == 1


class TestCreateTenant:
    def test_owner_is_active_member_with_owner_role(self, membership, memory_store, owner):
        tenant, owner_member = membership.create_tenant(
            name="Acme", slug="acme", owner_user_id=owner.id
        )
        assert owner_member.is_owner
        assert owner_member.status == "active"
        assert memory_store.get_role(owner_member.role_id).slug == "owner"
        actions = [e.action for e in memory_store.list_audit_events(tenant.id)]
        assert "tenant_create" in actions

    def test_duplicate_slug_conflicts(self, membership, owner):
        membership.create_tenant(name="Acme", slug="acme", owner_user_id=owner.id)
        with pytest.raises(ConflictError):
            membership.create_tenant(name="Acme 2", slug="acme", owner_user_id=owner.id)

    def test_unknown_plan_rejected(self, membership, owner):
        with pytest.raises(ValidationError):
            membership.create_tenant(name="A", slug="a", owner_user_id=owner.id, plan="gold")


class TestSeatCheck:
    def test_core_plan_blocks_second_user(self, membership, memory_store, owner):
        tenant, _ = _workspace(membership, memory_store, owner, plan="core")
        check = membership.can_add_member(tenant.id)
        assert not check.allowed
        assert check.limit == 1
        assert "Core plan allows only 1 user" in check.reason

    def test_core_plan_with_extra_licenses_allows_more(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner, plan="core", license_count=2)
        (user,) = _users(memory_store, 1)
        membership.add_member(tenant.id, user.id, roles["member"].id)
        check = membership.can_add_member(tenant.id)
        assert not check.allowed
        assert check.current_count == 2
        assert "maximum of 2 users" in check.reason

    def test_license_count_raises_limit_above_plan(self, membership, memory_store, owner):
        tenant, _ = _workspace(membership, memory_store, owner, plan="flow", license_count=75)
        assert membership.can_add_member(tenant.id).limit == 75

    def test_license_count_below_plan_uses_plan(self, membership, memory_store, owner):
        tenant, _ = _workspace(membership, memory_store, owner, plan="flow", license_count=5)
        assert membership.can_add_member(tenant.id).limit == 50

    def test_enterprise_is_unlimited(self, membership, memory_store, owner):
        tenant, _ = _workspace(membership, memory_store, owner, plan="enterprise")
        check = membership.can_add_member(tenant.id)
        assert check.allowed
        assert check.limit == -1

    def test_only_active_members_hold_seats(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner, plan="core", license_count=3)
        a, b = _users(memory_store, 2)
        membership.add_member(tenant.id, a.id, roles["member"].id)
        membership.add_member(tenant.id, b.id, roles["member"].id)
        assert not membership.can_add_member(tenant.id).allowed

        membership.suspend_member(tenant.id, a.id)
        assert membership.can_add_member(tenant.id).current_count == 2
        assert membership.can_add_member(tenant.id).allowed

    def test_store_failure_does_not_fail_open(self, membership, memory_store, owner):
        tenant, _ = _workspace(membership, memory_store, owner)
        memory_store.count_members = MagicMock(side_effect=RuntimeError("db down"))
        with pytest.raises(UpstreamError) as exc:
            membership.can_add_member(tenant.id)
        assert exc.value.retryable

    def test_unknown_tenant(self, membership):
        with pytest.raises(NotFoundError):
            membership.can_add_member("missing")

    def test_ensure_seat_raises_plan_limit(self, membership, memory_store, owner):
        tenant, _ = _workspace(membership, memory_store, owner, plan="core")
        with pytest.raises(PlanLimitError) as exc:
            membership.ensure_seat_available(tenant.id)
        assert exc.value.error_code == "plan_limit_exceeded"
        assert exc.value.detail["limit"] == 1


class TestAddMember:
    def test_add_member(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner)
        (user,) = _users(memory_store, 1)
        member = membership.add_member(tenant.id, user.id, roles["admin"].id, actor_id=owner.id)
        assert member.status == "active"
        assert member.role_id == roles["admin"].id
        assert member.invited_by == owner.id

    def test_owner_role_cannot_be_assigned(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner)
        (user,) = _users(memory_store, 1)
        with pytest.raises(ForbiddenError) as exc:
            membership.add_member(tenant.id, user.id, roles["owner"].id)
        assert exc.value.error_code == "owner_immutable"

    def test_role_from_other_tenant_rejected(self, membership, memory_store, owner):
        tenant, _ = _workspace(membership, memory_store, owner)
        other_owner = memory_store.create_user("other@example.com")
        other, _ = membership.create_tenant(name="O", slug="o", owner_user_id=other_owner.id)
        foreign_role = memory_store.get_role_by_slug(other.id, "member")
        (user,) = _users(memory_store, 1)
        with pytest.raises(NotFoundError):
            membership.add_member(tenant.id, user.id, foreign_role.id)

    def test_active_member_conflicts(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner)
        (user,) = _users(memory_store, 1)
        membership.add_member(tenant.id, user.id, roles["member"].id)
        with pytest.raises(ConflictError):
            membership.add_member(tenant.id, user.id, roles["member"].id)

    def test_suspended_member_conflicts(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner)
        (user,) = _users(memory_store, 1)
        membership.add_member(tenant.id, user.id, roles["member"].id)
        membership.suspend_member(tenant.id, user.id)
        with pytest.raises(ConflictError, match="Reactivate"):
            membership.add_member(tenant.id, user.id, roles["member"].id)

    def test_removed_member_is_reactivated_in_place(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner)
        (user,) = _users(memory_store, 1)
        first = membership.add_member(tenant.id, user.id, roles["member"].id)
        membership.remove_member(tenant.id, user.id)

        again = membership.add_member(tenant.id, user.id, roles["viewer"].id)
        assert again.id == first.id
        assert again.status == "active"
        assert again.role_id == roles["viewer"].id
        assert again.retention_expires_at is None

    def test_seat_limit_blocks_add(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner, plan="core")
        (user,) = _users(memory_store, 1)
        with pytest.raises(PlanLimitError):
            membership.add_member(tenant.id, user.id, roles["member"].id)
        assert memory_store.get_member(tenant.id, user.id) is None


class TestTransitions:
    @pytest.fixture
    def setup(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner)
        (user,) = _users(memory_store, 1)
        membership.add_member(tenant.id, user.id, roles["member"].id)
        return tenant, roles, user

    def test_owner_is_immutable(self, membership, setup, owner):
        tenant, roles, _ = setup
        for call in (
            lambda: membership.suspend_member(tenant.id, owner.id),
            lambda: membership.remove_member(tenant.id, owner.id),
            lambda: membership.update_member_role(tenant.id, owner.id, roles["admin"].id),
        ):
            with pytest.raises(ForbiddenError) as exc:
                call()
            assert exc.value.error_code == "owner_immutable"

    def test_suspend_and_unsuspend(self, membership, setup, owner):
        tenant, _, user = setup
        suspended = membership.suspend_member(tenant.id, user.id, actor_id=owner.id, reason="abuse")
        assert suspended.status == "suspended"
        assert suspended.suspension_reason == "abuse"
        with pytest.raises(ConflictError):
            membership.suspend_member(tenant.id, user.id)

        restored = membership.unsuspend_member(tenant.id, user.id)
        assert restored.status == "active"
        assert restored.suspended_at is None
        with pytest.raises(ConflictError):
            membership.unsuspend_member(tenant.id, user.id)

    def test_unsuspend_needs_a_seat(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner, plan="core", license_count=2)
        a, b = _users(memory_store, 2)
        membership.add_member(tenant.id, a.id, roles["member"].id)
        membership.suspend_member(tenant.id, a.id)
        membership.add_member(tenant.id, b.id, roles["member"].id)
        with pytest.raises(PlanLimitError):
            membership.unsuspend_member(tenant.id, a.id)

    def test_remove_sets_retention(self, membership, setup, clock):
        tenant, _, user = setup
        removed = membership.remove_member(tenant.id, user.id, reason="left")
        assert removed.status == "removed"
        assert removed.retention_expires_at == clock.now + timedelta(days=30)
        with pytest.raises(ConflictError):
            membership.remove_member(tenant.id, user.id)

    def test_suspended_member_can_be_removed(self, membership, setup):
        tenant, _, user = setup
        membership.suspend_member(tenant.id, user.id)
        assert membership.remove_member(tenant.id, user.id).status == "removed"

    def test_restore_within_retention(self, membership, setup, clock):
        tenant, roles, user = setup
        membership.remove_member(tenant.id, user.id)
        clock.now += timedelta(days=29)
        restored = membership.restore_member(tenant.id, user.id)
        assert restored.status == "active"
        assert restored.role_id == roles["member"].id

    def test_restore_after_retention_expired(self, membership, setup, clock):
        tenant, _, user = setup
        membership.remove_member(tenant.id, user.id)
        clock.now += timedelta(days=30)
        with pytest.raises(ExpiredError):
            membership.restore_member(tenant.id, user.id)

    def test_restore_only_removed(self, membership, setup):
        tenant, _, user = setup
        with pytest.raises(ConflictError):
            membership.restore_member(tenant.id, user.id)

    def test_change_role(self, membership, setup):
        tenant, roles, user = setup
        updated = membership.update_member_role(tenant.id, user.id, roles["admin"].id)
        assert updated.role_id == roles["admin"].id

    def test_list_members_by_status(self, membership, setup):
        tenant, _, user = setup
        membership.suspend_member(tenant.id, user.id)
        assert [m.user_id for m in membership.list_members(tenant.id, "suspended")] == [user.id]
        assert len(membership.list_members(tenant.id)) == 2
        with pytest.raises(ValidationError):
            membership.list_members(tenant.id, "ghost")

    def test_transitions_are_audited(self, membership, setup, memory_store):
        tenant, _, user = setup
        membership.suspend_member(tenant.id, user.id)
        membership.unsuspend_member(tenant.id, user.id)
        membership.remove_member(tenant.id, user.id)
        actions = {e.action for e in memory_store.list_audit_events(tenant.id)}
        assert {"member_add", "member_suspend", "member_unsuspend", "member_remove"} <= actions


class TestConcurrentSeatClaims:
    """Both callers pass the seat pre-check before either one writes."""

    @staticmethod
    def _race(membership, calls):
        barrier = threading.Barrier(len(calls))
        original = membership.can_add_member

        def checked_then_wait(tenant_id):
            check = original(tenant_id)
            barrier.wait(timeout=5)
            return check

        membership.can_add_member = checked_then_wait
        outcomes = []

        def run(call):
            try:
                call()
                outcomes.append("ok")
            except PlanLimitError as exc:
                outcomes.append(exc.detail["current_count"])

        threads = [threading.Thread(target=run, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return outcomes

    def test_parallel_adds_take_one_free_seat(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner, plan="core", license_count=2)
        a, b = _users(memory_store, 2)
        outcomes = self._race(
            membership,
            [
                lambda: membership.add_member(tenant.id, a.id, roles["member"].id),
                lambda: membership.add_member(tenant.id, b.id, roles["member"].id),
            ],
        )
        assert sorted(outcomes, key=str) == [2, "ok"]
        assert memory_store.count_members(tenant.id, "active") == 2

    def test_parallel_unsuspends_take_one_free_seat(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner, plan="core", license_count=3)
        a, b = _users(memory_store, 2)
        for user in (a, b):
            membership.add_member(tenant.id, user.id, roles["member"].id)
            membership.suspend_member(tenant.id, user.id)
        (c,) = _users(memory_store, 1, prefix="late")
        membership.add_member(tenant.id, c.id, roles["member"].id)

        outcomes = self._race(
            membership,
            [
                lambda: membership.unsuspend_member(tenant.id, a.id),
                lambda: membership.unsuspend_member(tenant.id, b.id),
            ],
        )
        assert sorted(outcomes, key=str) == [3, "ok"]
        assert memory_store.count_members(tenant.id, "active") == 3
        assert memory_store.count_members(tenant.id, "suspended") == 1

    def test_parallel_restores_take_one_free_seat(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner, plan="core", license_count=2)
        a, b = _users(memory_store, 2)
        membership.add_member(tenant.id, a.id, roles["member"].id)
        membership.remove_member(tenant.id, a.id)
        membership.add_member(tenant.id, b.id, roles["member"].id)
        membership.remove_member(tenant.id, b.id)

        outcomes = self._race(
            membership,
            [
                lambda: membership.restore_member(tenant.id, a.id),
                lambda: membership.restore_member(tenant.id, b.id),
            ],
        )
        assert sorted(outcomes, key=str) == [2, "ok"]
        assert memory_store.count_members(tenant.id, "active") == 2
        assert memory_store.count_members(tenant.id, "removed") == 1

    def test_refused_claim_reports_plan_limit(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner, plan="flow")
        memory_store.activate_member_within_cap = MagicMock(return_value=(None, 50))
        (user,) = _users(memory_store, 1)
        with pytest.raises(PlanLimitError) as exc:
            membership.add_member(tenant.id, user.id, roles["member"].id)
        assert exc.value.detail["limit"] == 50
        assert "maximum of 50 users" in str(exc.value)

    def test_claim_store_failure_does_not_fail_open(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner)
        memory_store.activate_member_within_cap = MagicMock(side_effect=RuntimeError("db down"))
        (user,) = _users(memory_store, 1)
        with pytest.raises(UpstreamError):
            membership.add_member(tenant.id, user.id, roles["member"].id)


class TestRoleChangeHierarchy:
    @pytest.fixture
    def team(self, membership, memory_store, owner):
        tenant, roles = _workspace(membership, memory_store, owner)
        admin, peer, user = _users(memory_store, 3)
        membership.add_member(tenant.id, admin.id, roles["admin"].id)
        membership.add_member(tenant.id, peer.id, roles["admin"].id)
        membership.add_member(tenant.id, user.id, roles["member"].id)
        return tenant, roles, admin, peer, user

    def test_cannot_promote_to_own_level(self, membership, team):
        tenant, roles, admin, _, user = team
        with pytest.raises(ForbiddenError) as exc:
            membership.update_member_role(tenant.id, user.id, roles["admin"].id, actor_id=admin.id)
        assert exc.value.error_code == "hierarchy_violation"
        assert membership.get_member(tenant.id, user.id).role_id == roles["member"].id

    def test_cannot_demote_a_peer(self, membership, team):
        tenant, roles, admin, peer, _ = team
        with pytest.raises(ForbiddenError) as exc:
            membership.update_member_role(tenant.id, peer.id, roles["viewer"].id, actor_id=admin.id)
        assert exc.value.error_code == "hierarchy_violation"

    def test_lower_roles_can_be_reassigned(self, membership, team):
        tenant, roles, admin, _, user = team
        updated = membership.update_member_role(
            tenant.id, user.id, roles["viewer"].id, actor_id=admin.id
        )
        assert updated.role_id == roles["viewer"].id

    def test_owner_can_promote(self, membership, team, owner):
        tenant, roles, _, _, user = team
        updated = membership.update_member_role(
            tenant.id, user.id, roles["admin"].id, actor_id=owner.id
        )
        assert updated.role_id == roles["admin"].id
