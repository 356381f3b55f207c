"""Tests for tenant invitations.

Covers:
- Creation checks and their order
- Token hashing and resend rotation
- Preview and acceptance, including lazy expiry
"""

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
    ValidationError,
)
from tenantcore.service.invites import InviteService, normalize_email
from tenantcore.service.membership import MembershipService
from tenantcore.service.permissions import PERMISSIONS
from tenantcore.service.rbac import RBACService
from tenantcore.service.vault import hash_token
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
    return MembershipService(memory_store, rbac, audit, clock=clock)


@pytest.fixture
def notifications():
    return MagicMock()


@pytest.fixture
def invites(memory_store, membership, notifications, clock):
    return InviteService(
        memory_store,
        membership,
        AuditSink(memory_store),
        notifications,
        max_resends=2,
        accept_url="https://app.example.com/invite/accept",
        clock=clock,
    )


@pytest.fixture
def workspace(memory_store, membership):
    owner = memory_store.create_user("owner@example.com", first_name="Olive", last_name="Owner")
    tenant, _ = membership.create_tenant(
        name="Acme", slug="acme", owner_user_id=owner.id, plan="flow"
    )
    roles = {r.slug: r for r in memory_store.list_roles(tenant.id)}
    return tenant, owner, roles


class TestNormalizeEmail:
    def test_lowercases_and_strips(self):
        assert normalize_email("  Jane@Example.COM ") == "jane@example.com"

    @pytest.mark.parametrize("value", ["", "no-at-sign", "a@b", "two words@example.com"])
    def test_rejects_malformed(self, value):
        with pytest.raises(ValidationError):
            normalize_email(value)


class TestCreateInvite:
    def test_stores_only_token_hash(self, invites, workspace, memory_store):
        tenant, owner, roles = workspace
        invite, token = invites.create_invite(
            tenant.id, "New@Example.com", roles["member"].id, actor_id=owner.id
        )

        stored = memory_store.get_invite(invite.id)
        assert stored.email == "new@example.com"
        assert stored.token_hash == hash_token(token)
        assert token not in stored.token_hash
        assert stored.status == "pending"
        assert stored.expires_at == invites._clock() + timedelta(days=7)

    def test_dispatches_invitation_email(self, invites, workspace, notifications):
        tenant, owner, roles = workspace
        _, token = invites.create_invite(
            tenant.id, "new@example.com", roles["admin"].id, actor_id=owner.id, message="Welcome"
        )

        template, to, data = notifications.dispatch.call_args.args
        assert template == "tenant_invite"
        assert to == "new@example.com"
        assert data["url"] == f"https://app.example.com/invite/accept?token={token}"
        assert data["tenant_name"] == "Acme"
        assert data["role_name"] == roles["admin"].name
        assert data["inviter_name"] == "Olive Owner"
        assert data["message"] == "Welcome"

    def test_records_audit_event(self, invites, workspace, memory_store):
        tenant, owner, roles = workspace
        invite, _ = invites.create_invite(
            tenant.id, "new@example.com", roles["member"].id, actor_id=owner.id
        )
        events = memory_store.list_audit_events(tenant.id)
        assert events[0].action == "user_invite"
        assert events[0].resource_id == invite.id

    def test_duplicate_pending_invite_conflicts(self, invites, workspace):
        tenant, owner, roles = workspace
        invites.create_invite(tenant.id, "new@example.com", roles["member"].id, actor_id=owner.id)
        with pytest.raises(ConflictError):
            invites.create_invite(
                tenant.id, "NEW@example.com", roles["member"].id, actor_id=owner.id
            )

    def test_expired_invite_does_not_block_new_one(self, invites, workspace, clock):
        tenant, owner, roles = workspace
        first, _ = invites.create_invite(
            tenant.id, "new@example.com", roles["member"].id, actor_id=owner.id
        )
        clock.now += timedelta(days=8)
        second, _ = invites.create_invite(
            tenant.id, "new@example.com", roles["member"].id, actor_id=owner.id
        )
        assert second.id != first.id
        assert invites.store.get_invite(first.id).status == "expired"

    def test_existing_active_member_conflicts(self, invites, workspace):
        tenant, owner, roles = workspace
        with pytest.raises(ConflictError) as exc:
            invites.create_invite(
                tenant.id, "owner@example.com", roles["member"].id, actor_id=owner.id
            )
        assert "already a member" in exc.value.message

    def test_suspended_member_conflicts(self, invites, workspace, membership, memory_store):
        tenant, owner, roles = workspace
        user = memory_store.create_user("sus@example.com")
        membership.add_member(tenant.id, user.id, roles["member"].id)
        membership.suspend_member(tenant.id, user.id)
        with pytest.raises(ConflictError) as exc:
            invites.create_invite(
                tenant.id, "sus@example.com", roles["member"].id, actor_id=owner.id
            )
        assert "suspended" in exc.value.message

    def test_owner_role_is_forbidden(self, invites, workspace):
        tenant, owner, roles = workspace
        with pytest.raises(ForbiddenError) as exc:
            invites.create_invite(
                tenant.id, "new@example.com", roles["owner"].id, actor_id=owner.id
            )
        assert exc.value.error_code == "owner_immutable"

    def test_role_from_other_tenant_not_found(self, invites, workspace, membership, memory_store):
        tenant, owner, _ = workspace
        other_owner = memory_store.create_user("other@example.com")
        other, _ = membership.create_tenant(
            name="Other", slug="other", owner_user_id=other_owner.id, plan="flow"
        )
        foreign_role = memory_store.get_role_by_slug(other.id, "member")
        with pytest.raises(NotFoundError):
            invites.create_invite(
                tenant.id, "new@example.com", foreign_role.id, actor_id=owner.id
            )

    def test_seat_limit_is_checked_first(self, invites, membership, memory_store):
        owner = memory_store.create_user("solo@example.com")
        tenant, _ = membership.create_tenant(
            name="Solo", slug="solo", owner_user_id=owner.id, plan="core"
        )
        # An owner-role invite would be forbidden, but the seat check runs before it
        owner_role = memory_store.get_role_by_slug(tenant.id, "owner")
        with pytest.raises(PlanLimitError):
            invites.create_invite(tenant.id, "new@example.com", owner_role.id, actor_id=owner.id)

    def test_long_message_rejected(self, invites, workspace):
        tenant, owner, roles = workspace
        with pytest.raises(ValidationError):
            invites.create_invite(
                tenant.id,
                "new@example.com",
                roles["member"].id,
                actor_id=owner.id,
                message="x" * 1001,
            )


class TestListingAndStats:
    def test_lazy_expiry_on_listing(self, invites, workspace, clock):
        tenant, owner, roles = workspace
        invites.create_invite(tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id)
        clock.now += timedelta(days=7)

        assert invites.get_pending_invites(tenant.id) == []
        assert [i.status for i in invites.list_invites(tenant.id)] == ["expired"]

    def test_unknown_status_filter_rejected(self, invites, workspace):
        with pytest.raises(ValidationError):
            invites.list_invites(workspace[0].id, status="bogus")

    def test_stats_count_each_status(self, invites, workspace):
        tenant, owner, roles = workspace
        a, _ = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        invites.create_invite(tenant.id, "b@example.com", roles["member"].id, actor_id=owner.id)
        invites.cancel_invite(tenant.id, a.id, actor_id=owner.id)

        stats = invites.get_invite_stats(tenant.id)
        assert stats["pending"] == 1
        assert stats["cancelled"] == 1
        assert stats["accepted"] == 0


class TestResendAndCancel:
    def test_resend_rotates_token(self, invites, workspace, clock, notifications):
        tenant, owner, roles = workspace
        invite, old_token = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        clock.now += timedelta(days=3)
        updated, new_token = invites.resend_invite(tenant.id, invite.id, actor_id=owner.id)

        assert new_token != old_token
        assert updated.resend_count == 1
        assert updated.expires_at == clock.now + timedelta(days=7)
        assert notifications.dispatch.call_args.args[0] == "tenant_invite_resend"
        with pytest.raises(NotFoundError):
            invites.preview_invite(old_token)
        assert invites.preview_invite(new_token)["invite_id"] == invite.id

    def test_resend_limit(self, invites, workspace):
        tenant, owner, roles = workspace
        invite, _ = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        invites.resend_invite(tenant.id, invite.id, actor_id=owner.id)
        invites.resend_invite(tenant.id, invite.id, actor_id=owner.id)
        with pytest.raises(ConflictError) as exc:
            invites.resend_invite(tenant.id, invite.id, actor_id=owner.id)
        assert exc.value.error_code == "resend_limit_exceeded"

    def test_resend_of_expired_invite_conflicts(self, invites, workspace, clock):
        tenant, owner, roles = workspace
        invite, _ = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        clock.now += timedelta(days=7, seconds=1)
        with pytest.raises(ConflictError):
            invites.resend_invite(tenant.id, invite.id, actor_id=owner.id)

    def test_cancel_only_pending(self, invites, workspace):
        tenant, owner, roles = workspace
        invite, token = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        cancelled = invites.cancel_invite(tenant.id, invite.id, actor_id=owner.id)
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_by == owner.id
        with pytest.raises(ConflictError):
            invites.cancel_invite(tenant.id, invite.id, actor_id=owner.id)
        with pytest.raises(ConflictError):
            invites.preview_invite(token)

    def test_invite_from_other_tenant_not_found(self, invites, workspace):
        tenant, owner, roles = workspace
        invite, _ = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        with pytest.raises(NotFoundError):
            invites.cancel_invite("other-tenant", invite.id, actor_id=owner.id)


class TestAcceptInvite:
    def test_accept_creates_membership(self, invites, workspace, memory_store):
        tenant, owner, roles = workspace
        user = memory_store.create_user("a@example.com")
        invite, token = invites.create_invite(
            tenant.id, "a@example.com", roles["admin"].id, actor_id=owner.id
        )

        accepted, member = invites.accept_invite(token, user.id)
        assert accepted.status == "accepted"
        assert accepted.accepted_by_user_id == user.id
        assert member.role_id == roles["admin"].id
        assert member.invite_id == invite.id
        assert memory_store.list_audit_events(tenant.id)[0].action == "invite_accept"

    def test_email_must_match(self, invites, workspace, memory_store):
        tenant, owner, roles = workspace
        intruder = memory_store.create_user("b@example.com")
        _, token = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        with pytest.raises(ForbiddenError) as exc:
            invites.accept_invite(token, intruder.id)
        assert exc.value.error_code == "email_mismatch"

    def test_second_accept_is_rejected(self, invites, workspace, memory_store):
        tenant, owner, roles = workspace
        user = memory_store.create_user("a@example.com")
        _, token = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        invites.accept_invite(token, user.id)
        with pytest.raises(ConflictError):
            invites.accept_invite(token, user.id)

    def test_retry_after_partial_accept_reuses_membership(
        self, invites, workspace, memory_store, membership
    ):
        tenant, owner, roles = workspace
        user = memory_store.create_user("a@example.com")
        invite, token = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        # Membership written but the invite never flipped to accepted
        first = membership.add_member(
            tenant.id, user.id, roles["member"].id, invite_id=invite.id
        )

        _, member = invites.accept_invite(token, user.id)
        assert member.id == first.id

    def test_seat_filled_after_invite_blocks_accept(
        self, invites, workspace, memory_store, membership
    ):
        tenant, owner, roles = workspace
        membership.update_plan(tenant.id, plan="core", license_count=2)
        user = memory_store.create_user("a@example.com")
        invite, token = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        other = memory_store.create_user("walk-in@example.com")
        membership.add_member(tenant.id, other.id, roles["member"].id, actor_id=owner.id)

        with pytest.raises(PlanLimitError) as exc:
            invites.accept_invite(token, user.id)
        assert exc.value.detail["limit"] == 2
        assert memory_store.get_member(tenant.id, user.id) is None
        assert memory_store.get_invite(invite.id).status == "pending"

    def test_expired_invite(self, invites, workspace, memory_store, clock):
        tenant, owner, roles = workspace
        user = memory_store.create_user("a@example.com")
        invite, token = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        clock.now += timedelta(days=7)
        with pytest.raises(ExpiredError):
            invites.accept_invite(token, user.id)
        assert memory_store.get_invite(invite.id).status == "expired"
        assert memory_store.get_member(tenant.id, user.id) is None

    def test_unknown_token(self, invites, workspace, memory_store):
        user = memory_store.create_user("a@example.com")
        with pytest.raises(NotFoundError) as exc:
            invites.accept_invite("f" * 64, user.id)
        assert exc.value.error_code == "invalid_token"

    def test_reactivates_removed_member(self, invites, workspace, membership, memory_store):
        tenant, owner, roles = workspace
        user = memory_store.create_user("a@example.com")
        original = membership.add_member(tenant.id, user.id, roles["viewer"].id)
        membership.remove_member(tenant.id, user.id)

        _, token = invites.create_invite(
            tenant.id, "a@example.com", roles["admin"].id, actor_id=owner.id
        )
        _, member = invites.accept_invite(token, user.id)
        assert member.id == original.id
        assert member.status == "active"
        assert member.role_id == roles["admin"].id
        assert member.retention_expires_at is None

    def test_preview_does_not_consume(self, invites, workspace):
        tenant, owner, roles = workspace
        _, token = invites.create_invite(
            tenant.id, "a@example.com", roles["member"].id, actor_id=owner.id
        )
        first = invites.preview_invite(token)
        second = invites.preview_invite(token)
        assert first == second
        assert first["tenant_name"] == "Acme"
        assert first["role_name"] == roles["member"].name
