import threading
from datetime import datetime, timedelta, timezone

import pytest

from tenantcore.service.permissions import PERMISSIONS
from tenantcore.storage.errors import ConstraintViolation
from tenantcore.storage.memory import MemoryStore
from tenantcore.storage.models import AuditEvent, PasskeyCredential, TenantInvite, new_id

NOW = datetime(2026, 1, 15, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.upsert_permissions(PERMISSIONS.values())
    return store


def _tenant_with_role(store):
    owner = store.create_user("owner@example.com")
    tenant = store.create_tenant("Acme", "acme", plan="flow", owner_user_id=owner.id)
    role = store.create_role(tenant.id, "Owner", "owner", 1, is_system=True, is_protected=True)
    store.add_member(tenant.id, owner.id, role.id, is_owner=True)
    return owner, tenant, role


def test_state_survives_reload(store, tmp_path):
    owner, tenant, role = _tenant_with_role(store)
    store.set_role_permissions(tenant.id, role.id, ["canViewUsers", "canManageUsers"])
    session = store.create_session(owner.id, tenant_id=tenant.id, auth_method="passkey")
    store.create_passkey(
        PasskeyCredential(
            id=new_id(),
            user_id=owner.id,
            credential_id="cred-1",
            public_key=b"\x30\x59\x00",
            algorithm=-7,
            transports=["internal"],
        )
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user(owner.id).email == "owner@example.com"
    assert reloaded.get_tenant(tenant.id).plan == "flow"
    assert reloaded.get_member(tenant.id, owner.id).is_owner
    assert reloaded.get_role_permission_keys([role.id]) == {"canViewUsers", "canManageUsers"}
    restored = reloaded.get_session(session.id)
    assert restored.auth_method == "passkey"
    assert restored.expires_at == session.expires_at
    passkey = reloaded.get_passkey_by_credential_id("cred-1")
    assert passkey.public_key == b"\x30\x59\x00"
    assert passkey.transports == ["internal"]


def test_unique_constraints(store):
    owner, tenant, role = _tenant_with_role(store)
    with pytest.raises(ConstraintViolation):
        store.create_user("OWNER@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_tenant("Other", "acme")
    with pytest.raises(ConstraintViolation):
        store.add_member(tenant.id, owner.id, role.id)
    with pytest.raises(ConstraintViolation):
        store.create_role(tenant.id, "Owner 2", "owner", 2)


def test_single_owner_per_tenant(store):
    _, tenant, role = _tenant_with_role(store)
    other = store.create_user("other@example.com")
    with pytest.raises(ConstraintViolation):
        store.add_member(tenant.id, other.id, role.id, is_owner=True)


def test_unknown_permission_grant_rejected(store):
    _, tenant, role = _tenant_with_role(store)
    with pytest.raises(ConstraintViolation) as exc:
        store.set_role_permissions(tenant.id, role.id, ["canFly"])
    assert exc.value.detail == {"permission_keys": ["canFly"]}


def test_one_pending_invite_per_email(store):
    owner, tenant, role = _tenant_with_role(store)

    def invite():
        return TenantInvite(
            id=new_id(),
            tenant_id=tenant.id,
            email="a@example.com",
            role_id=role.id,
            token_hash=new_id(),
            expires_at=NOW + timedelta(days=7),
        )

    first = store.create_invite(invite())
    with pytest.raises(ConstraintViolation):
        store.create_invite(invite())

    store.update_invite(first.id, status="cancelled")
    store.create_invite(invite())


def test_role_usage_counts_active_secondaries_only(store):
    owner, tenant, role = _tenant_with_role(store)
    helper = store.create_role(tenant.id, "Helper", "helper", 50)
    user = store.create_user("u@example.com")
    store.upsert_secondary_role(tenant.id, user.id, helper.id, expires_at=NOW)
    assert store.count_role_usage(helper.id) == 1

    assert store.expire_secondary_roles(NOW) == 1
    assert store.count_role_usage(helper.id) == 0
    assert [a.status for a in store.list_secondary_roles(tenant.id)] == ["expired"]


def test_audit_events_newest_first(store):
    for action in ("first", "second", "third"):
        store.append_audit_event(AuditEvent(id=new_id(), action=action, tenant_id="t1"))
    store.append_audit_event(AuditEvent(id=new_id(), action="elsewhere", tenant_id="t2"))

    assert [e.action for e in store.list_audit_events("t1", limit=2)] == ["third", "second"]
    assert len(store.list_audit_events()) == 4


def test_activate_within_cap_refuses_at_limit(store):
    owner, tenant, role = _tenant_with_role(store)
    member = store.create_role(tenant.id, "Member", "member", 50)
    first = store.create_user("first@example.com")
    second = store.create_user("second@example.com")

    added, seen = store.activate_member_within_cap(tenant.id, 2, user_id=first.id, role_id=member.id)
    assert added.status == "active"
    assert seen == 1

    refused, seen = store.activate_member_within_cap(
        tenant.id, 2, user_id=second.id, role_id=member.id
    )
    assert refused is None
    assert seen == 2
    assert store.get_member(tenant.id, second.id) is None

    unlimited, _ = store.activate_member_within_cap(
        tenant.id, -1, user_id=second.id, role_id=member.id
    )
    assert unlimited.user_id == second.id


def test_activate_within_cap_reactivates_existing_row(store):
    owner, tenant, role = _tenant_with_role(store)
    helper = store.create_role(tenant.id, "Helper", "helper", 50)
    user = store.create_user("u@example.com")
    row = store.add_member(tenant.id, user.id, helper.id)
    store.update_member(row.id, status="suspended", suspension_reason="abuse")

    reactivated, _ = store.activate_member_within_cap(
        tenant.id, 2, member_id=row.id, suspension_reason=None
    )
    assert reactivated.id == row.id
    assert reactivated.status == "active"
    assert reactivated.suspension_reason is None
    with pytest.raises(ConstraintViolation):
        store.activate_member_within_cap("missing", 2, member_id=row.id)


def test_activate_within_cap_serializes_threads(store):
    owner, tenant, role = _tenant_with_role(store)
    helper = store.create_role(tenant.id, "Helper", "helper", 50)
    users = [store.create_user(f"u{i}@example.com") for i in range(8)]
    barrier = threading.Barrier(len(users))
    results = []

    def claim(user):
        barrier.wait(timeout=5)
        member, _ = store.activate_member_within_cap(
            tenant.id, 3, user_id=user.id, role_id=helper.id
        )
        results.append(member)

    threads = [threading.Thread(target=claim, args=(u,)) for u in users]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sum(1 for m in results if m is not None) == 2
    assert store.count_members(tenant.id) == 3
