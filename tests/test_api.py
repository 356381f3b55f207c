"""End-to-end tests for the HTTP surface.

Covers:
- Session authentication and the error envelope
- Tenant creation, seats and membership
- Invite issue and acceptance
- Magic link sign-in
- Bootstrap hand-off tokens
- Domain verification and the audit trail
"""

import uuid
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from tenantcore import app as app_module
from tenantcore.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def mailbox():
    """Capture outgoing notifications instead of delivering them."""
    runtime = get_runtime()
    dispatch = MagicMock()
    runtime.notifications.dispatch = dispatch
    return dispatch


def _make_user(email=None, **fields):
    runtime = get_runtime()
    email = email or f"user_{uuid.uuid4().hex[:8]}@example.com"
    user = runtime.store.create_user(email, **fields)
    tokens = runtime.auth.issue_session(user, auth_method="magic_link")
    return {
        "user": user,
        "headers": {"Authorization": f"Bearer {tokens['access_token']}"},
    }


@pytest.fixture
def owner():
    return _make_user("owner@example.com", first_name="Olive", last_name="Owner")


@pytest.fixture
def workspace(client, owner):
    response = client.post(
        "/v1/tenants",
        json={"name": "Acme", "slug": "acme", "plan": "flow"},
        headers=owner["headers"],
    )
    assert response.status_code == 201, response.text
    tenant_id = response.json()["data"]["tenant"]["id"]
    roles = {
        r.slug: r.id for r in get_runtime().rbac.list_roles(tenant_id)
    }
    return {"id": tenant_id, "roles": roles}


def _emailed_token(mailbox):
    _, _, data = mailbox.call_args.args
    return parse_qs(urlparse(data["url"]).query)["token"][0]


class TestHealthAndAuth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert response.headers["x-content-type-options"] == "nosniff"

    def test_missing_credentials(self, client):
        response = client.post("/v1/tenants", json={"name": "Acme", "slug": "acme"})
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_garbage_bearer_token(self, client):
        response = client.get(
            "/v1/devices", headers={"Authorization": "Bearer not.a.jwt"}
        )
        assert response.status_code == 401

    def test_session_id_header(self, client):
        runtime = get_runtime()
        user = runtime.store.create_user("header@example.com")
        session_id = runtime.auth.issue_session(user, auth_method="passkey")["session_id"]
        response = client.get("/v1/devices", headers={"session_id": session_id})
        assert response.status_code == 200
        assert response.json()["data"]["items"] == []

    def test_logout_revokes_session(self, client, owner):
        assert client.post("/v1/auth/logout", headers=owner["headers"]).status_code == 200
        assert client.get("/v1/devices", headers=owner["headers"]).status_code == 401


class TestTenants:
    def test_create_seeds_owner(self, client, owner, workspace):
        response = client.get(f"/v1/tenants/{workspace['id']}", headers=owner["headers"])
        assert response.status_code == 200
        tenant = response.json()["data"]
        assert tenant["slug"] == "acme"
        assert tenant["owner_user_id"] == owner["user"].id
        assert set(workspace["roles"]) == {"owner", "admin", "member", "viewer"}

    def test_invalid_slug_is_validation_error(self, client, owner):
        response = client.post(
            "/v1/tenants", json={"name": "Acme", "slug": "Not A Slug"}, headers=owner["headers"]
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_duplicate_slug_conflicts(self, client, owner, workspace):
        response = client.post(
            "/v1/tenants", json={"name": "Acme 2", "slug": "acme"}, headers=owner["headers"]
        )
        assert response.status_code == 409

    def test_outsider_is_not_a_member(self, client, workspace):
        outsider = _make_user()
        response = client.get(f"/v1/tenants/{workspace['id']}", headers=outsider["headers"])
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "not_a_member"

    def test_my_permissions(self, client, owner, workspace):
        response = client.get(
            f"/v1/tenants/{workspace['id']}/permissions/me", headers=owner["headers"]
        )
        data = response.json()["data"]
        assert "canManageUsers" in data["permissions"]
        assert "security" in data["by_category"]


class TestMembers:
    def test_add_and_list(self, client, owner, workspace):
        teammate = _make_user()
        response = client.post(
            f"/v1/tenants/{workspace['id']}/members",
            json={"user_id": teammate["user"].id, "role_id": workspace["roles"]["viewer"]},
            headers=owner["headers"],
        )
        assert response.status_code == 201
        assert response.json()["data"]["status"] == "active"

        listing = client.get(
            f"/v1/tenants/{workspace['id']}/members", headers=owner["headers"]
        ).json()["data"]["items"]
        assert {m["user_id"] for m in listing} == {owner["user"].id, teammate["user"].id}

    def test_viewer_cannot_manage(self, client, owner, workspace):
        viewer = _make_user()
        get_runtime().membership.add_member(
            workspace["id"], viewer["user"].id, workspace["roles"]["viewer"]
        )
        response = client.post(
            f"/v1/tenants/{workspace['id']}/members",
            json={"user_id": _make_user()["user"].id, "role_id": workspace["roles"]["viewer"]},
            headers=viewer["headers"],
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "permission_denied"

    def test_core_plan_seat_limit(self, client, owner):
        created = client.post(
            "/v1/tenants", json={"name": "Solo", "slug": "solo"}, headers=owner["headers"]
        ).json()["data"]
        tenant_id = created["tenant"]["id"]
        seats = client.get(f"/v1/tenants/{tenant_id}/seats", headers=owner["headers"])
        assert seats.json()["data"]["allowed"] is False
        assert seats.json()["data"]["limit"] == 1

        viewer_role = get_runtime().store.get_role_by_slug(tenant_id, "viewer")
        response = client.post(
            f"/v1/tenants/{tenant_id}/members",
            json={"user_id": _make_user()["user"].id, "role_id": viewer_role.id},
            headers=owner["headers"],
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "plan_limit_exceeded"

    def test_owner_cannot_be_removed(self, client, owner, workspace):
        response = client.delete(
            f"/v1/tenants/{workspace['id']}/members/{owner['user'].id}",
            headers=owner["headers"],
        )
        assert response.status_code == 403

    def test_suspend_remove_restore(self, client, owner, workspace):
        teammate = _make_user()
        user_id = teammate["user"].id
        get_runtime().membership.add_member(
            workspace["id"], user_id, workspace["roles"]["member"]
        )
        base = f"/v1/tenants/{workspace['id']}/members/{user_id}"

        suspended = client.post(
            f"{base}/suspend", json={"reason": "offboarding"}, headers=owner["headers"]
        )
        assert suspended.json()["data"]["status"] == "suspended"
        # A suspended member loses access to tenant resources
        assert client.get(
            f"/v1/tenants/{workspace['id']}", headers=teammate["headers"]
        ).status_code == 403

        removed = client.delete(base, headers=owner["headers"])
        assert removed.json()["data"]["status"] == "removed"
        assert removed.json()["data"]["retention_expires_at"] is not None

        restored = client.post(f"{base}/restore", headers=owner["headers"])
        assert restored.json()["data"]["status"] == "active"

    def test_admin_cannot_escalate_own_role(self, client, owner, workspace):
        admin = _make_user()
        get_runtime().membership.add_member(
            workspace["id"], admin["user"].id, workspace["roles"]["admin"]
        )
        response = client.put(
            f"/v1/tenants/{workspace['id']}/roles/{workspace['roles']['admin']}/permissions",
            json={"permissions": ["canDeleteTenant", "canManageRoles"]},
            headers=admin["headers"],
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "hierarchy_violation"
        assert not get_runtime().rbac.has_permission(
            admin["user"].id, workspace["id"], "canDeleteTenant"
        )


class TestInvites:
    def test_invite_and_accept(self, client, owner, workspace, mailbox):
        response = client.post(
            f"/v1/tenants/{workspace['id']}/invites",
            json={"email": "New.Hire@Example.com", "role_id": workspace["roles"]["member"]},
            headers=owner["headers"],
        )
        assert response.status_code == 201
        invite = response.json()["data"]
        assert invite["email"] == "new.hire@example.com"
        assert "token" not in invite
        token = _emailed_token(mailbox)

        preview = client.post("/v1/invites/preview", json={"token": token})
        assert preview.json()["data"]["tenant_name"] == "Acme"

        invitee = _make_user("new.hire@example.com")
        accepted = client.post(
            "/v1/invites/accept", json={"token": token}, headers=invitee["headers"]
        )
        assert accepted.status_code == 200, accepted.text
        data = accepted.json()["data"]
        assert data["invite"]["status"] == "accepted"
        assert data["member"]["role_id"] == workspace["roles"]["member"]

        stats = client.get(
            f"/v1/tenants/{workspace['id']}/invites/stats", headers=owner["headers"]
        ).json()["data"]
        assert stats["accepted"] == 1

    def test_accept_with_other_account(self, client, owner, workspace, mailbox):
        client.post(
            f"/v1/tenants/{workspace['id']}/invites",
            json={"email": "invited@example.com", "role_id": workspace["roles"]["viewer"]},
            headers=owner["headers"],
        )
        intruder = _make_user("intruder@example.com")
        response = client.post(
            "/v1/invites/accept",
            json={"token": _emailed_token(mailbox)},
            headers=intruder["headers"],
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "email_mismatch"

    def test_owner_role_rejected(self, client, owner, workspace, mailbox):
        response = client.post(
            f"/v1/tenants/{workspace['id']}/invites",
            json={"email": "boss@example.com", "role_id": workspace["roles"]["owner"]},
            headers=owner["headers"],
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "owner_immutable"
        mailbox.assert_not_called()

    def test_cancel_invite(self, client, owner, workspace, mailbox):
        invite = client.post(
            f"/v1/tenants/{workspace['id']}/invites",
            json={"email": "maybe@example.com", "role_id": workspace["roles"]["viewer"]},
            headers=owner["headers"],
        ).json()["data"]
        response = client.delete(
            f"/v1/tenants/{workspace['id']}/invites/{invite['id']}", headers=owner["headers"]
        )
        assert response.json()["data"]["status"] == "cancelled"

        pending = client.get(
            f"/v1/tenants/{workspace['id']}/invites?status=pending", headers=owner["headers"]
        ).json()["data"]["items"]
        assert pending == []


class TestMagicLink:
    def test_request_and_verify(self, client, mailbox):
        get_runtime().store.create_user("jane@example.com")
        response = client.post("/v1/auth/magic-link", json={"email": "jane@example.com"})
        assert response.status_code == 202
        assert response.json()["data"]["sent"] is True

        token = _emailed_token(mailbox)
        verified = client.post("/v1/auth/magic-link/verify", json={"token": token})
        assert verified.status_code == 200
        data = verified.json()["data"]
        assert data["email"] == "jane@example.com"

        headers = {"Authorization": f"Bearer {data['access_token']}"}
        assert client.get("/v1/devices", headers=headers).status_code == 200

        replay = client.post("/v1/auth/magic-link/verify", json={"token": token})
        assert replay.status_code == 410
        assert replay.json()["error"]["code"] == "invalid_token"

    def test_unknown_email_looks_the_same(self, client, mailbox):
        response = client.post("/v1/auth/magic-link", json={"email": "ghost@example.com"})
        assert response.status_code == 202
        assert response.json()["data"]["sent"] is True
        mailbox.assert_not_called()

    def test_off_site_redirect_rejected(self, client, mailbox):
        response = client.post(
            "/v1/auth/magic-link",
            json={"email": "jane@example.com", "redirect_url": "https://evil.example.net/"},
        )
        assert response.status_code == 400

    def test_malformed_email(self, client):
        response = client.post("/v1/auth/magic-link", json={"email": "not-an-email"})
        assert response.status_code == 400


class TestBootstrap:
    def test_create_and_exchange_once(self, client, owner, workspace):
        created = client.post(
            "/v1/auth/bootstrap",
            json={"tenant_id": workspace["id"], "upstream_session": {"sid": "abc"}},
            headers=owner["headers"],
        )
        assert created.status_code == 201
        token = created.json()["data"]["token"]

        exchanged = client.post("/v1/auth/bootstrap/exchange", json={"token": token})
        assert exchanged.status_code == 200
        snapshot = exchanged.json()["data"]
        assert snapshot["tenant_id"] == workspace["id"]
        assert snapshot["role"]["slug"] == "owner"
        assert snapshot["upstream_session"] == {"sid": "abc"}

        again = client.post("/v1/auth/bootstrap/exchange", json={"token": token})
        assert again.status_code == 410

    def test_non_member_cannot_mint(self, client, workspace):
        outsider = _make_user()
        response = client.post(
            "/v1/auth/bootstrap", json={"tenant_id": workspace["id"]}, headers=outsider["headers"]
        )
        assert response.status_code == 403


class TestDomainsAndAudit:
    def test_start_and_override(self, client, owner, workspace):
        base = f"/v1/tenants/{workspace['id']}/domain"
        started = client.post(base, json={"domain": "Acme.Example.com"}, headers=owner["headers"])
        assert started.status_code == 200
        status = started.json()["data"]
        assert status["domain"] == "acme.example.com"
        assert status["verified"] is False
        assert status["record_type"] == "TXT"

        overridden = client.post(
            f"{base}/override", json={"reason": "confirmed by phone"}, headers=owner["headers"]
        )
        assert overridden.json()["data"]["verified"] is True
        assert overridden.json()["data"]["method"] == "manual"

    def test_audit_trail_lists_actions(self, client, owner, workspace):
        client.post(
            f"/v1/tenants/{workspace['id']}/domain",
            json={"domain": "acme.example.com"},
            headers=owner["headers"],
        )
        response = client.get(
            f"/v1/tenants/{workspace['id']}/audit?limit=10", headers=owner["headers"]
        )
        assert response.status_code == 200
        actions = [e["action"] for e in response.json()["data"]["items"]]
        assert "tenant_create" in actions
        assert actions[0] == "domain_verification_start"

    def test_viewer_cannot_read_audit(self, client, workspace):
        viewer = _make_user()
        get_runtime().membership.add_member(
            workspace["id"], viewer["user"].id, workspace["roles"]["viewer"]
        )
        response = client.get(
            f"/v1/tenants/{workspace['id']}/audit", headers=viewer["headers"]
        )
        assert response.status_code == 403
