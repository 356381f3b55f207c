"""Tests for passwordless email sign-in."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from tenantcore.config import Settings
from tenantcore.service.audit import AuditSink
from tenantcore.service.auth import AuthService
from tenantcore.service.errors import (
    ExpiredError,
    ForbiddenError,
    RateLimitedError,
    ValidationError,
)
from tenantcore.service.magic_link import MagicLinkService
from tenantcore.service.vault import TokenVault, hash_token
from tenantcore.storage.memory import MemoryStore


class FakeClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifications():
    return MagicMock()


@pytest.fixture
def auth(memory_store):
    return AuthService(memory_store, Settings(jwt_secret="s" * 48))


@pytest.fixture
def service(memory_store, auth, notifications, clock):
    return MagicLinkService(
        memory_store,
        TokenVault(namespace="magic_link", clock=clock),
        auth,
        AuditSink(memory_store),
        notifications,
        ttl_minutes=15,
        max_per_hour=3,
        verify_url="https://id.example.com/magic-link/verify",
        app_base_url="https://id.example.com",
        clock=clock,
    )


def _emailed_token(notifications):
    _, _, data = notifications.dispatch.call_args.args
    return parse_qs(urlparse(data["url"]).query)["token"][0]


class TestRequest:
    async def test_known_email_receives_link(self, service, memory_store, notifications, clock):
        memory_store.create_user("jane@example.com")
        result = await service.request_magic_link("Jane@Example.com", ip_address="10.0.0.1")

        assert result["expires_at"] == clock.now + timedelta(minutes=15)
        template, to, data = notifications.dispatch.call_args.args
        assert template == "magic_link"
        assert to == "jane@example.com"
        assert data["url"].startswith("https://id.example.com/magic-link/verify?token=")
        assert data["expires_in_minutes"] == 15

    async def test_unknown_email_gets_same_response_without_email(
        self, service, notifications, clock
    ):
        result = await service.request_magic_link("ghost@example.com")
        assert result == {"expires_at": clock.now + timedelta(minutes=15)}
        notifications.dispatch.assert_not_called()

    async def test_issuance_stores_hash_only(self, service, memory_store, notifications):
        memory_store.create_user("jane@example.com")
        await service.request_magic_link("jane@example.com")
        token = _emailed_token(notifications)

        assert list(memory_store.magic_links) == [hash_token(token)]

    async def test_throttled_after_three_per_hour(self, service, memory_store, clock):
        memory_store.create_user("jane@example.com")
        for _ in range(3):
            await service.request_magic_link("jane@example.com")

        with pytest.raises(RateLimitedError) as exc:
            await service.request_magic_link("jane@example.com")
        assert exc.value.retry_after == 3600

        clock.now += timedelta(hours=1, seconds=1)
        await service.request_magic_link("jane@example.com")

    @pytest.mark.parametrize(
        "redirect",
        ["https://evil.example.net/x", "//evil.example.net", "javascript:alert(1)"],
    )
    async def test_offsite_redirect_rejected(self, service, memory_store, redirect):
        memory_store.create_user("jane@example.com")
        with pytest.raises(ValidationError):
            await service.request_magic_link("jane@example.com", redirect_url=redirect)

    async def test_redirect_travels_with_token(self, service, memory_store, notifications):
        memory_store.create_user("jane@example.com")
        await service.request_magic_link("jane@example.com", redirect_url="/workspaces/acme")
        token = _emailed_token(notifications)

        result = await service.verify_magic_link(token)
        assert result["redirect_url"] == "/workspaces/acme"

    async def test_invalid_email_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.request_magic_link("not-an-email")


class TestVerify:
    async def test_verify_opens_session_once(self, service, memory_store, notifications):
        user = memory_store.create_user("jane@example.com")
        await service.request_magic_link("jane@example.com")
        token = _emailed_token(notifications)

        result = await service.verify_magic_link(token, user_agent="pytest")
        assert result["user_id"] == user.id
        assert result["token_type"] == "bearer"
        session = memory_store.get_session(result["session_id"])
        assert session.auth_method == "magic_link"
        assert memory_store.magic_links[hash_token(token)].used_at is not None

        with pytest.raises(ExpiredError) as exc:
            await service.verify_magic_link(token)
        assert exc.value.error_code == "invalid_token"

    async def test_expired_link(self, service, memory_store, notifications, clock):
        memory_store.create_user("jane@example.com")
        await service.request_magic_link("jane@example.com")
        token = _emailed_token(notifications)

        clock.now += timedelta(minutes=16)
        with pytest.raises(ExpiredError):
            await service.verify_magic_link(token)

    async def test_suspended_user_is_refused(self, service, memory_store, notifications):
        user = memory_store.create_user("jane@example.com")
        await service.request_magic_link("jane@example.com")
        token = _emailed_token(notifications)
        memory_store.set_user_status(user.id, "suspended")

        with pytest.raises(ForbiddenError) as exc:
            await service.verify_magic_link(token)
        assert exc.value.error_code == "account_disabled"
        event = memory_store.list_audit_events()[0]
        assert event.action == "login_failed"
        assert event.status == "failure"

    async def test_access_token_authenticates(self, service, auth, memory_store, notifications):
        user = memory_store.create_user("jane@example.com")
        await service.request_magic_link("jane@example.com")
        result = await service.verify_magic_link(_emailed_token(notifications))

        ctx = await auth.authenticate(f"Bearer {result['access_token']}", None)
        assert ctx.user_id == user.id
        assert ctx.session_id == result["session_id"]

        await auth.revoke(result["session_id"])
        assert await auth.authenticate(f"Bearer {result['access_token']}", None) is None


class TestCleanup:
    async def test_old_issuance_records_are_dropped(self, service, memory_store, clock):
        memory_store.create_user("jane@example.com")
        await service.request_magic_link("jane@example.com")
        clock.now += timedelta(hours=2)
        assert service.cleanup_expired() >= 1
        assert memory_store.magic_links == {}
