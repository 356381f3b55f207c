from __future__ import annotations

from typing import Any, Dict, List, Optional

from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.errors import (
    ExpiredError,
    ForbiddenError,
    NotAMemberError,
    NotFoundError,
    ServerError,
)
from tenantcore.service.vault import TokenVault

logger = get_logger(__name__)


class BootstrapTokenService:
    """Opaque hand-off tokens for cross-domain redirects.

    After sign-in on the identity domain the client is redirected to a
    tenant domain with a short-lived opaque token instead of credentials in
    the URL. The tenant app exchanges it exactly once for the identity
    snapshot built here.
    """

    def __init__(
        self,
        store,
        vault: TokenVault,
        audit: AuditSink,
        *,
        ttl_seconds: int = 120,
        debug: bool = False,
    ) -> None:
        self.store = store
        self.vault = vault
        self.audit = audit
        self.ttl_seconds = ttl_seconds
        self.debug = debug

    def _memberships(self, user_id: str) -> List[Dict[str, Any]]:
        rows = []
        for member in self.store.list_user_memberships(user_id, "active"):
            tenant = self.store.get_tenant(member.tenant_id)
            role = self.store.get_role(member.role_id)
            rows.append(
                {
                    "tenant_id": member.tenant_id,
                    "tenant_name": tenant.name if tenant else None,
                    "tenant_slug": tenant.slug if tenant else None,
                    "role_slug": role.slug if role else None,
                }
            )
        return rows

    async def create_bootstrap_token(
        self,
        user_id: str,
        tenant_id: str,
        *,
        upstream_session: Optional[Dict[str, Any]] = None,
    ) -> str:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        member = self.store.get_member(tenant_id, user_id)
        if not member or member.status != "active":
            raise NotAMemberError("You are not a member of this workspace")
        role = self.store.get_role(member.role_id)
        if not role:
            raise ServerError("Membership references a missing role")

        snapshot = {
            "user": {
                "id": user.id,
                "email": user.email,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "avatar_url": user.avatar_url,
            },
            "tenant_id": tenant_id,
            "role": {"id": role.id, "name": role.name, "slug": role.slug},
            "is_owner": member.is_owner,
            "memberships": self._memberships(user_id),
            "upstream_session": upstream_session,
        }
        token = await self.vault.issue(
            snapshot, self.ttl_seconds, owner_key=user_id, encoding="urlsafe"
        )
        self.audit.record(
            "session_bootstrap_created",
            actor_id=user_id,
            tenant_id=tenant_id,
            resource_type="session",
        )
        logger.info("bootstrap_token_created", user_id=user_id, tenant_id=tenant_id)
        return token

    async def exchange_bootstrap_token(self, token: str) -> Dict[str, Any]:
        entry = await self.vault.consume(token)
        if entry is None:
            raise ExpiredError(
                "This sign-in hand-off is invalid or has expired", error_code="invalid_token"
            )
        snapshot = entry.payload
        self.audit.record(
            "session_bootstrap_exchanged",
            actor_id=entry.owner,
            tenant_id=snapshot.get("tenant_id"),
            resource_type="session",
        )
        return snapshot

    async def invalidate(self, token: str) -> bool:
        return await self.vault.invalidate(token)

    async def exists(self, token: str) -> bool:
        """Debug-only peek. Production exposes no check-without-consume path."""
        if not self.debug:
            raise ForbiddenError(
                "Bootstrap token inspection is disabled outside test mode",
                error_code="debug_only",
            )
        return await self.vault.exists(token)
