from __future__ import annotations

from typing import Any, Dict, List, Optional

from tenantcore.logging import get_logger
from tenantcore.storage.models import AuditEvent, new_id

logger = get_logger(__name__)


AUDIT_ACTIONS = frozenset(
    {
        # authentication
        "login",
        "login_failed",
        "logout",
        "magic_link_requested",
        "magic_link_verified",
        "session_bootstrap_created",
        "session_bootstrap_exchanged",
        # passkeys
        "passkey_register",
        "passkey_rename",
        "passkey_remove",
        # devices
        "device_trust",
        "device_untrust",
        "devices_untrust_all",
        # members
        "member_add",
        "member_role_change",
        "member_suspend",
        "member_unsuspend",
        "member_remove",
        "member_restore",
        # invites
        "user_invite",
        "invite_resend",
        "invite_cancel",
        "invite_accept",
        # roles
        "role_create",
        "role_update",
        "role_delete",
        "secondary_role_assign",
        "secondary_role_revoke",
        # tenant
        "tenant_create",
        "tenant_plan_update",
        "domain_verification_start",
        "domain_verified",
        "domain_verification_override",
    }
)


class AuditSink:
    """Fire-and-forget recorder for state-changing operations.

    ``record`` never raises: a failed write is logged and the operation
    that triggered it proceeds as if the write had succeeded.
    """

    def __init__(self, store) -> None:
        self.store = store

    def record(
        self,
        action: str,
        *,
        actor_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        status: str = "success",
    ) -> None:
        if action not in AUDIT_ACTIONS:
            logger.warning("audit_unknown_action", action=action)
        event = AuditEvent(
            id=new_id(),
            action=action,
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            status=status if status in {"success", "failure"} else "success",
        )
        try:
            self.store.append_audit_event(event)
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                action=action,
                tenant_id=tenant_id,
                error=str(exc),
            )

    def list_events(self, tenant_id: Optional[str], limit: int = 100) -> List[AuditEvent]:
        return self.store.list_audit_events(tenant_id, limit=max(1, min(limit, 500)))
