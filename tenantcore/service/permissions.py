from __future__ import annotations

from typing import Dict, Iterable, List

from tenantcore.storage.models import Permission


def _p(key: str, name: str, category: str, description: str, *, mfa: bool = False, critical: bool = False) -> Permission:
    return Permission(
        key=key,
        name=name,
        category=category,
        description=description,
        requires_mfa=mfa,
        is_critical=critical,
    )


# Closed catalog. Keys are referenced by code and stored on role grants;
# adding a key here is the only way to make it grantable.
PERMISSIONS: Dict[str, Permission] = {
    p.key: p
    for p in [
        # billing
        _p("canManageBilling", "Manage Billing", "billing", "Change plan and billing details"),
        _p("canManageLicenses", "Manage Licenses", "billing", "Manage license seats"),
        _p("canViewInvoices", "View Invoices", "billing", "View billing invoices"),
        _p("canCancelSubscription", "Cancel Subscription", "billing", "Cancel the subscription", mfa=True, critical=True),
        # users
        _p("canManageUsers", "Manage Users", "users", "Full user management"),
        _p("canInviteUsers", "Invite Users", "users", "Invite new users"),
        _p("canViewUsers", "View Users", "users", "View user list"),
        _p("canSuspendUsers", "Suspend Users", "users", "Suspend and reactivate members"),
        _p("canDeleteUsers", "Delete Users", "users", "Remove members from the workspace", critical=True),
        # roles
        _p("canManageRoles", "Manage Roles", "roles", "Create, edit and delete roles"),
        _p("canAssignRoles", "Assign Roles", "roles", "Change member roles and grant secondary roles"),
        _p("canViewRoles", "View Roles", "roles", "View roles"),
        # organization
        _p("canManageTenantSettings", "Manage Tenant Settings", "organization", "Manage organization settings"),
        _p("canViewTenantSettings", "View Tenant Settings", "organization", "View organization settings"),
        _p("canManageDomains", "Manage Domains", "organization", "Verify and manage organization domains"),
        _p("canDeleteTenant", "Delete Tenant", "organization", "Delete organization", mfa=True, critical=True),
        # security
        _p("canViewAuditLogs", "View Audit Logs", "security", "View the audit trail"),
        _p("canManageSecurity", "Manage Security", "security", "Manage security policies"),
        # secrets
        _p("canManageSecrets", "Manage Secrets", "secrets", "Create and edit secrets"),
        _p("canViewSecrets", "View Secrets", "secrets", "View secret values"),
        _p("canExportSecrets", "Export Secrets", "secrets", "Export secrets", mfa=True, critical=True),
        # integrations
        _p("canManageIntegrations", "Manage Integrations", "integrations", "Manage third-party integrations"),
        _p("canManageWebhooks", "Manage Webhooks", "integrations", "Create, edit and delete webhooks"),
        _p("canViewWebhooks", "View Webhooks", "integrations", "View webhooks"),
    ]
}

CATEGORIES: List[str] = sorted({p.category for p in PERMISSIONS.values()})


class UnknownPermissionError(ValueError):
    """Raised when code references a key outside the catalog."""

    def __init__(self, keys: Iterable[str]) -> None:
        self.keys = sorted(keys)
        super().__init__(f"unknown permission keys: {', '.join(self.keys)}")


def validate_permission_keys(keys: Iterable[str]) -> None:
    unknown = {k for k in keys if k not in PERMISSIONS}
    if unknown:
        raise UnknownPermissionError(unknown)


def get_permission(key: str) -> Permission:
    try:
        return PERMISSIONS[key]
    except KeyError:
        raise UnknownPermissionError([key]) from None


# System role templates seeded into every tenant.
# (slug, name, hierarchy_level, is_protected, permission keys)
_ADMIN_EXCLUDED = {"canDeleteTenant", "canCancelSubscription", "canExportSecrets"}

ROLE_TEMPLATES = [
    ("owner", "Owner", 1, True, sorted(PERMISSIONS)),
    ("admin", "Admin", 10, False, sorted(set(PERMISSIONS) - _ADMIN_EXCLUDED)),
    (
        "member",
        "Member",
        50,
        False,
        [
            "canViewUsers",
            "canViewRoles",
            "canViewTenantSettings",
            "canViewSecrets",
            "canManageSecrets",
            "canViewWebhooks",
        ],
    ),
    (
        "viewer",
        "Viewer",
        90,
        False,
        ["canViewUsers", "canViewRoles", "canViewTenantSettings"],
    ),
]

OWNER_SLUG = "owner"

# Fail at import if a template drifts from the catalog
for _slug, _name, _level, _protected, _keys in ROLE_TEMPLATES:
    validate_permission_keys(_keys)
