#!/usr/bin/env python3
"""Create a first workspace and its owner for local setup.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com TENANT_NAME="Acme" TENANT_SLUG=acme python scripts/bootstrap_tenant.py

    # Or with command line args:
    python scripts/bootstrap_tenant.py --email owner@example.com --name Acme --slug acme --plan flow

Environment Variables:
    OWNER_EMAIL: Email for the workspace owner
    TENANT_NAME: Display name of the workspace
    TENANT_SLUG: URL slug of the workspace
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)

The owner signs in afterwards with a magic link sent to OWNER_EMAIL.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_tenant(
    email: str,
    name: str,
    slug: str,
    plan: str = "core",
    license_count: int = 1,
    dry_run: bool = False,
) -> dict:
    """Create the owner user if needed, then the tenant.

    Returns:
        dict with user_id, tenant_id and status ('created', 'user_reused' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantcore.service.runtime import get_runtime

    runtime = get_runtime()

    user = runtime.store.get_user_by_email(email)
    if dry_run:
        action = "reuse" if user else "create"
        print(f"[DRY RUN] Would {action} user {email} and create tenant '{slug}' on plan {plan}")
        return {"user_id": user.id if user else None, "tenant_id": None, "status": "dry_run"}

    status = "created"
    if user:
        status = "user_reused"
        print(f"Using existing user {email} (id: {user.id})")
    else:
        user = runtime.store.create_user(email)
        print(f"Created user {email} (id: {user.id})")

    tenant, owner = runtime.membership.create_tenant(
        name=name,
        slug=slug,
        owner_user_id=user.id,
        plan=plan,
        license_count=license_count,
    )
    return {
        "user_id": user.id,
        "tenant_id": tenant.id,
        "member_id": owner.id,
        "status": status,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a workspace and its owner for TenantCore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("TENANT_NAME"),
        help="Workspace name (or set TENANT_NAME env var)",
    )
    parser.add_argument(
        "--slug",
        default=os.environ.get("TENANT_SLUG"),
        help="Workspace slug (or set TENANT_SLUG env var)",
    )
    parser.add_argument(
        "--plan",
        default="core",
        choices=["core", "flow", "scale", "enterprise"],
        help="Subscription plan",
    )
    parser.add_argument("--licenses", type=int, default=1, help="Purchased license count")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    missing = [flag for flag, value in (("--email", args.email), ("--name", args.name), ("--slug", args.slug)) if not value]
    if missing:
        print(f"Error: {', '.join(missing)} required (or the matching environment variable)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/tenantcore-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_tenant(
            args.email.strip().lower(),
            args.name,
            args.slug.strip().lower(),
            plan=args.plan,
            license_count=args.licenses,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] != "dry_run":
        print("\nWorkspace created successfully!")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Owner user ID: {result['user_id']}")


if __name__ == "__main__":
    main()
