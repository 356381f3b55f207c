from __future__ import annotations

import dataclasses
import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantcore.logging import get_logger
from tenantcore.storage.errors import ConstraintViolation
from tenantcore.storage.models import (
    AuditEvent,
    MagicLinkIssue,
    PasskeyCredential,
    Permission,
    Role,
    SecondaryRoleAssignment,
    Session,
    Tenant,
    TenantInvite,
    TenantMember,
    TrustedDevice,
    User,
    new_id,
    utcnow,
)

_REQUIRED_TABLES = [
    "app_user",
    "auth_session",
    "tenant",
    "permission",
    "role",
    "role_permission",
    "tenant_member",
    "secondary_role_assignment",
    "tenant_invite",
    "magic_link",
    "trusted_device",
    "passkey_credential",
    "audit_event",
]

_JSON_COLUMNS = {"meta", "details", "transports"}


def _row_to(cls: type, row: Optional[Dict[str, Any]]) -> Any:
    """Build a model dataclass from a dict_row, coercing driver types."""
    if not row:
        return None
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name not in row:
            continue
        value = row[f.name]
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif isinstance(value, memoryview):
            value = value.tobytes()
        kwargs[f.name] = value
    return cls(**kwargs)


def _column_value(name: str, value: Any) -> Any:
    if name in _JSON_COLUMNS and value is not None:
        return json.dumps(value)
    return value


class PostgresStore:
    """Postgres-backed store for tenants, roles, members and credentials.

    Multi-statement transitions run inside ``conn.transaction()`` with
    ``SELECT ... FOR UPDATE`` so concurrent writers serialize on the row.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure every table exists before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def _update_columns(
        self,
        table: str,
        model: type,
        key_column: str,
        key_value: Any,
        fields: Dict[str, Any],
        *,
        immutable: Iterable[str] = (),
    ) -> Optional[Dict[str, Any]]:
        allowed = {f.name for f in dataclasses.fields(model)}
        for name in fields:
            if name in immutable:
                raise ValueError(f"{table} field {name} is immutable")
            if name not in allowed:
                raise ValueError(f"unknown {table} field {name}")
        if not fields:
            with self._connect() as conn:
                return conn.execute(
                    sql.SQL("SELECT * FROM {} WHERE {} = %s").format(
                        sql.Identifier(table), sql.Identifier(key_column)
                    ),
                    (key_value,),
                ).fetchone()
        query, params = self._update_statement(table, key_column, key_value, fields)
        with self._connect() as conn:
            return conn.execute(query, params).fetchone()

    @staticmethod
    def _update_statement(
        table: str, key_column: str, key_value: Any, fields: Dict[str, Any]
    ) -> Tuple[sql.Composed, List[Any]]:
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        )
        query = sql.SQL("UPDATE {} SET {} WHERE {} = %s RETURNING *").format(
            sql.Identifier(table), assignments, sql.Identifier(key_column)
        )
        params = [_column_value(name, value) for name, value in fields.items()]
        params.append(key_value)
        return query, params

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        status: str = "active",
    ) -> User:
        user = User(
            id=new_id(),
            email=email.strip().lower(),
            first_name=first_name,
            last_name=last_name,
            avatar_url=avatar_url,
            status=status,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, avatar_url, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        first_name,
                        last_name,
                        avatar_url,
                        status,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _row_to(User, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _row_to(User, row)

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        row = self._update_columns("app_user", User, "id", user_id, {"status": status})
        return _row_to(User, row)

    def set_webauthn_enabled(self, user_id: str, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET webauthn_enabled = %s WHERE id = %s",
                (enabled, user_id),
            )

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        tenant_id: str | None = None,
        mfa_verified: bool = False,
        auth_method: str = "magic_link",
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            tenant_id=tenant_id,
            mfa_verified=mfa_verified,
            auth_method=auth_method,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, tenant_id, created_at, expires_at, user_agent, ip_addr, mfa_verified, auth_method, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        tenant_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        mfa_verified,
                        auth_method,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _row_to(Session, row)

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))

    def mark_session_verified(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET mfa_verified = TRUE WHERE id = %s", (session_id,)
            )

    # tenants
    def create_tenant(
        self,
        name: str,
        slug: str,
        *,
        plan: str = "core",
        license_count: int = 1,
        owner_user_id: Optional[str] = None,
    ) -> Tenant:
        tenant = Tenant(
            id=new_id(),
            name=name,
            slug=slug,
            plan=plan,
            license_count=license_count,
            owner_user_id=owner_user_id,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant (id, name, slug, plan, license_count, owner_user_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant.id,
                        name,
                        slug,
                        plan,
                        license_count,
                        owner_user_id,
                        tenant.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return _row_to(Tenant, row)

    def update_tenant(self, tenant_id: str, **fields: Any) -> Optional[Tenant]:
        row = self._update_columns(
            "tenant", Tenant, "id", tenant_id, fields, immutable=("id",)
        )
        return _row_to(Tenant, row)

    # permission catalog
    def upsert_permissions(self, permissions: Iterable[Permission]) -> None:
        with self._connect() as conn:
            with conn.transaction():
                for perm in permissions:
                    conn.execute(
                        """
                        INSERT INTO permission (key, name, category, description, requires_mfa, is_critical)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (key) DO UPDATE SET
                            name = EXCLUDED.name,
                            category = EXCLUDED.category,
                            description = EXCLUDED.description,
                            requires_mfa = EXCLUDED.requires_mfa,
                            is_critical = EXCLUDED.is_critical
                        """,
                        (
                            perm.key,
                            perm.name,
                            perm.category,
                            perm.description,
                            perm.requires_mfa,
                            perm.is_critical,
                        ),
                    )

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission ORDER BY category, key"
            ).fetchall()
        return [_row_to(Permission, row) for row in rows]

    # roles
    def create_role(
        self,
        tenant_id: str,
        name: str,
        slug: str,
        hierarchy_level: int,
        *,
        is_system: bool = False,
        is_protected: bool = False,
        description: Optional[str] = None,
    ) -> Role:
        role = Role(
            id=new_id(),
            tenant_id=tenant_id,
            name=name,
            slug=slug,
            hierarchy_level=hierarchy_level,
            is_system=is_system,
            is_protected=is_protected,
            description=description,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role (id, tenant_id, name, slug, hierarchy_level, is_system, is_protected, description, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        role.id,
                        tenant_id,
                        name,
                        slug,
                        hierarchy_level,
                        is_system,
                        is_protected,
                        description,
                        role.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role slug already exists", {"field": "slug"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return _row_to(Role, row)

    def get_role_by_slug(self, tenant_id: str, slug: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role WHERE tenant_id = %s AND slug = %s", (tenant_id, slug)
            ).fetchone()
        return _row_to(Role, row)

    def list_roles(self, tenant_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM role WHERE tenant_id = %s ORDER BY hierarchy_level, name",
                (tenant_id,),
            ).fetchall()
        return [_row_to(Role, row) for row in rows]

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]:
        updates = {
            k: v
            for k, v in fields.items()
            if k in {"name", "description", "hierarchy_level"} and v is not None
        }
        row = self._update_columns("role", Role, "id", role_id, updates)
        return _row_to(Role, row)

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
            return cur.rowcount > 0

    def count_role_usage(self, role_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    (SELECT count(*) FROM tenant_member WHERE role_id = %s AND status <> 'removed')
                  + (SELECT count(*) FROM secondary_role_assignment WHERE role_id = %s AND status = 'active')
                  AS usage
                """,
                (role_id, role_id),
            ).fetchone()
        return int(row["usage"]) if row else 0

    def set_role_permissions(
        self, tenant_id: str, role_id: str, permission_keys: Iterable[str]
    ) -> None:
        keys = sorted(set(permission_keys))
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "DELETE FROM role_permission WHERE role_id = %s", (role_id,)
                    )
                    for key in keys:
                        conn.execute(
                            """
                            INSERT INTO role_permission (tenant_id, role_id, permission_key)
                            VALUES (%s, %s, %s)
                            """,
                            (tenant_id, role_id, key),
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "unknown role or permission", {"role_id": role_id, "permission_keys": keys}
            )

    def get_role_permission_keys(self, role_ids: Sequence[str]) -> Set[str]:
        if not role_ids:
            return set()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT permission_key FROM role_permission WHERE role_id = ANY(%s::uuid[])",
                (list(role_ids),),
            ).fetchall()
        return {row["permission_key"] for row in rows}

    # members
    def add_member(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        is_owner: bool = False,
        invited_by: Optional[str] = None,
        invite_id: Optional[str] = None,
    ) -> TenantMember:
        member = TenantMember(
            id=new_id(),
            tenant_id=tenant_id,
            user_id=user_id,
            role_id=role_id,
            is_owner=is_owner,
            invited_by=invited_by,
            invite_id=invite_id,
        )
        with self._connect() as conn:
            self._insert_member(conn, member)
        return member

    @staticmethod
    def _insert_member(conn, member: TenantMember) -> None:
        try:
            conn.execute(
                """
                INSERT INTO tenant_member (id, tenant_id, user_id, role_id, is_owner, status, joined_at, updated_at, invited_by, invite_id)
                VALUES (%s, %s, %s, %s, %s, 'active', %s, %s, %s, %s)
                """,
                (
                    member.id,
                    member.tenant_id,
                    member.user_id,
                    member.role_id,
                    member.is_owner,
                    member.joined_at,
                    member.updated_at,
                    member.invited_by,
                    member.invite_id,
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership already exists",
                {"tenant_id": member.tenant_id, "user_id": member.user_id},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "tenant, user or role missing",
                {
                    "tenant_id": member.tenant_id,
                    "user_id": member.user_id,
                    "role_id": member.role_id,
                },
            )

    def activate_member_within_cap(
        self,
        tenant_id: str,
        limit: int,
        *,
        member_id: Optional[str] = None,
        user_id: Optional[str] = None,
        role_id: Optional[str] = None,
        invited_by: Optional[str] = None,
        invite_id: Optional[str] = None,
        **fields: Any,
    ) -> Tuple[Optional[TenantMember], int]:
        """Insert or reactivate a member only while active seats stay under ``limit``.

        The tenant row is locked for the duration so concurrent activations
        count seats one at a time. Returns ``(None, active_count)`` when the
        cap is already reached; a negative limit means unlimited.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    tenant_row = conn.execute(
                        "SELECT id FROM tenant WHERE id = %s FOR UPDATE", (tenant_id,)
                    ).fetchone()
                    if not tenant_row:
                        raise ConstraintViolation(
                            "tenant does not exist", {"tenant_id": tenant_id}
                        )
                    count_row = conn.execute(
                        "SELECT count(*) AS n FROM tenant_member WHERE tenant_id = %s AND status = 'active'",
                        (tenant_id,),
                    ).fetchone()
                    current = int(count_row["n"]) if count_row else 0
                    if 0 <= limit <= current:
                        return None, current
                    if member_id is None:
                        member = TenantMember(
                            id=new_id(),
                            tenant_id=tenant_id,
                            user_id=user_id,
                            role_id=role_id,
                            invited_by=invited_by,
                            invite_id=invite_id,
                        )
                        self._insert_member(conn, member)
                        return member, current
                    changes = {**fields, "status": "active", "updated_at": utcnow()}
                    if role_id is not None:
                        changes["role_id"] = role_id
                    if invited_by is not None:
                        changes["invited_by"] = invited_by
                    if invite_id is not None:
                        changes["invite_id"] = invite_id
                    for name in changes:
                        if name in {"id", "tenant_id", "user_id", "is_owner"}:
                            raise ValueError(f"tenant_member field {name} is immutable")
                    query, params = self._update_statement(
                        "tenant_member", "id", member_id, changes
                    )
                    row = conn.execute(query, params).fetchone()
                    return _row_to(TenantMember, row), current
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "unknown role", {"tenant_id": tenant_id, "role_id": role_id}
            )

    def get_member(self, tenant_id: str, user_id: str) -> Optional[TenantMember]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_member WHERE tenant_id = %s AND user_id = %s",
                (tenant_id, user_id),
            ).fetchone()
        return _row_to(TenantMember, row)

    def get_member_by_id(self, member_id: str) -> Optional[TenantMember]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_member WHERE id = %s", (member_id,)
            ).fetchone()
        return _row_to(TenantMember, row)

    def list_members(
        self, tenant_id: str, status: Optional[str] = None
    ) -> List[TenantMember]:
        query = "SELECT * FROM tenant_member WHERE tenant_id = %s"
        params: list = [tenant_id]
        if status:
            query += " AND status = %s"
            params.append(status)
        query += " ORDER BY joined_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to(TenantMember, row) for row in rows]

    def list_user_memberships(
        self, user_id: str, status: Optional[str] = "active"
    ) -> List[TenantMember]:
        query = "SELECT * FROM tenant_member WHERE user_id = %s"
        params: list = [user_id]
        if status:
            query += " AND status = %s"
            params.append(status)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to(TenantMember, row) for row in rows]

    def count_members(self, tenant_id: str, status: str = "active") -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM tenant_member WHERE tenant_id = %s AND status = %s",
                (tenant_id, status),
            ).fetchone()
        return int(row["n"]) if row else 0

    def update_member(self, member_id: str, **fields: Any) -> Optional[TenantMember]:
        fields = {**fields, "updated_at": utcnow()}
        row = self._update_columns(
            "tenant_member",
            TenantMember,
            "id",
            member_id,
            fields,
            immutable=("id", "tenant_id", "user_id", "is_owner"),
        )
        return _row_to(TenantMember, row)

    # secondary roles
    def upsert_secondary_role(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        expires_at: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
    ) -> SecondaryRoleAssignment:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO secondary_role_assignment (id, tenant_id, user_id, role_id, status, expires_at, assigned_by, assigned_at)
                VALUES (%s, %s, %s, %s, 'active', %s, %s, now())
                ON CONFLICT (tenant_id, user_id, role_id) DO UPDATE SET
                    status = 'active',
                    expires_at = EXCLUDED.expires_at,
                    assigned_by = EXCLUDED.assigned_by,
                    assigned_at = now(),
                    revoked_at = NULL,
                    revoked_by = NULL
                RETURNING *
                """,
                (new_id(), tenant_id, user_id, role_id, expires_at, assigned_by),
            ).fetchone()
        return _row_to(SecondaryRoleAssignment, row)

    def list_secondary_roles(
        self, tenant_id: str, user_id: Optional[str] = None
    ) -> List[SecondaryRoleAssignment]:
        query = "SELECT * FROM secondary_role_assignment WHERE tenant_id = %s"
        params: list = [tenant_id]
        if user_id:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to(SecondaryRoleAssignment, row) for row in rows]

    def revoke_secondary_role(
        self, tenant_id: str, user_id: str, role_id: str, *, revoked_by: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE secondary_role_assignment
                SET status = 'revoked', revoked_at = now(), revoked_by = %s
                WHERE tenant_id = %s AND user_id = %s AND role_id = %s AND status = 'active'
                """,
                (revoked_by, tenant_id, user_id, role_id),
            )
            return cur.rowcount > 0

    def expire_secondary_roles(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE secondary_role_assignment SET status = 'expired'
                WHERE status = 'active' AND expires_at IS NOT NULL AND expires_at <= %s
                """,
                (now,),
            )
            return cur.rowcount

    # invites
    def create_invite(self, invite: TenantInvite) -> TenantInvite:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant_invite (id, tenant_id, email, role_id, token_hash, status, expires_at, invited_by, message, resend_count, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        invite.id,
                        invite.tenant_id,
                        invite.email,
                        invite.role_id,
                        invite.token_hash,
                        invite.status,
                        invite.expires_at,
                        invite.invited_by,
                        invite.message,
                        invite.resend_count,
                        invite.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("pending invite already exists", {"field": "email"})
        return invite

    def get_invite(self, invite_id: str) -> Optional[TenantInvite]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_invite WHERE id = %s", (invite_id,)
            ).fetchone()
        return _row_to(TenantInvite, row)

    def get_invite_by_token_hash(self, token_hash: str) -> Optional[TenantInvite]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_invite WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to(TenantInvite, row)

    def get_pending_invite(self, tenant_id: str, email: str) -> Optional[TenantInvite]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM tenant_invite
                WHERE tenant_id = %s AND email = %s AND status = 'pending'
                """,
                (tenant_id, email),
            ).fetchone()
        return _row_to(TenantInvite, row)

    def list_invites(
        self, tenant_id: str, status: Optional[str] = None
    ) -> List[TenantInvite]:
        query = "SELECT * FROM tenant_invite WHERE tenant_id = %s"
        params: list = [tenant_id]
        if status:
            query += " AND status = %s"
            params.append(status)
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to(TenantInvite, row) for row in rows]

    def update_invite(self, invite_id: str, **fields: Any) -> Optional[TenantInvite]:
        try:
            row = self._update_columns(
                "tenant_invite", TenantInvite, "id", invite_id, fields, immutable=("id",)
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("invite token collision", {"invite_id": invite_id})
        return _row_to(TenantInvite, row)

    def mark_invite_accepted(
        self,
        invite_id: str,
        token_hash: str,
        *,
        user_id: str,
        member_id: str,
        accepted_at: datetime,
    ) -> bool:
        """Conditional transition; only a pending invite with the same hash wins."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tenant_invite
                SET status = 'accepted', accepted_at = %s, accepted_by_user_id = %s, member_id = %s
                WHERE id = %s AND status = 'pending' AND token_hash = %s
                """,
                (accepted_at, user_id, member_id, invite_id, token_hash),
            )
            return cur.rowcount == 1

    def expire_invites(self, now: datetime, tenant_id: Optional[str] = None) -> int:
        query = "UPDATE tenant_invite SET status = 'expired' WHERE status = 'pending' AND expires_at <= %s"
        params: list = [now]
        if tenant_id:
            query += " AND tenant_id = %s"
            params.append(tenant_id)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount

    # magic links
    def record_magic_link(self, issue: MagicLinkIssue) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO magic_link (token_hash, email, created_at, expires_at, ip_address)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    issue.token_hash,
                    issue.email,
                    issue.created_at,
                    issue.expires_at,
                    issue.ip_address,
                ),
            )

    def count_magic_links_since(self, email: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM magic_link WHERE email = %s AND created_at >= %s",
                (email, since),
            ).fetchone()
        return int(row["n"]) if row else 0

    def mark_magic_link_used(self, token_hash: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE magic_link SET used_at = %s WHERE token_hash = %s",
                (used_at, token_hash),
            )

    def delete_magic_links_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM magic_link WHERE expires_at < %s", (cutoff,))
            return cur.rowcount

    # trusted devices
    def upsert_trusted_device(
        self,
        user_id: str,
        device_hash: str,
        trusted_until: datetime,
        *,
        device_name: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TrustedDevice:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO trusted_device (id, user_id, device_hash, trusted_until, device_name, browser, os, ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, now())
                ON CONFLICT (user_id, device_hash) DO UPDATE SET
                    trusted_until = EXCLUDED.trusted_until,
                    ip_address = EXCLUDED.ip_address,
                    device_name = COALESCE(EXCLUDED.device_name, trusted_device.device_name),
                    last_used_at = now()
                RETURNING *
                """,
                (
                    new_id(),
                    user_id,
                    device_hash,
                    trusted_until,
                    device_name,
                    browser,
                    os,
                    ip_address,
                ),
            ).fetchone()
        return _row_to(TrustedDevice, row)

    def get_trusted_device(self, user_id: str, device_hash: str) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s AND device_hash = %s",
                (user_id, device_hash),
            ).fetchone()
        return _row_to(TrustedDevice, row)

    def list_trusted_devices(self, user_id: str, now: datetime) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM trusted_device
                WHERE user_id = %s AND trusted_until > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [_row_to(TrustedDevice, row) for row in rows]

    def delete_trusted_device(self, user_id: str, device_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM trusted_device WHERE id = %s AND user_id = %s",
                (device_id, user_id),
            )
            return cur.rowcount > 0

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM trusted_device WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_trusted_devices(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM trusted_device WHERE trusted_until <= %s", (now,)
            )
            return cur.rowcount

    # passkeys
    def create_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO passkey_credential (id, user_id, credential_id, public_key, algorithm, counter, transports, device_type, backed_up, name, aaguid, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        credential.id,
                        credential.user_id,
                        credential.credential_id,
                        credential.public_key,
                        credential.algorithm,
                        credential.counter,
                        json.dumps(credential.transports),
                        credential.device_type,
                        credential.backed_up,
                        credential.name,
                        credential.aaguid,
                        credential.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "credential already registered", {"field": "credential_id"}
            )
        return credential

    def get_passkey_by_credential_id(
        self, credential_id: str
    ) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM passkey_credential WHERE credential_id = %s",
                (credential_id,),
            ).fetchone()
        return _row_to(PasskeyCredential, row)

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM passkey_credential WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to(PasskeyCredential, row) for row in rows]

    def update_passkey_counter(
        self, credential_id: str, expected: int, new_counter: int, used_at: datetime
    ) -> bool:
        """Compare-and-set on the signature counter."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE passkey_credential SET counter = %s, last_used_at = %s
                WHERE credential_id = %s AND counter = %s
                """,
                (new_counter, used_at, credential_id, expected),
            )
            return cur.rowcount == 1

    def rename_passkey(
        self, user_id: str, passkey_id: str, name: str
    ) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE passkey_credential SET name = %s WHERE id = %s AND user_id = %s RETURNING *",
                (name, passkey_id, user_id),
            ).fetchone()
        return _row_to(PasskeyCredential, row)

    def delete_passkey(self, user_id: str, passkey_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM passkey_credential WHERE id = %s AND user_id = %s",
                (passkey_id, user_id),
            )
            return cur.rowcount > 0

    def count_passkeys(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM passkey_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, action, actor_id, tenant_id, resource_type, resource_id, details, ip_address, user_agent, status, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action,
                    event.actor_id,
                    event.tenant_id,
                    event.resource_type,
                    event.resource_id,
                    json.dumps(event.details) if event.details else None,
                    event.ip_address,
                    event.user_agent,
                    event.status,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        query = "SELECT * FROM audit_event"
        params: list = []
        if tenant_id:
            query += " WHERE tenant_id = %s"
            params.append(tenant_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to(AuditEvent, row) for row in rows]
