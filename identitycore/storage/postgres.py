from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from identitycore.logging import get_logger
from identitycore.storage.errors import ConstraintViolation
from identitycore.storage.models import (
    Account,
    AccountFilter,
    AccountPermission,
    AuditEvent,
    InvitationState,
    InvitationToken,
    PasswordResetToken,
    Permission,
    PermissionMode,
    Role,
    Token,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT,
        password_hash TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        first_name TEXT,
        last_name TEXT,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_email_key UNIQUE (email)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_username_key ON account (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS role (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT role_name_key UNIQUE (name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        resource TEXT NOT NULL,
        action TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT permission_name_key UNIQUE (name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_role (
        account_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        role_id BIGINT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (account_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id BIGINT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        permission_id BIGINT NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_permission (
        account_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        permission_id BIGINT NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        mode TEXT NOT NULL CHECK (mode IN ('grant', 'deny')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (account_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id BIGSERIAL PRIMARY KEY,
        token TEXT NOT NULL,
        account_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        family_id TEXT NOT NULL,
        generation INTEGER NOT NULL DEFAULT 0,
        mobile BOOLEAN NOT NULL DEFAULT FALSE,
        identifier TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT auth_token_token_key UNIQUE (token)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_family_idx ON auth_token (family_id)",
    """
    CREATE TABLE IF NOT EXISTS invitation_token (
        id BIGSERIAL PRIMARY KEY,
        token TEXT NOT NULL,
        email TEXT NOT NULL,
        role_id BIGINT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        created_by BIGINT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        state TEXT NOT NULL DEFAULT 'pending',
        first_name TEXT,
        last_name TEXT,
        position TEXT,
        used_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ,
        email_sent_at TIMESTAMPTZ,
        email_error TEXT,
        email_retry_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT invitation_token_token_key UNIQUE (token)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        email_sent_at TIMESTAMPTZ,
        email_error TEXT,
        email_retry_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT password_reset_token_token_key UNIQUE (token)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_event (
        id BIGSERIAL PRIMARY KEY,
        event_type TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        account_id BIGINT,
        ip_address TEXT,
        user_agent TEXT,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_UNIQUE_FIELDS = {
    "account_email_key": "email",
    "account_username_key": "username",
    "role_name_key": "name",
    "permission_name_key": "name",
    "auth_token_token_key": "token",
    "invitation_token_token_key": "token",
    "password_reset_token_token_key": "token",
}

_STATE_TIMESTAMPS = {
    InvitationState.USED: "used_at",
    InvitationState.REVOKED: "revoked_at",
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _UNIQUE_FIELDS.get(constraint, constraint)
    return ConstraintViolation(f"{field} already exists", {"field": field})


def _foreign_key_violation(exc: errors.ForeignKeyViolation, **ids: Any) -> ConstraintViolation:
    """Name the missing parent from the violated ``<table>_<column>_fkey``."""
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    for key, value in ids.items():
        if key in constraint:
            return ConstraintViolation(f"{key.removesuffix('_id')} does not exist", {key: value})
    key, value = next(iter(ids.items()))
    return ConstraintViolation(f"{key.removesuffix('_id')} does not exist", {key: value})


def _account_from_row(row: Dict[str, Any], roles: Optional[List[Role]] = None) -> Account:
    return Account(
        id=row["id"],
        email=row["email"],
        username=row.get("username"),
        password_hash=row.get("password_hash"),
        active=row.get("active", True),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        last_login=row.get("last_login"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        roles=roles or [],
    )


def _permission_from_row(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=row["id"],
        name=row["name"],
        resource=row["resource"],
        action=row["action"],
        description=row.get("description"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _role_from_row(row: Dict[str, Any], permissions: Optional[List[Permission]] = None) -> Role:
    return Role(
        id=row["id"],
        name=row["name"],
        description=row.get("description"),
        permissions=permissions or [],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _token_from_row(row: Dict[str, Any]) -> Token:
    return Token(
        id=row["id"],
        token=row["token"],
        account_id=row["account_id"],
        expires_at=row["expires_at"],
        family_id=row["family_id"],
        generation=row.get("generation", 0),
        mobile=row.get("mobile", False),
        identifier=row.get("identifier"),
        created_at=row["created_at"],
    )


def _invitation_from_row(row: Dict[str, Any]) -> InvitationToken:
    return InvitationToken(
        id=row["id"],
        token=row["token"],
        email=row["email"],
        role_id=row["role_id"],
        created_by=row["created_by"],
        expires_at=row["expires_at"],
        state=InvitationState(row["state"]),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        position=row.get("position"),
        used_at=row.get("used_at"),
        revoked_at=row.get("revoked_at"),
        email_sent_at=row.get("email_sent_at"),
        email_error=row.get("email_error"),
        email_retry_count=row.get("email_retry_count", 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _reset_from_row(row: Dict[str, Any]) -> PasswordResetToken:
    return PasswordResetToken(
        id=row["id"],
        account_id=row["account_id"],
        token=row["token"],
        expires_at=row["expires_at"],
        used=row.get("used", False),
        used_at=row.get("used_at"),
        email_sent_at=row.get("email_sent_at"),
        email_error=row.get("email_error"),
        email_retry_count=row.get("email_retry_count", 0),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store implementing every identity store capability.

    Atomic units run inside ``conn.transaction()`` and claim their row with a
    conditional ``UPDATE``/``DELETE ... RETURNING`` so a concurrent caller
    sees either the state before or after, never both succeed.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # roles and permissions (loaders shared by account reads)
    def _permissions_for_roles(self, conn, role_ids: Iterable[int]) -> Dict[int, List[Permission]]:
        role_ids = list(role_ids)
        grouped: Dict[int, List[Permission]] = {rid: [] for rid in role_ids}
        if not role_ids:
            return grouped
        rows = conn.execute(
            """
            SELECT rp.role_id, p.*
            FROM role_permission rp JOIN permission p ON p.id = rp.permission_id
            WHERE rp.role_id = ANY(%s)
            ORDER BY rp.created_at, p.id
            """,
            (role_ids,),
        ).fetchall()
        for row in rows:
            grouped[row["role_id"]].append(_permission_from_row(row))
        return grouped

    def _hydrate_roles(self, conn, rows: List[Dict[str, Any]]) -> List[Role]:
        permissions = self._permissions_for_roles(conn, [row["id"] for row in rows])
        return [_role_from_row(row, permissions.get(row["id"], [])) for row in rows]

    def _roles_for_account(self, conn, account_id: int) -> List[Role]:
        rows = conn.execute(
            """
            SELECT r.*
            FROM account_role ar JOIN role r ON r.id = ar.role_id
            WHERE ar.account_id = %s
            ORDER BY ar.created_at, r.id
            """,
            (account_id,),
        ).fetchall()
        return self._hydrate_roles(conn, rows)

    def _fetch_account(self, where: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM account WHERE {where}", (value,)).fetchone()
            if not row:
                return None
            return _account_from_row(row, self._roles_for_account(conn, row["id"]))

    # accounts
    def create_account(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        active: bool = True,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (email, username, password_hash, active, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email, username, password_hash, active, first_name, last_name),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _account_from_row(row)

    def get_account(self, account_id: int) -> Optional[Account]:
        return self._fetch_account("id = %s", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("email = %s", email)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("lower(username) = lower(%s)", username)

    def update_account(self, account: Account) -> Optional[Account]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE account
                    SET email = %s, username = %s, active = %s, first_name = %s,
                        last_name = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        account.email,
                        account.username,
                        account.active,
                        account.first_name,
                        account.last_name,
                        account.id,
                    ),
                ).fetchone()
                if not row:
                    return None
                roles = self._roles_for_account(conn, row["id"])
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _account_from_row(row, roles)

    def update_password(self, account_id: int, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, account_id),
            )
            return result.rowcount > 0

    def set_account_active(self, account_id: int, active: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET active = %s, updated_at = now() WHERE id = %s",
                (active, account_id),
            )
            return result.rowcount > 0

    def record_login(self, account_id: int, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE account SET last_login = %s WHERE id = %s", (when, account_id))

    def list_accounts(self, filters: AccountFilter) -> List[Account]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters.email is not None:
            clauses.append("a.email = %s")
            params.append(filters.email)
        if filters.username is not None:
            clauses.append("lower(a.username) = lower(%s)")
            params.append(filters.username)
        if filters.active is not None:
            clauses.append("a.active = %s")
            params.append(filters.active)
        if filters.role_name is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM account_role ar JOIN role r ON r.id = ar.role_id"
                " WHERE ar.account_id = a.id AND r.name = %s)"
            )
            params.append(filters.role_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([filters.limit, filters.offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT a.* FROM account a {where} ORDER BY a.id LIMIT %s OFFSET %s",
                params,
            ).fetchall()
            return [_account_from_row(row, self._roles_for_account(conn, row["id"])) for row in rows]

    # roles
    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO role (name, description) VALUES (%s, %s) RETURNING *",
                    (name, description),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _role_from_row(row)

    def _fetch_role(self, where: str, value: Any) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM role WHERE {where}", (value,)).fetchone()
            if not row:
                return None
            return self._hydrate_roles(conn, [row])[0]

    def get_role(self, role_id: int) -> Optional[Role]:
        return self._fetch_role("id = %s", role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        return self._fetch_role("name = %s", name)

    def update_role(self, role: Role) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE role SET name = %s, description = %s, updated_at = now()
                    WHERE id = %s RETURNING *
                    """,
                    (role.name, role.description, role.id),
                ).fetchone()
                if not row:
                    return None
                return self._hydrate_roles(conn, [row])[0]
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)

    def delete_role(self, role_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
            return result.rowcount > 0

    def list_roles(self, name: Optional[str] = None) -> List[Role]:
        with self._connect() as conn:
            if name is not None:
                rows = conn.execute(
                    "SELECT * FROM role WHERE name = %s ORDER BY id", (name,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM role ORDER BY id").fetchall()
            return self._hydrate_roles(conn, rows)

    # permissions
    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission (name, resource, action, description)
                    VALUES (%s, %s, %s, %s) RETURNING *
                    """,
                    (name, resource, action, description),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _permission_from_row(row)

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return _permission_from_row(row) if row else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM permission WHERE name = %s", (name,)).fetchone()
        return _permission_from_row(row) if row else None

    def update_permission(self, permission: Permission) -> Optional[Permission]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE permission
                    SET name = %s, resource = %s, action = %s, description = %s, updated_at = now()
                    WHERE id = %s RETURNING *
                    """,
                    (
                        permission.name,
                        permission.resource,
                        permission.action,
                        permission.description,
                        permission.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _permission_from_row(row) if row else None

    def delete_permission(self, permission_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM permission WHERE id = %s", (permission_id,))
            return result.rowcount > 0

    def list_permissions(
        self, resource: Optional[str] = None, action: Optional[str] = None
    ) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM permission
                WHERE (%s::text IS NULL OR resource = %s) AND (%s::text IS NULL OR action = %s)
                ORDER BY id
                """,
                (resource, resource, action, action),
            ).fetchall()
        return [_permission_from_row(row) for row in rows]

    def assign_permission_to_role(self, role_id: int, permission_id: int) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)
                    ON CONFLICT (role_id, permission_id) DO NOTHING
                    """,
                    (role_id, permission_id),
                )
        except errors.ForeignKeyViolation as exc:
            raise _foreign_key_violation(exc, role_id=role_id, permission_id=permission_id)

    def remove_permission_from_role(self, role_id: int, permission_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return result.rowcount > 0

    def get_role_permissions(self, role_id: int) -> List[Permission]:
        with self._connect() as conn:
            return self._permissions_for_roles(conn, [role_id])[role_id]

    # account relations
    def assign_role(self, account_id: int, role_id: int) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_role (account_id, role_id) VALUES (%s, %s)
                    ON CONFLICT (account_id, role_id) DO NOTHING
                    """,
                    (account_id, role_id),
                )
        except errors.ForeignKeyViolation as exc:
            raise _foreign_key_violation(exc, account_id=account_id, role_id=role_id)

    def remove_role(self, account_id: int, role_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM account_role WHERE account_id = %s AND role_id = %s",
                (account_id, role_id),
            )
            return result.rowcount > 0

    def list_account_roles(self, account_id: int) -> List[Role]:
        with self._connect() as conn:
            return self._roles_for_account(conn, account_id)

    def set_account_permission(
        self, account_id: int, permission_id: int, mode: PermissionMode
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_permission (account_id, permission_id, mode)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (account_id, permission_id) DO UPDATE SET mode = EXCLUDED.mode
                    """,
                    (account_id, permission_id, PermissionMode(mode).value),
                )
        except errors.ForeignKeyViolation as exc:
            raise _foreign_key_violation(
                exc, account_id=account_id, permission_id=permission_id
            )

    def remove_account_permission(self, account_id: int, permission_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM account_permission WHERE account_id = %s AND permission_id = %s",
                (account_id, permission_id),
            )
            return result.rowcount > 0

    def list_account_permissions(self, account_id: int) -> List[AccountPermission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ap.account_id, ap.mode, p.*
                FROM account_permission ap JOIN permission p ON p.id = ap.permission_id
                WHERE ap.account_id = %s
                ORDER BY ap.created_at, p.id
                """,
                (account_id,),
            ).fetchall()
        return [
            AccountPermission(
                account_id=row["account_id"],
                permission=_permission_from_row(row),
                mode=PermissionMode(row["mode"]),
            )
            for row in rows
        ]

    # refresh tokens
    def create_token(
        self,
        account_id: int,
        token: str,
        expires_at: datetime,
        *,
        family_id: str,
        generation: int = 0,
        mobile: bool = False,
        identifier: Optional[str] = None,
    ) -> Token:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_token (token, account_id, expires_at, family_id, generation, mobile, identifier)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token, account_id, expires_at, family_id, generation, mobile, identifier),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        except errors.ForeignKeyViolation as exc:
            raise _foreign_key_violation(exc, account_id=account_id)
        return _token_from_row(row)

    def get_token(self, token: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_token WHERE token = %s", (token,)).fetchone()
        return _token_from_row(row) if row else None

    def delete_token(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_token WHERE token = %s", (token,))
            return result.rowcount > 0

    def delete_account_tokens(
        self, account_id: int, except_token: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_token
                WHERE account_id = %s AND (%s::text IS NULL OR token <> %s)
                """,
                (account_id, except_token, except_token),
            )
            return result.rowcount

    def delete_token_family(self, family_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_token WHERE family_id = %s", (family_id,))
            return result.rowcount

    def latest_family_generation(self, family_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(generation) AS generation FROM auth_token WHERE family_id = %s",
                (family_id,),
            ).fetchone()
        return row["generation"] if row else None

    def list_account_tokens(self, account_id: int) -> List[Token]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_token WHERE account_id = %s ORDER BY created_at DESC, id DESC",
                (account_id,),
            ).fetchall()
        return [_token_from_row(row) for row in rows]

    def prune_account_tokens(self, account_id: int, keep: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_token
                WHERE account_id = %s AND id NOT IN (
                    SELECT id FROM auth_token WHERE account_id = %s
                    ORDER BY created_at DESC, id DESC LIMIT %s
                )
                """,
                (account_id, account_id, max(0, keep)),
            )
            return result.rowcount

    def rotate_token(
        self,
        old_token: str,
        *,
        token: str,
        expires_at: datetime,
        family_id: str,
        generation: int,
        mobile: bool = False,
        identifier: Optional[str] = None,
    ) -> Optional[Token]:
        try:
            with self._connect() as conn, conn.transaction():
                # The row lock taken by DELETE makes a racing rotation wait and then miss
                previous = conn.execute(
                    "DELETE FROM auth_token WHERE token = %s RETURNING account_id",
                    (old_token,),
                ).fetchone()
                if not previous:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO auth_token (token, account_id, expires_at, family_id, generation, mobile, identifier)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        token,
                        previous["account_id"],
                        expires_at,
                        family_id,
                        generation,
                        mobile,
                        identifier,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _token_from_row(row)

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_token WHERE expires_at <= %s", (now,))
            return result.rowcount

    # invitations
    def create_invitation(
        self,
        email: str,
        token: str,
        role_id: int,
        created_by: int,
        expires_at: datetime,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        position: Optional[str] = None,
    ) -> InvitationToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO invitation_token (token, email, role_id, created_by, expires_at, first_name, last_name, position)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token, email, role_id, created_by, expires_at, first_name, last_name, position),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        except errors.ForeignKeyViolation as exc:
            raise _foreign_key_violation(exc, role_id=role_id)
        return _invitation_from_row(row)

    def get_invitation(self, invitation_id: int) -> Optional[InvitationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invitation_token WHERE id = %s", (invitation_id,)
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def get_invitation_by_token(self, token: str) -> Optional[InvitationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invitation_token WHERE token = %s", (token,)
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def update_invitation_state(
        self,
        invitation_id: int,
        state: InvitationState,
        *,
        when: datetime,
        expected: InvitationState = InvitationState.PENDING,
    ) -> bool:
        stamp = _STATE_TIMESTAMPS.get(state)
        assignments = "state = %s, updated_at = %s" + (f", {stamp} = %s" if stamp else "")
        params: List[Any] = [state.value, when]
        if stamp:
            params.append(when)
        params.extend([invitation_id, expected.value])
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE invitation_token SET {assignments} WHERE id = %s AND state = %s",
                params,
            )
            return result.rowcount > 0

    def revoke_pending_invitations(self, email: str, when: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE invitation_token
                SET state = 'revoked', revoked_at = %s, updated_at = %s
                WHERE email = %s AND state = 'pending'
                """,
                (when, when, email),
            )
            return result.rowcount

    def record_invitation_delivery(
        self,
        invitation_id: int,
        *,
        sent_at: Optional[datetime],
        error: Optional[str],
        retry_count: int,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE invitation_token
                SET email_sent_at = %s, email_error = %s, email_retry_count = %s, updated_at = now()
                WHERE id = %s
                """,
                (sent_at, error, retry_count, invitation_id),
            )

    def list_pending_invitations(self, now: datetime) -> List[InvitationToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM invitation_token
                WHERE state = 'pending' AND expires_at > %s
                ORDER BY id
                """,
                (now,),
            ).fetchall()
        return [_invitation_from_row(row) for row in rows]

    def delete_expired_invitations(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM invitation_token WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    def redeem_invitation(
        self,
        invitation_id: int,
        *,
        email: str,
        password_hash: str,
        role_id: int,
        when: datetime,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[Account]:
        try:
            with self._connect() as conn, conn.transaction():
                claimed = conn.execute(
                    """
                    UPDATE invitation_token
                    SET state = 'used', used_at = %s, updated_at = %s
                    WHERE id = %s AND state = 'pending' AND expires_at > %s
                    RETURNING id
                    """,
                    (when, when, invitation_id, when),
                ).fetchone()
                if not claimed:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO account (email, username, password_hash, active, first_name, last_name)
                    VALUES (%s, %s, %s, TRUE, %s, %s)
                    RETURNING *
                    """,
                    (email, username, password_hash, first_name, last_name),
                ).fetchone()
                conn.execute(
                    "INSERT INTO account_role (account_id, role_id) VALUES (%s, %s)",
                    (row["id"], role_id),
                )
                roles = self._roles_for_account(conn, row["id"])
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        except errors.ForeignKeyViolation as exc:
            raise _foreign_key_violation(exc, role_id=role_id)
        return _account_from_row(row, roles)

    # password reset tokens
    def create_reset_token(
        self, account_id: int, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO password_reset_token (account_id, token, expires_at)
                    VALUES (%s, %s, %s) RETURNING *
                    """,
                    (account_id, token, expires_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        except errors.ForeignKeyViolation as exc:
            raise _foreign_key_violation(exc, account_id=account_id)
        return _reset_from_row(row)

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (token,)
            ).fetchone()
        return _reset_from_row(row) if row else None

    def mark_reset_token_used(self, token_id: int, when: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE, used_at = %s
                WHERE id = %s AND used = FALSE
                """,
                (when, token_id),
            )
            return result.rowcount > 0

    def invalidate_reset_tokens(self, account_id: int, when: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE, used_at = %s
                WHERE account_id = %s AND used = FALSE
                """,
                (when, account_id),
            )
            return result.rowcount

    def record_reset_delivery(
        self,
        token_id: int,
        *,
        sent_at: Optional[datetime],
        error: Optional[str],
        retry_count: int,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE password_reset_token
                SET email_sent_at = %s, email_error = %s, email_retry_count = %s
                WHERE id = %s
                """,
                (sent_at, error, retry_count, token_id),
            )

    def redeem_reset_token(
        self, token_id: int, password_hash: str, when: datetime
    ) -> Optional[int]:
        with self._connect() as conn, conn.transaction():
            claimed = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE, used_at = %s
                WHERE id = %s AND used = FALSE AND expires_at > %s
                RETURNING account_id
                """,
                (when, token_id, when),
            ).fetchone()
            if not claimed:
                return None
            account_id = claimed["account_id"]
            conn.execute(
                "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, account_id),
            )
            conn.execute("DELETE FROM auth_token WHERE account_id = %s", (account_id,))
        return account_id

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_event (event_type, success, account_id, ip_address, user_agent, error_message, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.event_type,
                    event.success,
                    event.account_id,
                    event.ip_address,
                    event.user_agent,
                    event.error_message,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self, account_id: Optional[int] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT * FROM auth_event
                    WHERE (%s::bigint IS NULL OR account_id = %s)
                    ORDER BY id DESC LIMIT %s
                ) recent ORDER BY id
                """,
                (account_id, account_id, limit),
            ).fetchall()
        return [
            AuditEvent(
                event_type=row["event_type"],
                success=row["success"],
                account_id=row.get("account_id"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                error_message=row.get("error_message"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
