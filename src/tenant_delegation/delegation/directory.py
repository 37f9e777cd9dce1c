"""
Collaborator contracts - user directory and permission catalog

The engine validates participants and permissions through these protocols
and never writes to them. In-memory registries serve tests and embedding;
the SQLite variant backs the CLI and the façade.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

from tenant_delegation.delegation.models import Permission, User
from tenant_delegation.kernel.retry import retry_on_sqlite_lock


class UserDirectory(Protocol):
    """Looks up tenant members"""

    def find_user(self, user_id: str, tenant_id: str) -> User | None:
        """Return the user if it exists in the given tenant"""
        ...


class PermissionCatalog(Protocol):
    """Resolves permission ids to catalog entries"""

    def resolve_permissions(self, permission_ids: list[str]) -> list[Permission]:
        """Return the permissions that exist (possibly fewer than requested)"""
        ...


class InMemoryUserDirectory:
    """Dict-backed user directory keyed by (tenant_id, user_id)"""

    def __init__(self, users: list[User] | None = None) -> None:
        self.users: dict[tuple[str, str], User] = {}
        for user in users or []:
            self.add(user)

    def add(self, user: User) -> User:
        self.users[(user.tenant_id, user.user_id)] = user
        return user

    def find_user(self, user_id: str, tenant_id: str) -> User | None:
        return self.users.get((tenant_id, user_id))


class InMemoryPermissionCatalog:
    """Dict-backed permission catalog"""

    def __init__(self, permissions: list[Permission] | None = None) -> None:
        self.permissions: dict[str, Permission] = {}
        for permission in permissions or []:
            self.add(permission)

    def add(self, permission: Permission) -> Permission:
        self.permissions[permission.permission_id] = permission
        return permission

    def resolve_permissions(self, permission_ids: list[str]) -> list[Permission]:
        return [
            self.permissions[pid]
            for pid in dict.fromkeys(permission_ids)
            if pid in self.permissions
        ]


class SQLiteDirectory:
    """
    SQLite-backed user directory and permission catalog

    Schema:
    - users: (user_id, tenant_id) primary key, so the same id in two tenants
      refers to two different members
    - permissions: global catalog keyed by permission_id
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',

                    PRIMARY KEY (tenant_id, user_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS permissions (
                    permission_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    resource TEXT NOT NULL DEFAULT '',
                    action TEXT NOT NULL DEFAULT '',
                    scope TEXT NOT NULL DEFAULT ''
                )
            """)
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def add_user(self, user: User) -> User:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, tenant_id, email, first_name, last_name)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, user_id) DO UPDATE SET
                    email = excluded.email,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name
            """,
                (user.user_id, user.tenant_id, user.email, user.first_name, user.last_name),
            )
            conn.commit()
        return user

    def add_permission(self, permission: Permission) -> Permission:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO permissions (permission_id, name, resource, action, scope)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(permission_id) DO UPDATE SET
                    name = excluded.name,
                    resource = excluded.resource,
                    action = excluded.action,
                    scope = excluded.scope
            """,
                (
                    permission.permission_id,
                    permission.name,
                    permission.resource,
                    permission.action,
                    permission.scope,
                ),
            )
            conn.commit()
        return permission

    @retry_on_sqlite_lock()
    def find_user(self, user_id: str, tenant_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ? AND tenant_id = ?",
                (user_id, tenant_id),
            ).fetchone()
        if row is None:
            return None
        return User(
            user_id=row["user_id"],
            tenant_id=row["tenant_id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
        )

    @retry_on_sqlite_lock()
    def resolve_permissions(self, permission_ids: list[str]) -> list[Permission]:
        unique_ids = list(dict.fromkeys(permission_ids))
        if not unique_ids:
            return []
        placeholders = ", ".join("?" for _ in unique_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM permissions WHERE permission_id IN ({placeholders})",
                unique_ids,
            ).fetchall()
        by_id = {
            row["permission_id"]: Permission(
                permission_id=row["permission_id"],
                name=row["name"],
                resource=row["resource"],
                action=row["action"],
                scope=row["scope"],
            )
            for row in rows
        }
        return [by_id[pid] for pid in unique_ids if pid in by_id]

    def list_users(self, tenant_id: str) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE tenant_id = ? ORDER BY user_id", (tenant_id,)
            ).fetchall()
        return [
            User(
                user_id=row["user_id"],
                tenant_id=row["tenant_id"],
                email=row["email"],
                first_name=row["first_name"],
                last_name=row["last_name"],
            )
            for row in rows
        ]
