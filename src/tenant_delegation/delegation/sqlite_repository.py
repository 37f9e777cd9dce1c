"""
SQLite Delegation Repository - tenant-scoped rows with an append-only audit trail

Schema:
- delegations: one row per grant, version column for optimistic locking
- delegation_audit_logs: append-only; triggers abort any UPDATE or DELETE,
  and a foreign key ties every entry to an existing delegation

A unit of work is one SQLite transaction opened with BEGIN IMMEDIATE, so the
write lock is taken up front and a transition plus its audit row land together.

Fun fact: SQLite triggers that RAISE(ABORT) are how a lot of embedded ledgers
get "write once" semantics without any server in sight.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from tenant_delegation.delegation.commands import DelegationQuery
from tenant_delegation.delegation.models import (
    TERMINAL_STATUSES,
    AuditAction,
    Delegation,
    DelegationAuditLog,
    DelegationStatus,
    DelegationType,
)
from tenant_delegation.kernel.errors import (
    ConcurrentModification,
    DelegationNotFound,
    RepositoryError,
    TenantIsolationViolation,
)
from tenant_delegation.kernel.retry import retry_on_sqlite_lock
from tenant_delegation.kernel.time import ensure_utc

DELEGATION_COLUMNS = (
    "delegation_id",
    "tenant_id",
    "delegator_id",
    "delegate_id",
    "approver_id",
    "delegation_type",
    "permission_ids_json",
    "title",
    "description",
    "status",
    "requested_at",
    "approved_at",
    "rejected_at",
    "activated_at",
    "revoked_at",
    "expires_at",
    "requires_approval",
    "is_emergency",
    "is_recurring",
    "recurrence_pattern",
    "approval_notes",
    "rejection_reason",
    "revocation_reason",
    "metadata_json",
    "created_at",
    "updated_at",
    "version",
)

AUDIT_COLUMNS = (
    "audit_log_id",
    "delegation_id",
    "tenant_id",
    "user_id",
    "action",
    "details",
    "metadata_json",
    "ip_address",
    "user_agent",
    "created_at",
)

NEWEST_FIRST = "ORDER BY created_at DESC, rowid DESC"


def to_db_time(dt: datetime | None) -> str | None:
    """Fixed-width UTC text so string comparison matches time order"""
    if dt is None:
        return None
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return ensure_utc(datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ"))


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _search_fold(value: str | None) -> str | None:
    """Python lowercasing for SQL; SQLite's own LOWER() only folds ASCII"""
    return value.lower() if value is not None else None


def _delegation_params(delegation: Delegation) -> tuple[Any, ...]:
    return (
        delegation.delegation_id,
        delegation.tenant_id,
        delegation.delegator_id,
        delegation.delegate_id,
        delegation.approver_id,
        delegation.delegation_type.value,
        json.dumps(delegation.permission_ids),
        delegation.title,
        delegation.description,
        delegation.status.value,
        to_db_time(delegation.requested_at),
        to_db_time(delegation.approved_at),
        to_db_time(delegation.rejected_at),
        to_db_time(delegation.activated_at),
        to_db_time(delegation.revoked_at),
        to_db_time(delegation.expires_at),
        int(delegation.requires_approval),
        int(delegation.is_emergency),
        int(delegation.is_recurring),
        delegation.recurrence_pattern,
        delegation.approval_notes,
        delegation.rejection_reason,
        delegation.revocation_reason,
        json.dumps(delegation.metadata),
        to_db_time(delegation.created_at),
        to_db_time(delegation.updated_at),
        delegation.version,
    )


def _row_to_delegation(row: sqlite3.Row) -> Delegation:
    return Delegation(
        delegation_id=row["delegation_id"],
        tenant_id=row["tenant_id"],
        delegator_id=row["delegator_id"],
        delegate_id=row["delegate_id"],
        approver_id=row["approver_id"],
        delegation_type=DelegationType(row["delegation_type"]),
        permission_ids=json.loads(row["permission_ids_json"]),
        title=row["title"],
        description=row["description"],
        status=DelegationStatus(row["status"]),
        requested_at=from_db_time(row["requested_at"]),
        approved_at=from_db_time(row["approved_at"]),
        rejected_at=from_db_time(row["rejected_at"]),
        activated_at=from_db_time(row["activated_at"]),
        revoked_at=from_db_time(row["revoked_at"]),
        expires_at=from_db_time(row["expires_at"]),
        requires_approval=bool(row["requires_approval"]),
        is_emergency=bool(row["is_emergency"]),
        is_recurring=bool(row["is_recurring"]),
        recurrence_pattern=row["recurrence_pattern"],
        approval_notes=row["approval_notes"],
        rejection_reason=row["rejection_reason"],
        revocation_reason=row["revocation_reason"],
        metadata=json.loads(row["metadata_json"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
        version=row["version"],
    )


def _row_to_audit_log(row: sqlite3.Row) -> DelegationAuditLog:
    metadata_json = row["metadata_json"]
    return DelegationAuditLog(
        audit_log_id=row["audit_log_id"],
        delegation_id=row["delegation_id"],
        tenant_id=row["tenant_id"],
        user_id=row["user_id"],
        action=AuditAction(row["action"]),
        details=row["details"],
        metadata=json.loads(metadata_json) if metadata_json is not None else None,
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        created_at=from_db_time(row["created_at"]),
    )


class SQLiteUnitOfWork:
    """Writes issued on an open BEGIN IMMEDIATE transaction"""

    def __init__(self, conn: sqlite3.Connection, tenant_id: str) -> None:
        self.conn = conn
        self.tenant_id = tenant_id

    def _check_tenant(self, tenant_id: str) -> None:
        if tenant_id != self.tenant_id:
            raise TenantIsolationViolation(self.tenant_id, tenant_id)

    def add(self, delegation: Delegation) -> Delegation:
        self._check_tenant(delegation.tenant_id)
        placeholders = ", ".join("?" for _ in DELEGATION_COLUMNS)
        try:
            self.conn.execute(
                f"INSERT INTO delegations ({', '.join(DELEGATION_COLUMNS)}) "
                f"VALUES ({placeholders})",
                _delegation_params(delegation),
            )
        except sqlite3.IntegrityError as e:
            raise RepositoryError(
                f"Failed to insert delegation {delegation.delegation_id}: {e}"
            ) from e
        return delegation

    def update(self, delegation: Delegation, expected_version: int) -> Delegation:
        self._check_tenant(delegation.tenant_id)
        updated = delegation.model_copy(update={"version": expected_version + 1})

        # Identity columns are never rewritten
        mutable = [c for c in DELEGATION_COLUMNS if c not in ("delegation_id", "tenant_id")]
        params = dict(zip(DELEGATION_COLUMNS, _delegation_params(updated)))
        assignments = ", ".join(f"{c} = ?" for c in mutable)

        cursor = self.conn.execute(
            f"UPDATE delegations SET {assignments} "
            "WHERE delegation_id = ? AND tenant_id = ? AND version = ?",
            [params[c] for c in mutable]
            + [delegation.delegation_id, self.tenant_id, expected_version],
        )
        if cursor.rowcount == 0:
            row = self.conn.execute(
                "SELECT version FROM delegations WHERE delegation_id = ? AND tenant_id = ?",
                (delegation.delegation_id, self.tenant_id),
            ).fetchone()
            if row is None:
                raise DelegationNotFound(delegation.delegation_id)
            raise ConcurrentModification(
                delegation.delegation_id, expected_version, row["version"]
            )
        return updated

    def append_audit_log(self, entry: DelegationAuditLog) -> DelegationAuditLog:
        self._check_tenant(entry.tenant_id)
        placeholders = ", ".join("?" for _ in AUDIT_COLUMNS)
        cursor = self.conn.execute(
            f"INSERT INTO delegation_audit_logs ({', '.join(AUDIT_COLUMNS)}) "
            f"SELECT {placeholders} WHERE EXISTS ("
            "SELECT 1 FROM delegations WHERE delegation_id = ? AND tenant_id = ?)",
            (
                entry.audit_log_id,
                entry.delegation_id,
                entry.tenant_id,
                entry.user_id,
                entry.action.value,
                entry.details,
                json.dumps(entry.metadata) if entry.metadata is not None else None,
                entry.ip_address,
                entry.user_agent,
                to_db_time(entry.created_at),
                entry.delegation_id,
                self.tenant_id,
            ),
        )
        if cursor.rowcount == 0:
            raise RepositoryError(
                f"Audit entry references unknown delegation {entry.delegation_id}"
            )
        return entry


class SQLiteDelegationRepository:
    """
    SQLite-based delegation repository

    Uses WAL mode so readers (permission checks, listings) are not blocked
    by the writer holding a unit of work open.
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize repository with SQLite database

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        """Create tables, indices and audit guards if they don't exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS delegations (
                    delegation_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    delegator_id TEXT NOT NULL,
                    delegate_id TEXT NOT NULL,
                    approver_id TEXT,
                    delegation_type TEXT NOT NULL,
                    permission_ids_json TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL,
                    requested_at TEXT NOT NULL,
                    approved_at TEXT,
                    rejected_at TEXT,
                    activated_at TEXT,
                    revoked_at TEXT,
                    expires_at TEXT NOT NULL,
                    requires_approval INTEGER NOT NULL DEFAULT 0,
                    is_emergency INTEGER NOT NULL DEFAULT 0,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    recurrence_pattern TEXT,
                    approval_notes TEXT,
                    rejection_reason TEXT,
                    revocation_reason TEXT,
                    metadata_json TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS delegation_audit_logs (
                    audit_log_id TEXT PRIMARY KEY,
                    delegation_id TEXT NOT NULL REFERENCES delegations(delegation_id),
                    tenant_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    details TEXT,
                    metadata_json TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_delegations_tenant "
                "ON delegations(tenant_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_delegations_delegate "
                "ON delegations(tenant_id, delegate_id, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_delegations_expiry "
                "ON delegations(status, expires_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_delegation "
                "ON delegation_audit_logs(delegation_id, created_at)"
            )

            conn.execute("""
                CREATE TRIGGER IF NOT EXISTS audit_logs_no_update
                BEFORE UPDATE ON delegation_audit_logs
                BEGIN
                    SELECT RAISE(ABORT, 'delegation_audit_logs is append-only');
                END
            """)
            conn.execute("""
                CREATE TRIGGER IF NOT EXISTS audit_logs_no_delete
                BEFORE DELETE ON delegation_audit_logs
                BEGIN
                    SELECT RAISE(ABORT, 'delegation_audit_logs is append-only');
                END
            """)

            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database connections

        Autocommit mode: transactions are opened explicitly by unit_of_work.
        """
        conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.create_function("search_fold", 1, _search_fold, deterministic=True)
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def unit_of_work(self, tenant_id: str) -> Iterator[SQLiteUnitOfWork]:
        """
        Open a write transaction for one tenant

        Commits when the block exits normally, rolls back on any exception.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield SQLiteUnitOfWork(conn, tenant_id)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise RepositoryError(f"Failed to commit unit of work: {e}") from e

    def _fetch_delegations(self, sql: str, params: list[Any] | tuple[Any, ...]) -> list[Delegation]:
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_delegation(row) for row in rows]

    @retry_on_sqlite_lock()
    def get(self, delegation_id: str, tenant_id: str) -> Delegation | None:
        rows = self._fetch_delegations(
            "SELECT * FROM delegations WHERE delegation_id = ? AND tenant_id = ?",
            (delegation_id, tenant_id),
        )
        return rows[0] if rows else None

    @retry_on_sqlite_lock()
    def query(
        self, tenant_id: str, query: DelegationQuery, now: datetime, limit: int
    ) -> tuple[list[Delegation], int]:
        clauses = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]

        equality_filters = {
            "status": query.status.value if query.status else None,
            "delegation_type": query.delegation_type.value if query.delegation_type else None,
            "delegator_id": query.delegator_id,
            "delegate_id": query.delegate_id,
            "approver_id": query.approver_id,
        }
        for column, value in equality_filters.items():
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        if query.is_emergency is not None:
            clauses.append("is_emergency = ?")
            params.append(int(query.is_emergency))

        if query.is_expired is not None:
            clauses.append("expires_at <= ?" if query.is_expired else "expires_at > ?")
            params.append(to_db_time(now))

        if query.search:
            pattern = f"%{escape_like(query.search.lower())}%"
            clauses.append(
                "(search_fold(title) LIKE ? ESCAPE '\\' "
                "OR search_fold(COALESCE(description, '')) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])

        where = " AND ".join(clauses)
        offset = (query.page - 1) * limit

        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM delegations WHERE {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM delegations WHERE {where} {NEWEST_FIRST} LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()

        return [_row_to_delegation(row) for row in rows], total

    @retry_on_sqlite_lock()
    def list_all(self, tenant_id: str) -> list[Delegation]:
        return self._fetch_delegations(
            f"SELECT * FROM delegations WHERE tenant_id = ? {NEWEST_FIRST}", (tenant_id,)
        )

    @retry_on_sqlite_lock()
    def find_active_for_delegate(
        self, delegate_id: str, tenant_id: str, now: datetime
    ) -> list[Delegation]:
        return self._fetch_delegations(
            "SELECT * FROM delegations "
            "WHERE tenant_id = ? AND delegate_id = ? AND status = ? AND expires_at > ? "
            f"{NEWEST_FIRST}",
            (tenant_id, delegate_id, DelegationStatus.ACTIVE.value, to_db_time(now)),
        )

    @retry_on_sqlite_lock()
    def find_pending_for_approver(
        self, approver_id: str, tenant_id: str, now: datetime
    ) -> list[Delegation]:
        return self._fetch_delegations(
            "SELECT * FROM delegations "
            "WHERE tenant_id = ? AND approver_id = ? AND status = ? AND expires_at > ? "
            f"{NEWEST_FIRST}",
            (tenant_id, approver_id, DelegationStatus.PENDING.value, to_db_time(now)),
        )

    @retry_on_sqlite_lock()
    def find_by_delegator(self, delegator_id: str, tenant_id: str) -> list[Delegation]:
        return self._fetch_delegations(
            f"SELECT * FROM delegations WHERE tenant_id = ? AND delegator_id = ? {NEWEST_FIRST}",
            (tenant_id, delegator_id),
        )

    @retry_on_sqlite_lock()
    def find_by_delegate(self, delegate_id: str, tenant_id: str) -> list[Delegation]:
        return self._fetch_delegations(
            f"SELECT * FROM delegations WHERE tenant_id = ? AND delegate_id = ? {NEWEST_FIRST}",
            (tenant_id, delegate_id),
        )

    @retry_on_sqlite_lock()
    def list_audit_logs(self, delegation_id: str, tenant_id: str) -> list[DelegationAuditLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM delegation_audit_logs "
                f"WHERE delegation_id = ? AND tenant_id = ? {NEWEST_FIRST}",
                (delegation_id, tenant_id),
            ).fetchall()
        return [_row_to_audit_log(row) for row in rows]

    @retry_on_sqlite_lock()
    def find_overdue(
        self,
        now: datetime,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[Delegation]:
        terminal = [s.value for s in TERMINAL_STATUSES]
        placeholders = ", ".join("?" for _ in terminal)
        sql = (
            "SELECT * FROM delegations "
            f"WHERE status NOT IN ({placeholders}) AND expires_at <= ?"
        )
        params: list[Any] = [*terminal, to_db_time(now)]
        if after is not None:
            sql += " AND (expires_at > ? OR (expires_at = ? AND delegation_id > ?))"
            after_expires_at = to_db_time(after[0])
            params.extend([after_expires_at, after_expires_at, after[1]])
        sql += " ORDER BY expires_at ASC, delegation_id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return self._fetch_delegations(sql, params)

    @retry_on_sqlite_lock()
    def count_audit_logs(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM delegation_audit_logs").fetchone()[0]
