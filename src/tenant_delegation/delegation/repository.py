"""
Tenant-scoped repository contract and an in-memory implementation

Every read takes a tenant_id and never returns another tenant's rows. Every
write goes through a unit of work opened for one tenant: writes for a
different tenant are rejected, and all staged writes (delegation row plus
its audit entry) commit together or not at all.

find_overdue is the only cross-tenant read; it exists for the sweeper.
"""

import threading
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from typing import Iterator, Protocol, cast

from tenant_delegation.delegation.commands import DelegationQuery
from tenant_delegation.delegation.models import (
    TERMINAL_STATUSES,
    Delegation,
    DelegationAuditLog,
    DelegationStatus,
)
from tenant_delegation.kernel.errors import (
    ConcurrentModification,
    DelegationNotFound,
    RepositoryError,
    TenantIsolationViolation,
)


class DelegationUnitOfWork(Protocol):
    """Atomic batch of writes scoped to one tenant"""

    tenant_id: str

    def add(self, delegation: Delegation) -> Delegation:
        """Stage a new delegation"""
        ...

    def update(self, delegation: Delegation, expected_version: int) -> Delegation:
        """
        Stage a transition guarded by compare-and-swap on version

        Returns the delegation with its version bumped.
        """
        ...

    def append_audit_log(self, entry: DelegationAuditLog) -> DelegationAuditLog:
        """Stage an audit entry for a delegation of this tenant"""
        ...


class DelegationRepository(Protocol):
    """Storage contract the service and sweeper are written against"""

    def unit_of_work(self, tenant_id: str) -> AbstractContextManager[DelegationUnitOfWork]:
        ...

    def get(self, delegation_id: str, tenant_id: str) -> Delegation | None:
        ...

    def query(
        self, tenant_id: str, query: DelegationQuery, now: datetime, limit: int
    ) -> tuple[list[Delegation], int]:
        """One page of matching delegations (newest first) and the total match count"""
        ...

    def list_all(self, tenant_id: str) -> list[Delegation]:
        ...

    def find_active_for_delegate(
        self, delegate_id: str, tenant_id: str, now: datetime
    ) -> list[Delegation]:
        ...

    def find_pending_for_approver(
        self, approver_id: str, tenant_id: str, now: datetime
    ) -> list[Delegation]:
        ...

    def find_by_delegator(self, delegator_id: str, tenant_id: str) -> list[Delegation]:
        ...

    def find_by_delegate(self, delegate_id: str, tenant_id: str) -> list[Delegation]:
        ...

    def list_audit_logs(self, delegation_id: str, tenant_id: str) -> list[DelegationAuditLog]:
        """Audit entries newest first"""
        ...

    def find_overdue(
        self,
        now: datetime,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[Delegation]:
        """
        Cross-tenant: non-terminal delegations with expires_at <= now

        Ordered by (expires_at, delegation_id); after is a keyset cursor and
        only rows strictly past it are returned.
        """
        ...


def matches_query(delegation: Delegation, query: DelegationQuery, now: datetime) -> bool:
    """Python rendition of the listing filters (the SQLite store mirrors it in SQL)"""
    if query.status is not None and delegation.status != query.status:
        return False
    if query.delegation_type is not None and delegation.delegation_type != query.delegation_type:
        return False
    if query.delegator_id is not None and delegation.delegator_id != query.delegator_id:
        return False
    if query.delegate_id is not None and delegation.delegate_id != query.delegate_id:
        return False
    if query.approver_id is not None and delegation.approver_id != query.approver_id:
        return False
    if query.is_emergency is not None and delegation.is_emergency != query.is_emergency:
        return False
    if query.is_expired is not None and (delegation.expires_at <= now) != query.is_expired:
        return False
    if query.search:
        needle = query.search.lower()
        haystacks = [delegation.title, delegation.description or ""]
        if not any(needle in h.lower() for h in haystacks):
            return False
    return True


def newest_first(delegations: list[Delegation]) -> list[Delegation]:
    """Sort by created_at descending, later inserts first on ties (input in insertion order)"""
    return sorted(reversed(delegations), key=lambda d: d.created_at, reverse=True)


class _InMemoryUnitOfWork:
    """Stages writes; InMemoryDelegationRepository applies them on commit"""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.operations: list[tuple[str, Delegation | DelegationAuditLog, int | None]] = []

    def _check_tenant(self, tenant_id: str) -> None:
        if tenant_id != self.tenant_id:
            raise TenantIsolationViolation(self.tenant_id, tenant_id)

    def add(self, delegation: Delegation) -> Delegation:
        self._check_tenant(delegation.tenant_id)
        self.operations.append(("add", delegation, None))
        return delegation

    def update(self, delegation: Delegation, expected_version: int) -> Delegation:
        self._check_tenant(delegation.tenant_id)
        updated = delegation.model_copy(update={"version": expected_version + 1})
        self.operations.append(("update", updated, expected_version))
        return updated

    def append_audit_log(self, entry: DelegationAuditLog) -> DelegationAuditLog:
        self._check_tenant(entry.tenant_id)
        self.operations.append(("audit", entry, None))
        return entry


class InMemoryDelegationRepository:
    """
    Thread-safe dict-backed repository

    Commits are copy-on-write under a lock: staged operations are applied to
    copies and swapped in only if every operation succeeded.
    """

    def __init__(self) -> None:
        self._delegations: dict[str, Delegation] = {}
        self._audit_logs: list[DelegationAuditLog] = []
        self._lock = threading.Lock()

    @contextmanager
    def unit_of_work(self, tenant_id: str) -> Iterator[_InMemoryUnitOfWork]:
        uow = _InMemoryUnitOfWork(tenant_id)
        yield uow
        # Reached only when the block did not raise; otherwise nothing is applied
        self._commit(uow)

    def _commit(self, uow: _InMemoryUnitOfWork) -> None:
        with self._lock:
            delegations = dict(self._delegations)
            audit_logs = list(self._audit_logs)

            for kind, staged, expected_version in uow.operations:
                if kind == "add":
                    record = cast(Delegation, staged)
                    if record.delegation_id in delegations:
                        raise RepositoryError(
                            f"Delegation {record.delegation_id} already exists"
                        )
                    delegations[record.delegation_id] = record

                elif kind == "update":
                    record = cast(Delegation, staged)
                    current = delegations.get(record.delegation_id)
                    if current is None or current.tenant_id != uow.tenant_id:
                        raise DelegationNotFound(record.delegation_id)
                    if current.version != expected_version:
                        raise ConcurrentModification(
                            record.delegation_id, expected_version or 0, current.version
                        )
                    delegations[record.delegation_id] = record

                elif kind == "audit":
                    entry = cast(DelegationAuditLog, staged)
                    owner = delegations.get(entry.delegation_id)
                    if owner is None or owner.tenant_id != uow.tenant_id:
                        raise RepositoryError(
                            f"Audit entry references unknown delegation {entry.delegation_id}"
                        )
                    audit_logs.append(entry)

                else:
                    raise RepositoryError(f"Unknown staged operation {kind!r}")

            self._delegations = delegations
            self._audit_logs = audit_logs

    def _tenant_rows(self, tenant_id: str) -> list[Delegation]:
        return [d for d in self._delegations.values() if d.tenant_id == tenant_id]

    def get(self, delegation_id: str, tenant_id: str) -> Delegation | None:
        delegation = self._delegations.get(delegation_id)
        if delegation is None or delegation.tenant_id != tenant_id:
            return None
        return delegation

    def query(
        self, tenant_id: str, query: DelegationQuery, now: datetime, limit: int
    ) -> tuple[list[Delegation], int]:
        matching = newest_first(
            [d for d in self._tenant_rows(tenant_id) if matches_query(d, query, now)]
        )
        offset = (query.page - 1) * limit
        return matching[offset : offset + limit], len(matching)

    def list_all(self, tenant_id: str) -> list[Delegation]:
        return newest_first(self._tenant_rows(tenant_id))

    def find_active_for_delegate(
        self, delegate_id: str, tenant_id: str, now: datetime
    ) -> list[Delegation]:
        return newest_first(
            [
                d
                for d in self._tenant_rows(tenant_id)
                if d.delegate_id == delegate_id and d.is_active(now)
            ]
        )

    def find_pending_for_approver(
        self, approver_id: str, tenant_id: str, now: datetime
    ) -> list[Delegation]:
        return newest_first(
            [
                d
                for d in self._tenant_rows(tenant_id)
                if d.approver_id == approver_id
                and d.status == DelegationStatus.PENDING
                and not d.is_expired(now)
            ]
        )

    def find_by_delegator(self, delegator_id: str, tenant_id: str) -> list[Delegation]:
        return newest_first(
            [d for d in self._tenant_rows(tenant_id) if d.delegator_id == delegator_id]
        )

    def find_by_delegate(self, delegate_id: str, tenant_id: str) -> list[Delegation]:
        return newest_first(
            [d for d in self._tenant_rows(tenant_id) if d.delegate_id == delegate_id]
        )

    def list_audit_logs(self, delegation_id: str, tenant_id: str) -> list[DelegationAuditLog]:
        entries = [
            e
            for e in self._audit_logs
            if e.delegation_id == delegation_id and e.tenant_id == tenant_id
        ]
        return sorted(reversed(entries), key=lambda e: e.created_at, reverse=True)

    def find_overdue(
        self,
        now: datetime,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[Delegation]:
        overdue = sorted(
            (
                d
                for d in self._delegations.values()
                if d.status not in TERMINAL_STATUSES
                and d.expires_at <= now
                and (after is None or (d.expires_at, d.delegation_id) > after)
            ),
            key=lambda d: (d.expires_at, d.delegation_id),
        )
        return overdue[:limit] if limit is not None else overdue

    def count_audit_logs(self) -> int:
        return len(self._audit_logs)
