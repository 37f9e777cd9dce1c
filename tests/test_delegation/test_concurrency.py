"""
Tests for concurrent transitions on the same delegation

Two deciders racing on one PENDING delegation must not both win: the loser
gets an InvalidState error (ConcurrentModification when it read the row
before the winner committed) and exactly one audit entry is written.
"""

import threading

import pytest

from tenant_delegation.delegation.commands import RejectDelegation
from tenant_delegation.delegation.models import AuditAction, DelegationStatus
from tenant_delegation.delegation.service import DelegationService
from tenant_delegation.kernel.errors import ConcurrentModification, InvalidStateError
from tenant_delegation.kernel.ids import SequentialIdFactory

from tests.helpers import TENANT_A, audit_actions, make_create_command


class StaleReadRepository:
    """Serves the first snapshot it ever read for each delegation"""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.snapshots = {}

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get(self, delegation_id, tenant_id):
        if delegation_id not in self.snapshots:
            self.snapshots[delegation_id] = self.inner.get(delegation_id, tenant_id)
        return self.snapshots[delegation_id]


def test_stale_writer_gets_concurrent_modification(
    repository, users, permissions, test_time, service
) -> None:
    delegation_id = service.create_delegation(
        make_create_command(requires_approval=True), "alice", TENANT_A
    ).delegation_id

    stale_service = DelegationService(
        repository=StaleReadRepository(repository),
        users=users,
        permissions=permissions,
        time_provider=test_time,
        id_factory=SequentialIdFactory("stale"),
    )
    # Snapshot taken while still PENDING
    stale_service.get_delegation(delegation_id, TENANT_A)

    service.approve_delegation(delegation_id, "carol", TENANT_A)

    with pytest.raises(ConcurrentModification):
        stale_service.reject_delegation(
            delegation_id, "dave", TENANT_A, RejectDelegation(rejection_reason="Duplicate of another")
        )

    stored = repository.get(delegation_id, TENANT_A)
    assert stored.status == DelegationStatus.APPROVED
    assert stored.rejected_at is None
    assert audit_actions(repository.list_audit_logs(delegation_id, TENANT_A)) == [
        AuditAction.APPROVED,
        AuditAction.CREATED,
    ]


def test_parallel_approve_and_reject_on_sqlite(
    sqlite_repository, users, permissions, test_time
) -> None:
    service = DelegationService(
        repository=sqlite_repository,
        users=users,
        permissions=permissions,
        time_provider=test_time,
    )
    delegation_id = service.create_delegation(
        make_create_command(requires_approval=True), "alice", TENANT_A
    ).delegation_id

    barrier = threading.Barrier(2)
    outcomes: dict[str, object] = {}

    def approve() -> None:
        barrier.wait()
        try:
            outcomes["approve"] = service.approve_delegation(delegation_id, "carol", TENANT_A)
        except InvalidStateError as e:
            outcomes["approve"] = e

    def reject() -> None:
        barrier.wait()
        try:
            outcomes["reject"] = service.reject_delegation(
                delegation_id, "dave", TENANT_A, RejectDelegation(rejection_reason="Not this quarter")
            )
        except InvalidStateError as e:
            outcomes["reject"] = e

    threads = [threading.Thread(target=approve), threading.Thread(target=reject)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    failures = [o for o in outcomes.values() if isinstance(o, InvalidStateError)]
    assert len(outcomes) == 2
    assert len(failures) == 1

    stored = sqlite_repository.get(delegation_id, TENANT_A)
    assert stored.status in (DelegationStatus.APPROVED, DelegationStatus.REJECTED)
    assert stored.version == 2
    assert len(sqlite_repository.list_audit_logs(delegation_id, TENANT_A)) == 2
