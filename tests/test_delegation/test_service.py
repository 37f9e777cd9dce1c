"""
Tests for DelegationService - creation and lifecycle transitions

Each transition is checked for its state change, its single audit entry and
its notification, and each rejection for leaving storage untouched.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from tenant_delegation.delegation.commands import (
    ActivateDelegation,
    ApproveDelegation,
    RejectDelegation,
    RevokeDelegation,
)
from tenant_delegation.delegation.models import (
    AuditAction,
    DelegationStatus,
    RequestMetadata,
)
from tenant_delegation.delegation.notifications import NotificationEvent
from tenant_delegation.kernel.errors import (
    DelegationNotFound,
    ExpiryNotInFuture,
    ForbiddenError,
    InvalidStateError,
    InvalidTransition,
    NotDelegate,
    NotDesignatedApprover,
    NotFoundError,
    NotStakeholder,
    PermissionsNotFound,
    UserNotFound,
)

from tests.helpers import NOW, TENANT_A, TENANT_B, audit_actions, make_create_command

REASON = "no longer needed"


# =============================================================================
# Creation
# =============================================================================


def test_create_without_approval_starts_approved(service, repository) -> None:
    view = service.create_delegation(make_create_command(), "alice", TENANT_A)

    assert view.status == DelegationStatus.APPROVED
    assert view.tenant_id == TENANT_A
    assert view.delegator_id == "alice"
    assert view.requested_at == NOW
    assert view.expires_at > view.requested_at
    assert view.version == 1
    assert repository.get(view.delegation_id, TENANT_A) is not None


@pytest.mark.parametrize(
    "overrides",
    [{"requires_approval": True}, {"approver_id": "carol"}],
)
def test_create_with_approval_starts_pending(service, overrides) -> None:
    view = service.create_delegation(make_create_command(**overrides), "alice", TENANT_A)
    assert view.status == DelegationStatus.PENDING


def test_create_writes_one_audit_entry(service) -> None:
    metadata = RequestMetadata(ip_address="10.0.0.7", user_agent="pytest")
    view = service.create_delegation(make_create_command(), "alice", TENANT_A, metadata)

    logs = service.get_delegation_audit_logs(view.delegation_id, TENANT_A)
    assert audit_actions(logs) == [AuditAction.CREATED]
    assert logs[0].details == "Delegation request created"
    assert logs[0].user_id == "alice"
    assert logs[0].ip_address == "10.0.0.7"
    assert logs[0].user_agent == "pytest"


def test_create_view_resolves_participants_and_permissions(service) -> None:
    view = service.create_delegation(
        make_create_command(approver_id="carol", permission_ids=["perm-read", "perm-write"]),
        "alice",
        TENANT_A,
    )

    assert view.delegator.full_name == "Alice Archer"
    assert view.delegate.email == "bob@a.test"
    assert view.approver.user_id == "carol"
    assert view.permission_names == ["Read invoices", "Write invoices"]
    assert [p.permission_id for p in view.permissions] == ["perm-read", "perm-write"]
    assert view.duration_in_hours == 7 * 24


def test_create_notifies_after_commit(service, outbox) -> None:
    view = service.create_delegation(make_create_command(), "alice", TENANT_A)

    assert [(n.event, n.delegation.delegation_id) for n in outbox.pending] == [
        (NotificationEvent.CREATED, view.delegation_id)
    ]


@pytest.mark.parametrize(
    "delta",
    [timedelta(0), timedelta(seconds=-1), timedelta(days=-30)],
)
def test_create_with_non_future_expiry_fails_and_persists_nothing(
    service, repository, outbox, delta
) -> None:
    with pytest.raises(ExpiryNotInFuture) as exc_info:
        service.create_delegation(make_create_command(expires_at=NOW + delta), "alice", TENANT_A)

    assert isinstance(exc_info.value, InvalidStateError)
    assert repository.list_all(TENANT_A) == []
    assert repository.count_audit_logs() == 0
    assert outbox.pending == []


@pytest.mark.parametrize(
    "overrides, delegator_id, role",
    [
        ({"delegate_id": "nobody"}, "alice", "delegate"),
        ({}, "nobody", "delegator"),
        ({"approver_id": "nobody"}, "alice", "approver"),
        # erin is a member of tenant B only
        ({"delegate_id": "erin"}, "alice", "delegate"),
    ],
)
def test_create_with_unknown_participant_fails(
    service, repository, overrides, delegator_id, role
) -> None:
    with pytest.raises(UserNotFound) as exc_info:
        service.create_delegation(make_create_command(**overrides), delegator_id, TENANT_A)

    assert exc_info.value.role == role
    assert repository.count_audit_logs() == 0


def test_create_checks_delegate_before_expiry(service) -> None:
    """Validation order: participants, then permissions, then expiry"""
    command = make_create_command(delegate_id="nobody", expires_at=NOW - timedelta(days=1))
    with pytest.raises(UserNotFound):
        service.create_delegation(command, "alice", TENANT_A)


def test_create_with_partially_unknown_permissions_fails(service, repository) -> None:
    command = make_create_command(permission_ids=["perm-read", "perm-missing"])

    with pytest.raises(PermissionsNotFound) as exc_info:
        service.create_delegation(command, "alice", TENANT_A)

    assert isinstance(exc_info.value, NotFoundError)
    assert exc_info.value.missing == ["perm-missing"]
    assert repository.list_all(TENANT_A) == []


def test_create_with_duplicate_permission_ids_succeeds(service) -> None:
    view = service.create_delegation(
        make_create_command(permission_ids=["perm-read", "perm-read"]), "alice", TENANT_A
    )
    assert view.permission_ids == ["perm-read"]


# =============================================================================
# Approve / reject
# =============================================================================


def _pending(service, approver_id: str | None = "carol") -> str:
    command = make_create_command(requires_approval=True, approver_id=approver_id)
    return service.create_delegation(command, "alice", TENANT_A).delegation_id


def test_approve_by_designated_approver(service, test_time) -> None:
    delegation_id = _pending(service)
    test_time.advance_hours(1)

    view = service.approve_delegation(
        delegation_id, "carol", TENANT_A, ApproveDelegation(approval_notes="Covered by policy")
    )

    assert view.status == DelegationStatus.APPROVED
    assert view.approved_at == NOW + timedelta(hours=1)
    assert view.approval_notes == "Covered by policy"
    assert view.version == 2

    logs = service.get_delegation_audit_logs(delegation_id, TENANT_A)
    assert audit_actions(logs) == [AuditAction.APPROVED, AuditAction.CREATED]
    assert logs[0].details == "Delegation approved: Covered by policy"


def test_approve_without_notes_has_plain_details(service) -> None:
    delegation_id = _pending(service)
    service.approve_delegation(delegation_id, "carol", TENANT_A)
    logs = service.get_delegation_audit_logs(delegation_id, TENANT_A)
    assert logs[0].details == "Delegation approved"


def test_approve_without_fixed_approver_leaves_approver_unset(service, repository) -> None:
    delegation_id = _pending(service, approver_id=None)

    view = service.approve_delegation(delegation_id, "dave", TENANT_A)

    assert view.status == DelegationStatus.APPROVED
    assert view.approver_id is None
    assert repository.get(delegation_id, TENANT_A).approver_id is None
    # The audit entry is the record of who approved
    assert repository.list_audit_logs(delegation_id, TENANT_A)[0].user_id == "dave"


def test_approving_does_not_make_the_actor_a_stakeholder(service) -> None:
    delegation_id = _pending(service, approver_id=None)
    service.approve_delegation(delegation_id, "dave", TENANT_A)

    with pytest.raises(NotStakeholder):
        service.revoke_delegation(
            delegation_id, "dave", TENANT_A, RevokeDelegation(revocation_reason="No longer needed")
        )

    revoked = service.revoke_delegation(
        delegation_id, "alice", TENANT_A, RevokeDelegation(revocation_reason="No longer needed")
    )
    assert revoked.status == DelegationStatus.REVOKED


def test_approve_by_other_user_is_forbidden(service, repository) -> None:
    delegation_id = _pending(service)

    with pytest.raises(NotDesignatedApprover) as exc_info:
        service.approve_delegation(delegation_id, "bob", TENANT_A)

    assert isinstance(exc_info.value, ForbiddenError)
    stored = repository.get(delegation_id, TENANT_A)
    assert stored.status == DelegationStatus.PENDING
    assert stored.version == 1
    assert len(repository.list_audit_logs(delegation_id, TENANT_A)) == 1


@pytest.mark.parametrize("actor", ["carol", "bob", "dave"])
def test_approve_non_pending_is_invalid_state_for_any_actor(service, actor) -> None:
    delegation_id = _pending(service)
    service.approve_delegation(delegation_id, "carol", TENANT_A)

    with pytest.raises(InvalidTransition):
        service.approve_delegation(delegation_id, actor, TENANT_A)


def test_approve_overdue_pending_is_invalid_state(service, test_time) -> None:
    delegation_id = _pending(service)
    test_time.advance_days(8)

    with pytest.raises(InvalidTransition) as exc_info:
        service.approve_delegation(delegation_id, "carol", TENANT_A)
    assert exc_info.value.current_status == DelegationStatus.EXPIRED.value


def test_reject_with_reason(service, outbox) -> None:
    delegation_id = _pending(service)

    view = service.reject_delegation(
        delegation_id, "carol", TENANT_A, RejectDelegation(rejection_reason="Outside of policy scope")
    )

    assert view.status == DelegationStatus.REJECTED
    assert view.rejected_at == NOW
    assert view.rejection_reason == "Outside of policy scope"
    logs = service.get_delegation_audit_logs(delegation_id, TENANT_A)
    assert logs[0].action == AuditAction.REJECTED
    assert logs[0].details == "Delegation rejected: Outside of policy scope"
    assert outbox.pending[-1].event == NotificationEvent.REJECTED


def test_reject_by_other_user_is_forbidden(service) -> None:
    delegation_id = _pending(service)
    with pytest.raises(NotDesignatedApprover):
        service.reject_delegation(
            delegation_id, "dave", TENANT_A, RejectDelegation(rejection_reason=REASON)
        )


def test_rejected_is_terminal(service) -> None:
    delegation_id = _pending(service)
    service.reject_delegation(delegation_id, "carol", TENANT_A, RejectDelegation(rejection_reason=REASON))

    with pytest.raises(InvalidTransition):
        service.approve_delegation(delegation_id, "carol", TENANT_A)
    with pytest.raises(InvalidTransition):
        service.revoke_delegation(
            delegation_id, "alice", TENANT_A, RevokeDelegation(revocation_reason=REASON)
        )


def test_reject_requires_reason() -> None:
    with pytest.raises(ValidationError):
        RejectDelegation(rejection_reason="")


# =============================================================================
# Activate
# =============================================================================


def test_activate_by_delegate(service, outbox) -> None:
    delegation_id = service.create_delegation(make_create_command(), "alice", TENANT_A).delegation_id

    view = service.activate_delegation(
        delegation_id, "bob", TENANT_A, ActivateDelegation(confirm_activation=True)
    )

    assert view.status == DelegationStatus.ACTIVE
    assert view.activated_at == NOW
    assert view.is_active
    logs = service.get_delegation_audit_logs(delegation_id, TENANT_A)
    assert logs[0].action == AuditAction.ACTIVATED
    assert logs[0].details == "Delegation activated"
    assert logs[0].metadata == {"confirm_activation": True}
    assert outbox.pending[-1].event == NotificationEvent.ACTIVATED


@pytest.mark.parametrize("actor", ["alice", "carol", "dave"])
def test_activate_by_non_delegate_is_forbidden(service, actor) -> None:
    delegation_id = service.create_delegation(make_create_command(), "alice", TENANT_A).delegation_id

    with pytest.raises(NotDelegate):
        service.activate_delegation(delegation_id, actor, TENANT_A)


def test_activate_pending_is_invalid_state(service) -> None:
    delegation_id = _pending(service)
    with pytest.raises(InvalidTransition):
        service.activate_delegation(delegation_id, "bob", TENANT_A)


def test_activate_twice_is_invalid_state(service) -> None:
    delegation_id = service.create_delegation(make_create_command(), "alice", TENANT_A).delegation_id
    service.activate_delegation(delegation_id, "bob", TENANT_A)
    with pytest.raises(InvalidTransition):
        service.activate_delegation(delegation_id, "bob", TENANT_A)


def test_activate_after_expiry_is_invalid_state(service, test_time) -> None:
    delegation_id = service.create_delegation(make_create_command(), "alice", TENANT_A).delegation_id
    test_time.advance_days(7)
    with pytest.raises(InvalidTransition):
        service.activate_delegation(delegation_id, "bob", TENANT_A)


# =============================================================================
# Revoke
# =============================================================================


@pytest.mark.parametrize("actor", ["alice", "bob", "carol"])
def test_any_stakeholder_can_revoke(service, actor) -> None:
    delegation_id = _pending(service)
    service.approve_delegation(delegation_id, "carol", TENANT_A)
    service.activate_delegation(delegation_id, "bob", TENANT_A)

    view = service.revoke_delegation(
        delegation_id, actor, TENANT_A, RevokeDelegation(revocation_reason=REASON)
    )

    assert view.status == DelegationStatus.REVOKED
    assert view.revoked_at == NOW
    assert view.revocation_reason == REASON
    logs = service.get_delegation_audit_logs(delegation_id, TENANT_A)
    assert logs[0].details == f"Delegation revoked: {REASON}"
    assert logs[0].user_id == actor


def test_revoke_approved_before_activation(service) -> None:
    delegation_id = service.create_delegation(make_create_command(), "alice", TENANT_A).delegation_id
    view = service.revoke_delegation(
        delegation_id, "alice", TENANT_A, RevokeDelegation(revocation_reason=REASON)
    )
    assert view.status == DelegationStatus.REVOKED


def test_revoke_by_outsider_is_forbidden(service, repository) -> None:
    delegation_id = service.create_delegation(make_create_command(), "alice", TENANT_A).delegation_id

    with pytest.raises(NotStakeholder):
        service.revoke_delegation(
            delegation_id, "dave", TENANT_A, RevokeDelegation(revocation_reason=REASON)
        )
    assert repository.get(delegation_id, TENANT_A).status == DelegationStatus.APPROVED


def test_revoke_pending_is_invalid_state(service) -> None:
    delegation_id = _pending(service)
    with pytest.raises(InvalidTransition):
        service.revoke_delegation(
            delegation_id, "alice", TENANT_A, RevokeDelegation(revocation_reason=REASON)
        )


# =============================================================================
# Tenant scoping of lookups
# =============================================================================


def test_transitions_from_another_tenant_see_not_found(service) -> None:
    delegation_id = _pending(service)

    with pytest.raises(DelegationNotFound):
        service.approve_delegation(delegation_id, "carol", TENANT_B)
    with pytest.raises(DelegationNotFound):
        service.get_delegation(delegation_id, TENANT_B)
    with pytest.raises(DelegationNotFound):
        service.get_delegation_audit_logs(delegation_id, TENANT_B)


def test_unknown_delegation_is_not_found(service) -> None:
    with pytest.raises(DelegationNotFound):
        service.activate_delegation("missing", "bob", TENANT_A)


# =============================================================================
# Notifications are best-effort
# =============================================================================


class ExplodingNotifier:
    def notify(self, delegation, event) -> None:
        raise RuntimeError("smtp down")


def test_notifier_failure_does_not_fail_transition(
    repository, users, permissions, test_time, id_factory
) -> None:
    from tenant_delegation.delegation.service import DelegationService

    service = DelegationService(
        repository=repository,
        users=users,
        permissions=permissions,
        notifier=ExplodingNotifier(),
        time_provider=test_time,
        id_factory=id_factory,
    )

    view = service.create_delegation(make_create_command(), "alice", TENANT_A)
    activated = service.activate_delegation(view.delegation_id, "bob", TENANT_A)

    assert activated.status == DelegationStatus.ACTIVE
    assert len(repository.list_audit_logs(view.delegation_id, TENANT_A)) == 2
