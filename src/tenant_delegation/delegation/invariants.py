"""
Delegation Invariants - lifecycle rules that MUST hold

Pure functions (no side effects, no I/O) that decide whether a transition is
legal and who may perform it. The service calls them in a fixed order:
existence, then state, then actor - so a non-pending delegation is reported as
an invalid state regardless of who asks.
"""

from datetime import datetime

from tenant_delegation.delegation.models import (
    Delegation,
    DelegationStatus,
    Permission,
)
from tenant_delegation.kernel.errors import (
    ExpiryNotInFuture,
    InvalidTransition,
    NotDelegate,
    NotDesignatedApprover,
    NotStakeholder,
    PermissionsNotFound,
)


# Legal edges of the state machine (EXPIRED is reachable from every non-terminal state)
ALLOWED_TRANSITIONS: dict[DelegationStatus, frozenset[DelegationStatus]] = {
    DelegationStatus.PENDING: frozenset(
        {DelegationStatus.APPROVED, DelegationStatus.REJECTED, DelegationStatus.EXPIRED}
    ),
    DelegationStatus.APPROVED: frozenset(
        {DelegationStatus.ACTIVE, DelegationStatus.REVOKED, DelegationStatus.EXPIRED}
    ),
    DelegationStatus.ACTIVE: frozenset(
        {DelegationStatus.REVOKED, DelegationStatus.EXPIRED}
    ),
    DelegationStatus.REJECTED: frozenset(),
    DelegationStatus.REVOKED: frozenset(),
    DelegationStatus.EXPIRED: frozenset(),
}


def is_transition_allowed(current: DelegationStatus, target: DelegationStatus) -> bool:
    """Check a single edge of the state machine"""
    return target in ALLOWED_TRANSITIONS[current]


def initial_status(requires_approval: bool, approver_id: str | None) -> DelegationStatus:
    """
    Status a new delegation starts in

    Naming an approver implies approval is required even if the flag is off.
    Self-service grants start APPROVED but stay inert until activated.
    """
    if requires_approval or approver_id:
        return DelegationStatus.PENDING
    return DelegationStatus.APPROVED


# Creation


def validate_expiry_in_future(expires_at: datetime, now: datetime) -> None:
    """
    Raises:
        ExpiryNotInFuture: If expires_at is at or before now
    """
    if expires_at <= now:
        raise ExpiryNotInFuture(expires_at, now)


def validate_permissions_resolved(
    requested_ids: list[str], resolved: list[Permission]
) -> None:
    """
    All-or-nothing permission resolution

    A partial match rejects the whole request rather than silently granting
    the subset that happened to resolve.

    Raises:
        PermissionsNotFound: If any requested id is missing from resolved
    """
    resolved_ids = {p.permission_id for p in resolved}
    missing = [pid for pid in dict.fromkeys(requested_ids) if pid not in resolved_ids]
    if missing:
        raise PermissionsNotFound(list(requested_ids), missing)


# Approval / rejection


def validate_pending(delegation: Delegation, now: datetime, action: str) -> None:
    """
    Approval and rejection require a PENDING delegation

    An overdue PENDING delegation reads as EXPIRED and cannot be decided.

    Raises:
        InvalidTransition: If the effective status is not PENDING
    """
    current = delegation.effective_status(now)
    if current != DelegationStatus.PENDING:
        raise InvalidTransition(delegation.delegation_id, current.value, action)


def validate_designated_approver(
    delegation: Delegation, actor_id: str, action: str = "approve"
) -> None:
    """
    A fixed approver is the only principal who may decide

    When no approver was named, any holder of the approval capability may
    act; that capability is checked by the caller's authorization layer.

    Raises:
        NotDesignatedApprover: If an approver is fixed and actor_id differs
    """
    if delegation.approver_id and delegation.approver_id != actor_id:
        raise NotDesignatedApprover(delegation.delegation_id, actor_id, action)


# Activation


def validate_activation(delegation: Delegation, actor_id: str, now: datetime) -> None:
    """
    Raises:
        InvalidTransition: If the delegation is not approved or has expired
        NotDelegate: If actor_id is not the delegate
    """
    if not delegation.can_be_activated(now):
        raise InvalidTransition(
            delegation.delegation_id, delegation.effective_status(now).value, "activated"
        )
    if delegation.delegate_id != actor_id:
        raise NotDelegate(delegation.delegation_id, actor_id)


# Revocation


def validate_revocation(delegation: Delegation, actor_id: str, now: datetime) -> None:
    """
    Any of the three stakeholders may terminate an approved or active grant early

    Raises:
        InvalidTransition: If the delegation is not approved/active or has expired
        NotStakeholder: If actor_id is not delegator, delegate or approver
    """
    if not delegation.can_be_revoked(now):
        raise InvalidTransition(
            delegation.delegation_id, delegation.effective_status(now).value, "revoked"
        )
    if not delegation.is_stakeholder(actor_id):
        raise NotStakeholder(delegation.delegation_id, actor_id)


# Expiry


def is_due_for_expiry(delegation: Delegation, now: datetime) -> bool:
    """Non-terminal delegations whose window has closed are swept to EXPIRED"""
    return not delegation.is_terminal() and delegation.is_expired(now)
