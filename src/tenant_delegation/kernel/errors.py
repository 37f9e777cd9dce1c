"""
Custom exceptions for the delegation engine

Three families matter to callers: NotFound, InvalidState and Forbidden.
The API layer maps the first two to client-correctable responses and the
third to an authorization failure, so they never share a base below
DelegationEngineError.

Fun fact: HTTP 403 and 404 were both defined in the very first HTTP/1.0
draft in 1992 - the distinction between "you can't" and "it isn't there"
is older than most web frameworks!
"""

from datetime import datetime


class DelegationEngineError(Exception):
    """Base exception for all delegation engine errors"""

    pass


# Not Found


class NotFoundError(DelegationEngineError):
    """A referenced record does not exist or lives in another tenant"""

    pass


class DelegationNotFound(NotFoundError):
    """Raised when delegation does not exist within the caller's tenant"""

    def __init__(self, delegation_id: str) -> None:
        self.delegation_id = delegation_id
        super().__init__(f"Delegation {delegation_id} not found")


class UserNotFound(NotFoundError):
    """
    Raised when a participant is not a member of the tenant

    The role ("delegate", "delegator", "approver") is carried so callers can
    tell which participant failed validation.
    """

    def __init__(self, role: str, user_id: str, tenant_id: str) -> None:
        self.role = role
        self.user_id = user_id
        self.tenant_id = tenant_id
        super().__init__(f"{role.capitalize()} {user_id} not found in tenant {tenant_id}")


class PermissionsNotFound(NotFoundError):
    """Raised when one or more requested permission ids do not resolve"""

    def __init__(self, requested: list[str], missing: list[str]) -> None:
        self.requested = requested
        self.missing = missing
        super().__init__(
            f"Some permissions not found: {', '.join(missing)} "
            f"({len(requested) - len(missing)} of {len(requested)} resolved)"
        )


# Invalid State


class InvalidStateError(DelegationEngineError):
    """The requested operation is illegal for the delegation's current state"""

    pass


class InvalidTransition(InvalidStateError):
    """Raised when a lifecycle transition is not allowed from the current status"""

    def __init__(self, delegation_id: str, current_status: str, action: str) -> None:
        self.delegation_id = delegation_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Delegation {delegation_id} cannot be {action} while {current_status}"
        )


class ExpiryNotInFuture(InvalidStateError):
    """Raised when a delegation is requested with an expiry at or before now"""

    def __init__(self, expires_at: datetime, now: datetime) -> None:
        self.expires_at = expires_at
        self.now = now
        super().__init__(
            f"Expiration date must be in the future "
            f"(expires_at={expires_at.isoformat()}, now={now.isoformat()})"
        )


class ConcurrentModification(InvalidStateError):
    """
    Raised when a delegation changed between read and write (optimistic locking)

    The losing caller should reload the delegation; its transition was not applied.
    """

    def __init__(
        self, delegation_id: str, expected_version: int, actual_version: int | None
    ) -> None:
        self.delegation_id = delegation_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Delegation {delegation_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )


# Forbidden


class ForbiddenError(DelegationEngineError):
    """The actor lacks the relational right required for the transition"""

    def __init__(self, delegation_id: str, actor_id: str, message: str) -> None:
        self.delegation_id = delegation_id
        self.actor_id = actor_id
        super().__init__(message)


class NotDesignatedApprover(ForbiddenError):
    """Raised when someone other than the fixed approver approves or rejects"""

    def __init__(self, delegation_id: str, actor_id: str, action: str = "approve") -> None:
        self.action = action
        super().__init__(
            delegation_id,
            actor_id,
            f"User {actor_id} is not authorized to {action} delegation {delegation_id}",
        )


class NotDelegate(ForbiddenError):
    """Raised when anyone but the delegate tries to activate"""

    def __init__(self, delegation_id: str, actor_id: str) -> None:
        super().__init__(
            delegation_id,
            actor_id,
            f"Only the delegate can activate delegation {delegation_id} "
            f"(attempted by {actor_id})",
        )


class NotStakeholder(ForbiddenError):
    """Raised when a revoker is not the delegator, delegate or approver"""

    def __init__(self, delegation_id: str, actor_id: str) -> None:
        super().__init__(
            delegation_id,
            actor_id,
            f"User {actor_id} is not authorized to revoke delegation {delegation_id}",
        )


# Storage


class RepositoryError(DelegationEngineError):
    """Base class for persistence failures"""

    pass


class TenantIsolationViolation(RepositoryError):
    """Raised when a write targets a row owned by a different tenant"""

    def __init__(self, expected_tenant_id: str, actual_tenant_id: str) -> None:
        self.expected_tenant_id = expected_tenant_id
        self.actual_tenant_id = actual_tenant_id
        super().__init__(
            f"Unit of work for tenant {expected_tenant_id} cannot write "
            f"records of tenant {actual_tenant_id}"
        )
