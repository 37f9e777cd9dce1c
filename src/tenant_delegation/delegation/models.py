"""
Delegation Domain Models - the grant, its audit trail, and the collaborator records

A Delegation is owned by exactly one tenant. Delegator, delegate and approver
are weak references into the tenant's user directory; permission ids are weak
references into the shared permission catalog.

Derived properties (active, expired, durations) are methods that take "now"
explicitly, so the same entity answers consistently under an injected clock.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from tenant_delegation.kernel.time import ensure_utc, hours_between


class DelegationType(str, Enum):
    """What is being granted"""

    PERMISSION_BASED = "PERMISSION_BASED"  # An explicit subset of permissions
    ROLE_BASED = "ROLE_BASED"  # The delegator's role
    FULL_ACCESS = "FULL_ACCESS"  # Everything the delegator holds


class DelegationStatus(str, Enum):
    """
    Delegation lifecycle states

    PENDING → APPROVED | REJECTED
    APPROVED → ACTIVE | REVOKED
    ACTIVE → REVOKED
    any non-terminal → EXPIRED once expires_at has passed
    """

    PENDING = "PENDING"  # Waiting for an approver
    APPROVED = "APPROVED"  # Granted but inert until the delegate activates it
    REJECTED = "REJECTED"  # Approver declined (terminal)
    ACTIVE = "ACTIVE"  # In effect for permission checks
    REVOKED = "REVOKED"  # Terminated early by a stakeholder (terminal)
    EXPIRED = "EXPIRED"  # Ran past expires_at (terminal)


TERMINAL_STATUSES = frozenset(
    {DelegationStatus.REJECTED, DelegationStatus.REVOKED, DelegationStatus.EXPIRED}
)


class AuditAction(str, Enum):
    """Machine-readable tags written to the audit trail"""

    CREATED = "delegation_created"
    APPROVED = "delegation_approved"
    REJECTED = "delegation_rejected"
    ACTIVATED = "delegation_activated"
    REVOKED = "delegation_revoked"
    EXPIRED = "delegation_expired"


class Delegation(BaseModel):
    """
    Time-bounded, approval-gated grant of access from one member to another

    Attributes:
        delegation_id: Unique identifier
        tenant_id: Owning tenant (cannot be reassigned)
        delegator_id: Who grants access
        delegate_id: Who receives access
        approver_id: Fixed approver, if the grant names one
        delegation_type: Permission subset, role, or full access
        permission_ids: Granted permissions (meaningful for PERMISSION_BASED)
        title: Short human-readable label
        description: Optional longer explanation
        status: Lifecycle state as last persisted
        requested_at: When the grant was requested
        approved_at / rejected_at / activated_at / revoked_at: Transition stamps
        expires_at: Hard end of the grant (always after requested_at)
        requires_approval: Whether the grant waits for an approver
        is_emergency: Break-glass flag (metadata only, same state machine)
        is_recurring: Whether the grant recurs
        recurrence_pattern: Free-form recurrence description
        approval_notes / rejection_reason / revocation_reason: Actor-supplied text
        metadata: Free-form attributes
        created_at / updated_at: Row bookkeeping
        version: Optimistic locking counter, bumped on every persisted transition
    """

    delegation_id: str
    tenant_id: str = Field(frozen=True)
    delegator_id: str
    delegate_id: str
    approver_id: str | None = None
    delegation_type: DelegationType
    permission_ids: list[str] = Field(default_factory=list)
    title: str
    description: str | None = None
    status: DelegationStatus = DelegationStatus.PENDING
    requested_at: datetime
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    activated_at: datetime | None = None
    revoked_at: datetime | None = None
    expires_at: datetime
    requires_approval: bool = False
    is_emergency: bool = False
    is_recurring: bool = False
    recurrence_pattern: str | None = None
    approval_notes: str | None = None
    rejection_reason: str | None = None
    revocation_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=1, ge=1)

    @field_validator("permission_ids")
    @classmethod
    def _dedupe_permissions(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @field_validator(
        "requested_at",
        "approved_at",
        "rejected_at",
        "activated_at",
        "revoked_at",
        "expires_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _expiry_after_request(self) -> "Delegation":
        if self.expires_at <= self.requested_at:
            raise ValueError("expires_at must be after requested_at")
        return self

    def is_terminal(self) -> bool:
        """Check if no further transition is possible"""
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        """Check if the grant's time window has closed"""
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        """Check if the grant is currently in effect"""
        return self.status == DelegationStatus.ACTIVE and not self.is_expired(now)

    def effective_status(self, now: datetime) -> DelegationStatus:
        """Status with lazy expiry applied (non-terminal and overdue reads as EXPIRED)"""
        if not self.is_terminal() and self.is_expired(now):
            return DelegationStatus.EXPIRED
        return self.status

    def can_be_activated(self, now: datetime) -> bool:
        """Only an approved, unexpired grant can be activated"""
        return self.status == DelegationStatus.APPROVED and not self.is_expired(now)

    def can_be_revoked(self, now: datetime) -> bool:
        """Approved or active grants can be revoked until they expire"""
        return (
            self.status in (DelegationStatus.APPROVED, DelegationStatus.ACTIVE)
            and not self.is_expired(now)
        )

    def duration_in_hours(self) -> float:
        """Total requested lifetime of the grant"""
        return hours_between(self.requested_at, self.expires_at)

    def remaining_time_in_hours(self, now: datetime) -> float:
        """Time left before expiry (never negative)"""
        return max(0.0, hours_between(now, self.expires_at))

    def has_permission(self, permission_id: str) -> bool:
        """Check if a single permission is part of the grant"""
        return permission_id in self.permission_ids

    def grants_any(self, permission_ids: list[str]) -> bool:
        """Check if the grant's permission set intersects the given ids"""
        return not set(self.permission_ids).isdisjoint(permission_ids)

    def is_stakeholder(self, user_id: str) -> bool:
        """Delegator, delegate and approver may each terminate the grant"""
        return user_id in (self.delegator_id, self.delegate_id, self.approver_id)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "delegation_id": "del-001",
                    "tenant_id": "tenant-acme",
                    "delegator_id": "u-alice",
                    "delegate_id": "u-bob",
                    "approver_id": "u-carol",
                    "delegation_type": "PERMISSION_BASED",
                    "permission_ids": ["perm-invoices-approve"],
                    "title": "Invoice approvals during leave",
                    "status": "PENDING",
                    "requested_at": "2025-01-15T12:00:00Z",
                    "expires_at": "2025-01-22T12:00:00Z",
                    "requires_approval": True,
                    "is_emergency": False,
                    "created_at": "2025-01-15T12:00:00Z",
                    "updated_at": "2025-01-15T12:00:00Z",
                    "version": 1,
                }
            ]
        }
    }


class DelegationAuditLog(BaseModel):
    """
    One immutable entry in a delegation's audit trail

    Written in the same unit of work as the transition it records and never
    updated or deleted afterwards.
    """

    audit_log_id: str
    delegation_id: str
    tenant_id: str
    user_id: str
    action: AuditAction
    details: str | None = None
    metadata: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    model_config = {"frozen": True}


class RequestMetadata(BaseModel):
    """Request context captured into audit rows"""

    ip_address: str | None = None
    user_agent: str | None = None


# Collaborator records (owned by external user/permission catalogs)


class User(BaseModel):
    """Tenant member as seen by the delegation engine"""

    user_id: str
    tenant_id: str
    email: str
    first_name: str = ""
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email


class Permission(BaseModel):
    """Catalog permission that can be delegated"""

    permission_id: str
    name: str
    resource: str = ""
    action: str = ""
    scope: str = ""
