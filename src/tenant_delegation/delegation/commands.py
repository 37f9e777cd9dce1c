"""
Delegation Commands - validated inputs for every operation

Field-shape rules (lengths, enums, page bounds) are enforced here by pydantic;
relational and state rules are enforced by the service and invariants.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from tenant_delegation.delegation.models import DelegationStatus, DelegationType
from tenant_delegation.kernel.time import ensure_utc


class CreateDelegation(BaseModel):
    """
    Request a new delegation from the calling user (the delegator)

    The initial status is PENDING when requires_approval is set or an
    approver is named, APPROVED otherwise.
    """

    delegate_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=3, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    delegation_type: DelegationType
    expires_at: datetime
    permission_ids: list[str] = Field(default_factory=list)
    requires_approval: bool = False
    approver_id: str | None = None
    is_emergency: bool = False
    is_recurring: bool = False
    recurrence_pattern: str | None = Field(default=None, max_length=100)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("expires_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class ApproveDelegation(BaseModel):
    """Approve a pending delegation"""

    approval_notes: str | None = Field(default=None, max_length=500)


class RejectDelegation(BaseModel):
    """Reject a pending delegation (a reason is mandatory)"""

    rejection_reason: str = Field(..., min_length=10, max_length=500)


class ActivateDelegation(BaseModel):
    """Activate an approved delegation (delegate only)"""

    confirm_activation: bool | None = None


class RevokeDelegation(BaseModel):
    """Terminate an approved or active delegation (a reason is mandatory)"""

    revocation_reason: str = Field(..., min_length=10, max_length=500)


class DelegationQuery(BaseModel):
    """
    Filters and paging for listing a tenant's delegations

    A limit above the policy cap is clamped rather than rejected.
    """

    status: DelegationStatus | None = None
    delegation_type: DelegationType | None = None
    delegator_id: str | None = None
    delegate_id: str | None = None
    approver_id: str | None = None
    is_emergency: bool | None = None
    is_expired: bool | None = None
    search: str | None = Field(default=None, max_length=255)
    page: int = Field(default=1, ge=1)
    limit: int | None = Field(default=None, ge=1)
