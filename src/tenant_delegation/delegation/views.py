"""
Delegation Views - explicit result shapes returned by the service

Entities never leave the service directly. Views carry the lifecycle fields,
the derived properties evaluated at a given instant, and the participants and
permissions resolved through the directory and catalog.
"""

import math
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from tenant_delegation.delegation.directory import PermissionCatalog, UserDirectory
from tenant_delegation.delegation.models import (
    AuditAction,
    Delegation,
    DelegationAuditLog,
    DelegationStatus,
    DelegationType,
    Permission,
    User,
)
from tenant_delegation.kernel.time import start_of_month, start_of_next_month


class UserSummary(BaseModel):
    user_id: str
    email: str
    first_name: str
    last_name: str
    full_name: str

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            user_id=user.user_id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
        )


class PermissionSummary(BaseModel):
    permission_id: str
    name: str
    resource: str
    action: str

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionSummary":
        return cls(
            permission_id=permission.permission_id,
            name=permission.name,
            resource=permission.resource,
            action=permission.action,
        )


class DelegationView(BaseModel):
    """
    A delegation as seen at a particular instant

    status is the persisted value; effective_status applies lazy expiry so a
    caller never sees an overdue grant reported as ACTIVE or PENDING.
    """

    delegation_id: str
    tenant_id: str
    delegator_id: str
    delegate_id: str
    approver_id: str | None
    delegation_type: DelegationType
    permission_ids: list[str]
    title: str
    description: str | None
    status: DelegationStatus
    effective_status: DelegationStatus
    requested_at: datetime
    approved_at: datetime | None
    rejected_at: datetime | None
    activated_at: datetime | None
    revoked_at: datetime | None
    expires_at: datetime
    requires_approval: bool
    is_emergency: bool
    is_recurring: bool
    recurrence_pattern: str | None
    approval_notes: str | None
    rejection_reason: str | None
    revocation_reason: str | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    version: int

    # Derived at the evaluation instant
    is_active: bool
    is_expired: bool
    duration_in_hours: float
    remaining_time_in_hours: float
    permission_names: list[str] = Field(default_factory=list)

    # Resolved participants (None when the directory no longer knows them)
    delegator: UserSummary | None = None
    delegate: UserSummary | None = None
    approver: UserSummary | None = None
    permissions: list[PermissionSummary] = Field(default_factory=list)


class AuditLogView(BaseModel):
    audit_log_id: str
    delegation_id: str
    user_id: str
    action: AuditAction
    details: str | None
    metadata: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    created_at: datetime
    user: UserSummary | None = None


class DelegationPage(BaseModel):
    delegations: list[DelegationView]
    total: int
    page: int
    limit: int
    total_pages: int


class DelegationStats(BaseModel):
    """
    Tenant-wide aggregates

    Status counts use the persisted status; average_delegation_duration is the
    requested lifetime averaged over every delegation regardless of status.
    """

    total_delegations: int
    active_delegations: int
    pending_approvals: int
    expired_delegations: int
    revoked_delegations: int
    emergency_delegations: int
    delegations_this_month: int
    average_delegation_duration: float
    by_status: dict[str, int]


def _summarize_user(
    users: UserDirectory, user_id: str | None, tenant_id: str
) -> UserSummary | None:
    if not user_id:
        return None
    user = users.find_user(user_id, tenant_id)
    return UserSummary.from_user(user) if user else None


def build_delegation_view(
    delegation: Delegation,
    now: datetime,
    users: UserDirectory,
    permissions: PermissionCatalog,
) -> DelegationView:
    """Project an entity into its view, resolving participants and permissions"""
    resolved = permissions.resolve_permissions(delegation.permission_ids)
    data = delegation.model_dump()
    return DelegationView(
        **data,
        effective_status=delegation.effective_status(now),
        is_active=delegation.is_active(now),
        is_expired=delegation.is_expired(now),
        duration_in_hours=delegation.duration_in_hours(),
        remaining_time_in_hours=delegation.remaining_time_in_hours(now),
        permission_names=[p.name for p in resolved],
        delegator=_summarize_user(users, delegation.delegator_id, delegation.tenant_id),
        delegate=_summarize_user(users, delegation.delegate_id, delegation.tenant_id),
        approver=_summarize_user(users, delegation.approver_id, delegation.tenant_id),
        permissions=[PermissionSummary.from_permission(p) for p in resolved],
    )


def build_audit_log_view(entry: DelegationAuditLog, users: UserDirectory) -> AuditLogView:
    return AuditLogView(
        audit_log_id=entry.audit_log_id,
        delegation_id=entry.delegation_id,
        user_id=entry.user_id,
        action=entry.action,
        details=entry.details,
        metadata=entry.metadata,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        created_at=entry.created_at,
        user=_summarize_user(users, entry.user_id, entry.tenant_id),
    )


def build_page(
    views: list[DelegationView], total: int, page: int, limit: int
) -> DelegationPage:
    return DelegationPage(
        delegations=views,
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


def compute_stats(delegations: list[Delegation], now: datetime) -> DelegationStats:
    """Aggregate a tenant's delegations (pure function over already-loaded rows)"""
    by_status = {status.value: 0 for status in DelegationStatus}
    for delegation in delegations:
        by_status[delegation.status.value] += 1

    month_start = start_of_month(now)
    month_end = start_of_next_month(now)
    this_month = sum(1 for d in delegations if month_start <= d.created_at < month_end)

    total = len(delegations)
    average = sum(d.duration_in_hours() for d in delegations) / total if total else 0.0

    return DelegationStats(
        total_delegations=total,
        active_delegations=by_status[DelegationStatus.ACTIVE.value],
        pending_approvals=by_status[DelegationStatus.PENDING.value],
        expired_delegations=by_status[DelegationStatus.EXPIRED.value],
        revoked_delegations=by_status[DelegationStatus.REVOKED.value],
        emergency_delegations=sum(1 for d in delegations if d.is_emergency),
        delegations_this_month=this_month,
        average_delegation_duration=average,
        by_status=by_status,
    )
