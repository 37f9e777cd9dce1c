"""
Delegation Module - time-bounded, approval-gated grants between tenant members

This module implements the delegation lifecycle:
- Request with optional approval (PENDING or APPROVED at creation)
- Approval or rejection by the designated approver
- Activation by the delegate
- Early revocation by any stakeholder, or expiry when the window closes
- An append-only audit entry for every transition

Fun fact: A delegation is only ever as wide as the intersection of what was
granted and what is asked for - FULL_ACCESS included.
"""

from tenant_delegation.delegation.models import (
    AuditAction,
    Delegation,
    DelegationAuditLog,
    DelegationStatus,
    DelegationType,
    Permission,
    RequestMetadata,
    User,
)
from tenant_delegation.delegation.service import DelegationService
from tenant_delegation.delegation.sweeper import ExpirationSweeper, SweepResult

__all__ = [
    "AuditAction",
    "Delegation",
    "DelegationAuditLog",
    "DelegationStatus",
    "DelegationType",
    "Permission",
    "RequestMetadata",
    "User",
    "DelegationService",
    "ExpirationSweeper",
    "SweepResult",
]
