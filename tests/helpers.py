"""
Test Helper Functions - Builders and Assertions

Provides reusable builders for delegation commands and entities so tests only
spell out the fields they care about.

Fun fact: The Builder pattern was formalized by the Gang of Four in 1994,
but test data builders were popularized by the growing programmer test
movement in the 2000s - we use them to keep tests readable and maintainable!
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from tenant_delegation.delegation.commands import CreateDelegation
from tenant_delegation.delegation.models import (
    AuditAction,
    Delegation,
    DelegationAuditLog,
    DelegationStatus,
    DelegationType,
)

NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


def make_create_command(**overrides: Any) -> CreateDelegation:
    """
    Builder for CreateDelegation (bob receives perm-read for seven days)

    Example:
        >>> cmd = make_create_command(approver_id="carol", permission_ids=["perm-write"])
    """
    fields: dict[str, Any] = {
        "delegate_id": "bob",
        "title": "Invoice cover",
        "delegation_type": DelegationType.PERMISSION_BASED,
        "expires_at": NOW + timedelta(days=7),
        "permission_ids": ["perm-read"],
    }
    fields.update(overrides)
    return CreateDelegation(**fields)


def make_delegation(**overrides: Any) -> Delegation:
    """Builder for Delegation entities written straight to a repository"""
    fields: dict[str, Any] = {
        "delegation_id": "del-1",
        "tenant_id": TENANT_A,
        "delegator_id": "alice",
        "delegate_id": "bob",
        "delegation_type": DelegationType.PERMISSION_BASED,
        "permission_ids": ["perm-read"],
        "title": "Invoice cover",
        "status": DelegationStatus.PENDING,
        "requested_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(overrides)
    return Delegation(**fields)


def audit_actions(entries: list[Any]) -> list[AuditAction]:
    """Action tags of audit entries or views, in the order given"""
    return [entry.action for entry in entries]


def make_audit_log(**overrides: Any) -> DelegationAuditLog:
    """Builder for audit entries belonging to make_delegation()'s default row"""
    fields: dict[str, Any] = {
        "audit_log_id": "log-1",
        "delegation_id": "del-1",
        "tenant_id": TENANT_A,
        "user_id": "alice",
        "action": AuditAction.CREATED,
        "details": "Delegation request created",
        "created_at": NOW,
    }
    fields.update(overrides)
    return DelegationAuditLog(**fields)
