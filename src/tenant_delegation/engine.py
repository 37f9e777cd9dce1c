"""
DelegationEngine - Main façade class

This is the primary interface for embedding the delegation engine. It wires
SQLite storage, the user directory and permission catalog, the notification
outbox, the service and the sweeper behind a small keyword-argument API.

Example:
    >>> from tenant_delegation import DelegationEngine
    >>> engine = DelegationEngine("delegations.db")
    >>> engine.add_user("acme", "alice", "alice@acme.test")
    >>> engine.add_user("acme", "bob", "bob@acme.test")
    >>> engine.add_permission("invoices.approve", "Approve invoices")
    >>> d = engine.create_delegation(
    ...     "acme", "alice", "bob", "Cover during leave",
    ...     permission_ids=["invoices.approve"], ttl_hours=72,
    ... )
    >>> engine.activate(d.delegation_id, "bob", "acme")
    >>> engine.has_active_delegation("bob", "acme", ["invoices.approve"])
    True
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from tenant_delegation.delegation.commands import (
    ActivateDelegation,
    ApproveDelegation,
    CreateDelegation,
    DelegationQuery,
    RejectDelegation,
    RevokeDelegation,
)
from tenant_delegation.delegation.directory import SQLiteDirectory
from tenant_delegation.delegation.models import (
    DelegationType,
    Permission,
    RequestMetadata,
    User,
)
from tenant_delegation.delegation.notifications import (
    NotificationHandler,
    NotificationOutbox,
)
from tenant_delegation.delegation.service import DelegationService
from tenant_delegation.delegation.sqlite_repository import SQLiteDelegationRepository
from tenant_delegation.delegation.sweeper import ExpirationSweeper, SweepResult
from tenant_delegation.delegation.views import (
    AuditLogView,
    DelegationPage,
    DelegationStats,
    DelegationView,
)
from tenant_delegation.kernel.ids import IdFactory
from tenant_delegation.kernel.policy import DelegationPolicy
from tenant_delegation.kernel.time import RealTimeProvider, TimeProvider


class DelegationEngine:
    """
    Delegation engine façade

    Provides a unified API for:
    - Registering tenant members and catalog permissions
    - The delegation lifecycle (create, approve, reject, activate, revoke)
    - Authorization checks and tenant-scoped queries
    - The expiration sweep and notification dispatch
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        policy: DelegationPolicy | None = None,
        time_provider: TimeProvider | None = None,
        id_factory: IdFactory | None = None,
    ) -> None:
        """
        Initialize the engine

        Args:
            sqlite_path: Path to SQLite database (created if missing)
            policy: Engine policy (uses defaults if None)
            time_provider: Time provider (uses real time if None)
            id_factory: Id generator (UUIDv7-like if None)
        """
        self.sqlite_path = Path(sqlite_path)
        self.policy = policy or DelegationPolicy()
        self.time_provider = time_provider or RealTimeProvider()

        # Initialize infrastructure
        self.repository = SQLiteDelegationRepository(self.sqlite_path)
        self.directory = SQLiteDirectory(self.sqlite_path)
        self.outbox = NotificationOutbox(clock=self.time_provider.now)

        self.service = DelegationService(
            repository=self.repository,
            users=self.directory,
            permissions=self.directory,
            notifier=self.outbox,
            time_provider=self.time_provider,
            policy=self.policy,
            id_factory=id_factory,
        )
        self.sweeper = ExpirationSweeper(
            repository=self.repository,
            notifier=self.outbox,
            time_provider=self.time_provider,
            policy=self.policy,
            id_factory=id_factory,
        )

    # Directory operations

    def add_user(
        self,
        tenant_id: str,
        user_id: str,
        email: str,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        return self.directory.add_user(
            User(
                user_id=user_id,
                tenant_id=tenant_id,
                email=email,
                first_name=first_name,
                last_name=last_name,
            )
        )

    def add_permission(
        self,
        permission_id: str,
        name: str,
        resource: str = "",
        action: str = "",
        scope: str = "",
    ) -> Permission:
        return self.directory.add_permission(
            Permission(
                permission_id=permission_id,
                name=name,
                resource=resource,
                action=action,
                scope=scope,
            )
        )

    # Lifecycle operations

    def create_delegation(
        self,
        tenant_id: str,
        delegator_id: str,
        delegate_id: str,
        title: str,
        delegation_type: DelegationType = DelegationType.PERMISSION_BASED,
        permission_ids: list[str] | None = None,
        expires_at: datetime | None = None,
        ttl_hours: float | None = None,
        approver_id: str | None = None,
        requires_approval: bool = False,
        is_emergency: bool = False,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        request_metadata: RequestMetadata | None = None,
    ) -> DelegationView:
        """
        Request a delegation

        Exactly one of expires_at or ttl_hours must be given; ttl_hours is
        measured from the engine clock's now.
        """
        if (expires_at is None) == (ttl_hours is None):
            raise ValueError("Provide exactly one of expires_at or ttl_hours")
        if expires_at is None:
            expires_at = self.time_provider.now() + timedelta(hours=ttl_hours)

        command = CreateDelegation(
            delegate_id=delegate_id,
            title=title,
            description=description,
            delegation_type=delegation_type,
            expires_at=expires_at,
            permission_ids=permission_ids or [],
            requires_approval=requires_approval,
            approver_id=approver_id,
            is_emergency=is_emergency,
            metadata=metadata or {},
        )
        return self.service.create_delegation(
            command, delegator_id, tenant_id, request_metadata
        )

    def approve(
        self,
        delegation_id: str,
        actor_id: str,
        tenant_id: str,
        notes: str | None = None,
    ) -> DelegationView:
        return self.service.approve_delegation(
            delegation_id, actor_id, tenant_id, ApproveDelegation(approval_notes=notes)
        )

    def reject(
        self, delegation_id: str, actor_id: str, tenant_id: str, reason: str
    ) -> DelegationView:
        return self.service.reject_delegation(
            delegation_id, actor_id, tenant_id, RejectDelegation(rejection_reason=reason)
        )

    def activate(
        self,
        delegation_id: str,
        actor_id: str,
        tenant_id: str,
        confirm: bool | None = None,
    ) -> DelegationView:
        return self.service.activate_delegation(
            delegation_id,
            actor_id,
            tenant_id,
            ActivateDelegation(confirm_activation=confirm),
        )

    def revoke(
        self, delegation_id: str, actor_id: str, tenant_id: str, reason: str
    ) -> DelegationView:
        return self.service.revoke_delegation(
            delegation_id, actor_id, tenant_id, RevokeDelegation(revocation_reason=reason)
        )

    # Read operations

    def has_active_delegation(
        self, user_id: str, tenant_id: str, permission_ids: list[str]
    ) -> bool:
        return self.service.has_active_delegation(user_id, tenant_id, permission_ids)

    def get_delegation(self, delegation_id: str, tenant_id: str) -> DelegationView:
        return self.service.get_delegation(delegation_id, tenant_id)

    def list_delegations(self, tenant_id: str, **filters: Any) -> DelegationPage:
        """Filtered listing; keyword arguments are DelegationQuery fields"""
        return self.service.get_delegations(DelegationQuery(**filters), tenant_id)

    def stats(self, tenant_id: str) -> DelegationStats:
        return self.service.get_delegation_stats(tenant_id)

    def audit_log(self, delegation_id: str, tenant_id: str) -> list[AuditLogView]:
        return self.service.get_delegation_audit_logs(delegation_id, tenant_id)

    # Background operations

    def sweep(self) -> SweepResult:
        """
        Run one expiration sweep pass

        Returns:
            SweepResult with expired and failed delegation ids
        """
        return self.sweeper.sweep_expired()

    def subscribe(self, handler: NotificationHandler) -> None:
        """Register a notification delivery handler"""
        self.outbox.subscribe(handler)

    def dispatch_notifications(self) -> int:
        """Deliver queued notifications; returns how many were drained"""
        return self.outbox.dispatch_pending()

    def get_policy(self) -> DelegationPolicy:
        return self.policy
