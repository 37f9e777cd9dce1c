"""
Delegation Service - orchestrates the delegation lifecycle

Each transition follows the same shape:
1. Load the delegation scoped to the tenant (not found otherwise)
2. Validate state, then actor (invariants.py)
3. Write the new row with a version compare-and-swap plus one audit entry,
   inside a single unit of work
4. After commit, hand a notification to the outbox (best-effort)

Fun fact: The service should be "almost boring" - the interesting rules live
in invariants (pure and testable) and the repository (atomic and isolated).
"""

from datetime import datetime
from typing import Any

from tenant_delegation.delegation.commands import (
    ActivateDelegation,
    ApproveDelegation,
    CreateDelegation,
    DelegationQuery,
    RejectDelegation,
    RevokeDelegation,
)
from tenant_delegation.delegation.directory import PermissionCatalog, UserDirectory
from tenant_delegation.delegation.invariants import (
    initial_status,
    validate_activation,
    validate_designated_approver,
    validate_expiry_in_future,
    validate_pending,
    validate_permissions_resolved,
    validate_revocation,
)
from tenant_delegation.delegation.models import (
    AuditAction,
    Delegation,
    DelegationAuditLog,
    DelegationStatus,
    RequestMetadata,
)
from tenant_delegation.delegation.notifications import (
    NotificationEvent,
    NotificationSender,
)
from tenant_delegation.delegation.repository import DelegationRepository
from tenant_delegation.delegation.views import (
    AuditLogView,
    DelegationPage,
    DelegationStats,
    DelegationView,
    build_audit_log_view,
    build_delegation_view,
    build_page,
    compute_stats,
)
from tenant_delegation.kernel.errors import (
    ConcurrentModification,
    DelegationNotFound,
    UserNotFound,
)
from tenant_delegation.kernel.ids import IdFactory, default_id_factory
from tenant_delegation.kernel.logging import LogOperation, get_logger
from tenant_delegation.kernel.metrics import (
    concurrent_modifications_total,
    delegation_checks_total,
    notifications_total,
    track_operation_duration,
)
from tenant_delegation.kernel.policy import DelegationPolicy
from tenant_delegation.kernel.time import TimeProvider, default_time_provider

logger = get_logger(__name__)


class DelegationService:
    """
    Lifecycle operations and tenant-scoped reads over delegations

    All collaborators are injected; nothing here holds ambient tenant state.
    """

    def __init__(
        self,
        repository: DelegationRepository,
        users: UserDirectory,
        permissions: PermissionCatalog,
        notifier: NotificationSender | None = None,
        time_provider: TimeProvider | None = None,
        policy: DelegationPolicy | None = None,
        id_factory: IdFactory | None = None,
    ) -> None:
        """
        Initialize service with dependencies

        Args:
            repository: Tenant-scoped delegation storage
            users: Directory used to validate participants
            permissions: Catalog used to validate requested permissions
            notifier: Notification hook (None disables notifications)
            time_provider: Clock for every expiry decision (injectable for testing)
            policy: Paging and notification parameters
            id_factory: Generator for delegation and audit ids
        """
        self.repository = repository
        self.users = users
        self.permissions = permissions
        self.notifier = notifier
        self.time_provider = time_provider or default_time_provider
        self.policy = policy or DelegationPolicy()
        self.id_factory = id_factory or default_id_factory

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @track_operation_duration("create")
    def create_delegation(
        self,
        command: CreateDelegation,
        delegator_id: str,
        tenant_id: str,
        request_metadata: RequestMetadata | None = None,
    ) -> DelegationView:
        """
        Request a new delegation on behalf of delegator_id

        Validation runs in a fixed order: delegate, delegator, approver,
        permissions, expiry. Nothing is written unless every check passes.

        Raises:
            UserNotFound: If a participant is not a member of the tenant
            PermissionsNotFound: If any requested permission id does not resolve
            ExpiryNotInFuture: If expires_at is not after now
        """
        with LogOperation(
            logger,
            "create_delegation",
            tenant_id=tenant_id,
            delegator_id=delegator_id,
            delegate_id=command.delegate_id,
            delegation_type=command.delegation_type.value,
            is_emergency=command.is_emergency,
        ):
            self._require_user("delegate", command.delegate_id, tenant_id)
            self._require_user("delegator", delegator_id, tenant_id)
            if command.approver_id:
                self._require_user("approver", command.approver_id, tenant_id)

            if command.permission_ids:
                resolved = self.permissions.resolve_permissions(command.permission_ids)
                validate_permissions_resolved(command.permission_ids, resolved)

            now = self.time_provider.now()
            validate_expiry_in_future(command.expires_at, now)

            delegation = Delegation(
                delegation_id=self.id_factory.generate(),
                tenant_id=tenant_id,
                delegator_id=delegator_id,
                delegate_id=command.delegate_id,
                approver_id=command.approver_id,
                delegation_type=command.delegation_type,
                permission_ids=command.permission_ids,
                title=command.title,
                description=command.description,
                status=initial_status(command.requires_approval, command.approver_id),
                requested_at=now,
                expires_at=command.expires_at,
                requires_approval=command.requires_approval,
                is_emergency=command.is_emergency,
                is_recurring=command.is_recurring,
                recurrence_pattern=command.recurrence_pattern,
                metadata=command.metadata,
                created_at=now,
                updated_at=now,
            )

            with self.repository.unit_of_work(tenant_id) as uow:
                uow.add(delegation)
                uow.append_audit_log(
                    self._audit_entry(
                        delegation,
                        delegator_id,
                        AuditAction.CREATED,
                        "Delegation request created",
                        now,
                        request_metadata,
                    )
                )

            logger.info(
                "Delegation created",
                delegation_id=delegation.delegation_id,
                tenant_id=tenant_id,
                status=delegation.status.value,
            )
            self._notify(delegation, NotificationEvent.CREATED)
            return self._view(delegation, now)

    @track_operation_duration("approve")
    def approve_delegation(
        self,
        delegation_id: str,
        actor_id: str,
        tenant_id: str,
        command: ApproveDelegation | None = None,
        request_metadata: RequestMetadata | None = None,
    ) -> DelegationView:
        """
        Approve a pending delegation

        Raises:
            DelegationNotFound: If the delegation is not in the tenant
            InvalidTransition: If it is not (effectively) PENDING
            NotDesignatedApprover: If a fixed approver exists and is not actor_id
        """
        command = command or ApproveDelegation()
        with LogOperation(
            logger,
            "approve_delegation",
            tenant_id=tenant_id,
            delegation_id=delegation_id,
            actor_id=actor_id,
        ):
            now = self.time_provider.now()
            delegation = self._load(delegation_id, tenant_id)
            validate_pending(delegation, now, "approved")
            validate_designated_approver(delegation, actor_id, "approve")

            details = "Delegation approved"
            if command.approval_notes:
                details = f"{details}: {command.approval_notes}"

            updated = self._transition(
                delegation,
                {
                    "status": DelegationStatus.APPROVED,
                    "approved_at": now,
                    "approval_notes": command.approval_notes,
                },
                actor_id,
                AuditAction.APPROVED,
                details,
                now,
                request_metadata,
            )
            self._notify(updated, NotificationEvent.APPROVED)
            return self._view(updated, now)

    @track_operation_duration("reject")
    def reject_delegation(
        self,
        delegation_id: str,
        actor_id: str,
        tenant_id: str,
        command: RejectDelegation,
        request_metadata: RequestMetadata | None = None,
    ) -> DelegationView:
        """
        Reject a pending delegation with a mandatory reason

        Raises:
            DelegationNotFound: If the delegation is not in the tenant
            InvalidTransition: If it is not (effectively) PENDING
            NotDesignatedApprover: If a fixed approver exists and is not actor_id
        """
        with LogOperation(
            logger,
            "reject_delegation",
            tenant_id=tenant_id,
            delegation_id=delegation_id,
            actor_id=actor_id,
        ):
            now = self.time_provider.now()
            delegation = self._load(delegation_id, tenant_id)
            validate_pending(delegation, now, "rejected")
            validate_designated_approver(delegation, actor_id, "reject")

            updated = self._transition(
                delegation,
                {
                    "status": DelegationStatus.REJECTED,
                    "rejected_at": now,
                    "rejection_reason": command.rejection_reason,
                },
                actor_id,
                AuditAction.REJECTED,
                f"Delegation rejected: {command.rejection_reason}",
                now,
                request_metadata,
            )
            self._notify(updated, NotificationEvent.REJECTED)
            return self._view(updated, now)

    @track_operation_duration("activate")
    def activate_delegation(
        self,
        delegation_id: str,
        actor_id: str,
        tenant_id: str,
        command: ActivateDelegation | None = None,
        request_metadata: RequestMetadata | None = None,
    ) -> DelegationView:
        """
        Put an approved delegation into effect (delegate only)

        Raises:
            DelegationNotFound: If the delegation is not in the tenant
            InvalidTransition: If it is not APPROVED or has expired
            NotDelegate: If actor_id is not the delegate
        """
        command = command or ActivateDelegation()
        with LogOperation(
            logger,
            "activate_delegation",
            tenant_id=tenant_id,
            delegation_id=delegation_id,
            actor_id=actor_id,
        ):
            now = self.time_provider.now()
            delegation = self._load(delegation_id, tenant_id)
            validate_activation(delegation, actor_id, now)

            audit_metadata = None
            if command.confirm_activation is not None:
                audit_metadata = {"confirm_activation": command.confirm_activation}

            updated = self._transition(
                delegation,
                {"status": DelegationStatus.ACTIVE, "activated_at": now},
                actor_id,
                AuditAction.ACTIVATED,
                "Delegation activated",
                now,
                request_metadata,
                audit_metadata=audit_metadata,
            )
            self._notify(updated, NotificationEvent.ACTIVATED)
            return self._view(updated, now)

    @track_operation_duration("revoke")
    def revoke_delegation(
        self,
        delegation_id: str,
        actor_id: str,
        tenant_id: str,
        command: RevokeDelegation,
        request_metadata: RequestMetadata | None = None,
    ) -> DelegationView:
        """
        Terminate an approved or active delegation early

        Raises:
            DelegationNotFound: If the delegation is not in the tenant
            InvalidTransition: If it is not APPROVED/ACTIVE or has expired
            NotStakeholder: If actor_id is not delegator, delegate or approver
        """
        with LogOperation(
            logger,
            "revoke_delegation",
            tenant_id=tenant_id,
            delegation_id=delegation_id,
            actor_id=actor_id,
        ):
            now = self.time_provider.now()
            delegation = self._load(delegation_id, tenant_id)
            validate_revocation(delegation, actor_id, now)

            updated = self._transition(
                delegation,
                {
                    "status": DelegationStatus.REVOKED,
                    "revoked_at": now,
                    "revocation_reason": command.revocation_reason,
                },
                actor_id,
                AuditAction.REVOKED,
                f"Delegation revoked: {command.revocation_reason}",
                now,
                request_metadata,
            )
            self._notify(updated, NotificationEvent.REVOKED)
            return self._view(updated, now)

    # ------------------------------------------------------------------
    # Authorization read path
    # ------------------------------------------------------------------

    def has_active_delegation(
        self, user_id: str, tenant_id: str, permission_ids: list[str]
    ) -> bool:
        """
        Check if user_id currently holds any of permission_ids through a delegation

        Only the intersection of granted and requested permission ids counts,
        for every delegation type. An empty request is never satisfied.
        """
        if not permission_ids:
            delegation_checks_total.labels(result="denied").inc()
            return False

        now = self.time_provider.now()
        granted = any(
            d.is_active(now) and d.grants_any(permission_ids)
            for d in self.repository.find_active_for_delegate(user_id, tenant_id, now)
        )
        delegation_checks_total.labels(result="granted" if granted else "denied").inc()
        logger.debug(
            "Delegation check",
            user_id=user_id,
            tenant_id=tenant_id,
            permission_count=len(permission_ids),
            granted=granted,
        )
        return granted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_delegation(self, delegation_id: str, tenant_id: str) -> DelegationView:
        """
        Raises:
            DelegationNotFound: If the delegation is not in the tenant
        """
        now = self.time_provider.now()
        return self._view(self._load(delegation_id, tenant_id), now)

    @track_operation_duration("query")
    def get_delegations(self, query: DelegationQuery, tenant_id: str) -> DelegationPage:
        """Filtered, paginated listing (newest first); oversize limits are clamped"""
        now = self.time_provider.now()
        limit = self.policy.clamp_limit(query.limit)
        rows, total = self.repository.query(tenant_id, query, now, limit)
        return build_page([self._view(d, now) for d in rows], total, query.page, limit)

    def get_active_delegations_for_user(
        self, user_id: str, tenant_id: str
    ) -> list[DelegationView]:
        now = self.time_provider.now()
        return [
            self._view(d, now)
            for d in self.repository.find_active_for_delegate(user_id, tenant_id, now)
        ]

    def get_pending_approvals_for_user(
        self, user_id: str, tenant_id: str
    ) -> list[DelegationView]:
        """Unexpired PENDING delegations naming user_id as approver"""
        now = self.time_provider.now()
        return [
            self._view(d, now)
            for d in self.repository.find_pending_for_approver(user_id, tenant_id, now)
        ]

    def get_delegations_by_delegator(
        self, user_id: str, tenant_id: str
    ) -> list[DelegationView]:
        now = self.time_provider.now()
        return [
            self._view(d, now)
            for d in self.repository.find_by_delegator(user_id, tenant_id)
        ]

    def get_delegations_by_delegate(
        self, user_id: str, tenant_id: str
    ) -> list[DelegationView]:
        now = self.time_provider.now()
        return [
            self._view(d, now)
            for d in self.repository.find_by_delegate(user_id, tenant_id)
        ]

    def get_delegation_stats(self, tenant_id: str) -> DelegationStats:
        now = self.time_provider.now()
        return compute_stats(self.repository.list_all(tenant_id), now)

    def get_delegation_audit_logs(
        self, delegation_id: str, tenant_id: str
    ) -> list[AuditLogView]:
        """
        Audit trail of one delegation, newest first, actors resolved

        Raises:
            DelegationNotFound: If the delegation is not in the tenant
        """
        self._load(delegation_id, tenant_id)
        return [
            build_audit_log_view(entry, self.users)
            for entry in self.repository.list_audit_logs(delegation_id, tenant_id)
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_user(self, role: str, user_id: str, tenant_id: str) -> None:
        if self.users.find_user(user_id, tenant_id) is None:
            raise UserNotFound(role, user_id, tenant_id)

    def _load(self, delegation_id: str, tenant_id: str) -> Delegation:
        delegation = self.repository.get(delegation_id, tenant_id)
        if delegation is None:
            raise DelegationNotFound(delegation_id)
        return delegation

    def _audit_entry(
        self,
        delegation: Delegation,
        actor_id: str,
        action: AuditAction,
        details: str,
        now: datetime,
        request_metadata: RequestMetadata | None,
        metadata: dict[str, Any] | None = None,
    ) -> DelegationAuditLog:
        request_metadata = request_metadata or RequestMetadata()
        return DelegationAuditLog(
            audit_log_id=self.id_factory.generate(),
            delegation_id=delegation.delegation_id,
            tenant_id=delegation.tenant_id,
            user_id=actor_id,
            action=action,
            details=details,
            metadata=metadata,
            ip_address=request_metadata.ip_address,
            user_agent=request_metadata.user_agent,
            created_at=now,
        )

    def _transition(
        self,
        delegation: Delegation,
        changes: dict[str, Any],
        actor_id: str,
        action: AuditAction,
        details: str,
        now: datetime,
        request_metadata: RequestMetadata | None,
        audit_metadata: dict[str, Any] | None = None,
    ) -> Delegation:
        """Persist changes with a version check, together with one audit entry"""
        changed = delegation.model_copy(update={**changes, "updated_at": now})
        try:
            with self.repository.unit_of_work(delegation.tenant_id) as uow:
                updated = uow.update(changed, expected_version=delegation.version)
                uow.append_audit_log(
                    self._audit_entry(
                        delegation,
                        actor_id,
                        action,
                        details,
                        now,
                        request_metadata,
                        audit_metadata,
                    )
                )
        except ConcurrentModification:
            concurrent_modifications_total.inc()
            logger.warning(
                "Concurrent modification detected",
                delegation_id=delegation.delegation_id,
                tenant_id=delegation.tenant_id,
                action=action.value,
                expected_version=delegation.version,
            )
            raise

        logger.info(
            "Delegation transitioned",
            delegation_id=updated.delegation_id,
            tenant_id=updated.tenant_id,
            from_status=delegation.status.value,
            to_status=updated.status.value,
            version=updated.version,
        )
        return updated

    def _notify(self, delegation: Delegation, event: NotificationEvent) -> None:
        """Best-effort: a notifier failure is logged, never raised"""
        if self.notifier is None:
            return
        try:
            self.notifier.notify(delegation, event)
        except Exception as e:
            notifications_total.labels(event=event.value, status="failed").inc()
            logger.error(
                "Failed to send delegation notification",
                notification_event=event.value,
                delegation_id=delegation.delegation_id,
                tenant_id=delegation.tenant_id,
                error=str(e),
            )

    def _view(self, delegation: Delegation, now: datetime) -> DelegationView:
        return build_delegation_view(delegation, now, self.users, self.permissions)
