"""
ExpirationSweeper - periodic promotion of overdue delegations to EXPIRED

The host calls sweep_expired() on its own schedule (hourly by default, see
DelegationPolicy.sweep_interval_hours). Each overdue delegation is expired in
its own unit of work, so one bad row cannot stop the rest of the pass.
Overdue rows are read in keyset pages of DelegationPolicy.sweep_batch_size
until none remain; a row that fails is skipped for the rest of the pass and
retried by the next one.

Fun fact: Lazy expiry already makes overdue grants read as EXPIRED; the sweep
only makes that fact durable and gives it an audit entry.
"""

import time
from datetime import datetime

from tenant_delegation.delegation.invariants import is_due_for_expiry
from tenant_delegation.delegation.models import (
    AuditAction,
    Delegation,
    DelegationAuditLog,
    DelegationStatus,
)
from tenant_delegation.delegation.notifications import (
    NotificationEvent,
    NotificationSender,
)
from tenant_delegation.delegation.repository import DelegationRepository
from tenant_delegation.kernel.errors import ConcurrentModification
from tenant_delegation.kernel.ids import IdFactory, default_id_factory
from tenant_delegation.kernel.logging import LogOperation, get_logger
from tenant_delegation.kernel.metrics import (
    sweep_duration_seconds,
    sweep_expired_total,
    sweep_failures_total,
)
from tenant_delegation.kernel.policy import DelegationPolicy
from tenant_delegation.kernel.time import TimeProvider, default_time_provider

logger = get_logger(__name__)


class SweepResult:
    """
    Result of one sweep pass

    Contains the ids promoted to EXPIRED and the ids that failed (and will be
    retried by the next pass).
    """

    def __init__(
        self,
        swept_at: datetime,
        expired_ids: list[str] | None = None,
        failed_ids: list[str] | None = None,
    ):
        self.swept_at = swept_at
        self.expired_ids = expired_ids or []
        self.failed_ids = failed_ids or []

    @property
    def expired_count(self) -> int:
        return len(self.expired_ids)

    def has_failures(self) -> bool:
        return bool(self.failed_ids)

    def summary(self) -> str:
        """Human-readable summary of the pass"""
        parts = [
            f"Sweep at {self.swept_at.isoformat()}",
            f"Expired: {len(self.expired_ids)}",
        ]
        if self.failed_ids:
            parts.append(f"Failed: {len(self.failed_ids)}")
        return " | ".join(parts)


class ExpirationSweeper:
    """
    Cross-tenant reaper for overdue delegations

    This is the only component that reads across tenants; every write it makes
    still goes through a unit of work scoped to the delegation's own tenant.
    """

    def __init__(
        self,
        repository: DelegationRepository,
        notifier: NotificationSender | None = None,
        time_provider: TimeProvider | None = None,
        policy: DelegationPolicy | None = None,
        id_factory: IdFactory | None = None,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.time_provider = time_provider or default_time_provider
        self.policy = policy or DelegationPolicy()
        self.id_factory = id_factory or default_id_factory

    def sweep_expired(self, now: datetime | None = None) -> SweepResult:
        """
        Expire every non-terminal delegation with expires_at <= now

        Args:
            now: Evaluation instant (defaults to the injected clock)

        Returns:
            SweepResult listing promoted and failed delegation ids
        """
        now = now or self.time_provider.now()
        result = SweepResult(swept_at=now)
        start = time.perf_counter()

        with LogOperation(logger, "sweep_expired", swept_at=now.isoformat()):
            cursor: tuple[datetime, str] | None = None
            while True:
                batch = self.repository.find_overdue(
                    now, limit=self.policy.sweep_batch_size, after=cursor
                )
                if not batch:
                    break
                logger.debug("Loaded overdue delegations", overdue_count=len(batch))
                for delegation in batch:
                    self._sweep_one(delegation, now, result)
                # Failed rows stay non-terminal; the cursor moves past them
                last = batch[-1]
                cursor = (last.expires_at, last.delegation_id)

            logger.info(
                "Sweep finished",
                expired_count=len(result.expired_ids),
                failed_count=len(result.failed_ids),
            )

        sweep_duration_seconds.observe(time.perf_counter() - start)
        return result

    def _sweep_one(self, delegation: Delegation, now: datetime, result: SweepResult) -> None:
        try:
            expired = self._expire(delegation, now)
        except Exception as e:
            result.failed_ids.append(delegation.delegation_id)
            sweep_failures_total.inc()
            logger.error(
                "Failed to expire delegation",
                delegation_id=delegation.delegation_id,
                tenant_id=delegation.tenant_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return

        if expired is None:
            return
        result.expired_ids.append(expired.delegation_id)
        sweep_expired_total.inc()
        if self.policy.notify_on_expiry:
            self._notify(expired)

    def _expire(self, delegation: Delegation, now: datetime) -> Delegation | None:
        try:
            return self._expire_once(delegation, now)
        except ConcurrentModification:
            # Changed since the batch was loaded (revoked, or expired by another sweep)
            current = self.repository.get(delegation.delegation_id, delegation.tenant_id)
            if current is None or not is_due_for_expiry(current, now):
                return None
            return self._expire_once(current, now)

    def _expire_once(self, delegation: Delegation, now: datetime) -> Delegation | None:
        if not is_due_for_expiry(delegation, now):
            return None

        changed = delegation.model_copy(
            update={"status": DelegationStatus.EXPIRED, "updated_at": now}
        )
        with self.repository.unit_of_work(delegation.tenant_id) as uow:
            updated = uow.update(changed, expected_version=delegation.version)
            uow.append_audit_log(
                DelegationAuditLog(
                    audit_log_id=self.id_factory.generate(),
                    delegation_id=delegation.delegation_id,
                    tenant_id=delegation.tenant_id,
                    user_id=delegation.delegator_id,
                    action=AuditAction.EXPIRED,
                    details="Delegation expired automatically",
                    created_at=now,
                )
            )
        return updated

    def _notify(self, delegation: Delegation) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(delegation, NotificationEvent.EXPIRED)
        except Exception as e:
            logger.error(
                "Failed to send expiry notification",
                delegation_id=delegation.delegation_id,
                error=str(e),
            )
