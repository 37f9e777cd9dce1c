"""
Notification Outbox - fire-and-forget delivery of lifecycle notifications

The service calls notify() after a transition has committed. notify() only
enqueues; handlers run later in dispatch_pending(), and a failing handler is
logged and counted without affecting other handlers or the transition.

Fun fact: This is the "transactional outbox" pattern minus the transaction -
the state change never waits on an email server.
"""

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol

from pydantic import BaseModel

from tenant_delegation.delegation.models import Delegation
from tenant_delegation.kernel.logging import get_logger
from tenant_delegation.kernel.metrics import notifications_total

logger = get_logger(__name__)


class NotificationEvent(str, Enum):
    """Which lifecycle transition a notification announces"""

    CREATED = "created"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVATED = "activated"
    REVOKED = "revoked"
    EXPIRED = "expired"


class DelegationNotification(BaseModel):
    """One queued notification (a snapshot of the delegation after the transition)"""

    event: NotificationEvent
    delegation: Delegation
    queued_at: datetime | None = None

    @property
    def recipients(self) -> list[str]:
        """Participants who should hear about the transition"""
        recipients = [self.delegation.delegator_id, self.delegation.delegate_id]
        if self.delegation.approver_id:
            recipients.append(self.delegation.approver_id)
        return list(dict.fromkeys(recipients))


NotificationHandler = Callable[[DelegationNotification], None]


class NotificationSender(Protocol):
    """Hook the service calls once per committed transition"""

    def notify(self, delegation: Delegation, event: NotificationEvent) -> None:
        ...


class NotificationOutbox:
    """
    In-process outbox

    Handlers (email, chat, webhooks) subscribe; the host drains the queue with
    dispatch_pending() on its own schedule (per request, per sweep, or in a
    background worker).
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._queue: deque[DelegationNotification] = deque()
        self._handlers: list[NotificationHandler] = []
        self._clock = clock

    def subscribe(self, handler: NotificationHandler) -> None:
        """Register a delivery handler (called in registration order)"""
        self._handlers.append(handler)
        logger.debug("Notification handler registered", total_handlers=len(self._handlers))

    def notify(self, delegation: Delegation, event: NotificationEvent) -> None:
        """Enqueue a notification; never blocks and never raises on delivery"""
        notification = DelegationNotification(
            event=event,
            delegation=delegation,
            queued_at=self._clock() if self._clock else None,
        )
        self._queue.append(notification)
        notifications_total.labels(event=event.value, status="queued").inc()
        logger.debug(
            "Notification queued",
            notification_event=event.value,
            delegation_id=delegation.delegation_id,
            tenant_id=delegation.tenant_id,
        )

    @property
    def pending(self) -> list[DelegationNotification]:
        return list(self._queue)

    def dispatch_pending(self) -> int:
        """
        Deliver every queued notification to every handler

        Returns:
            Number of notifications drained from the queue
        """
        drained = 0
        while self._queue:
            notification = self._queue.popleft()
            drained += 1
            for handler in self._handlers:
                try:
                    handler(notification)
                    notifications_total.labels(
                        event=notification.event.value, status="delivered"
                    ).inc()
                except Exception as e:
                    notifications_total.labels(
                        event=notification.event.value, status="failed"
                    ).inc()
                    logger.error(
                        "Notification handler failed",
                        notification_event=notification.event.value,
                        delegation_id=notification.delegation.delegation_id,
                        tenant_id=notification.delegation.tenant_id,
                        error=str(e),
                        exc_info=True,
                    )
                    # Continue with other handlers
        return drained
