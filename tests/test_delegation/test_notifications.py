"""
Tests for the notification outbox
"""

from tenant_delegation.delegation.notifications import (
    DelegationNotification,
    NotificationEvent,
    NotificationOutbox,
)

from tests.helpers import NOW, make_delegation


def test_notify_only_enqueues(outbox) -> None:
    delivered: list[DelegationNotification] = []
    outbox.subscribe(delivered.append)

    outbox.notify(make_delegation(), NotificationEvent.CREATED)

    assert delivered == []
    assert len(outbox.pending) == 1
    assert outbox.pending[0].queued_at == NOW


def test_dispatch_delivers_in_order_and_drains(outbox) -> None:
    delivered: list[tuple[NotificationEvent, str]] = []
    outbox.subscribe(lambda n: delivered.append((n.event, n.delegation.delegation_id)))

    outbox.notify(make_delegation(delegation_id="d1"), NotificationEvent.CREATED)
    outbox.notify(make_delegation(delegation_id="d2"), NotificationEvent.APPROVED)

    assert outbox.dispatch_pending() == 2
    assert delivered == [
        (NotificationEvent.CREATED, "d1"),
        (NotificationEvent.APPROVED, "d2"),
    ]
    assert outbox.pending == []
    assert outbox.dispatch_pending() == 0


def test_failing_handler_does_not_stop_others(outbox) -> None:
    delivered: list[NotificationEvent] = []

    def broken(notification: DelegationNotification) -> None:
        raise ConnectionError("mail relay unreachable")

    outbox.subscribe(broken)
    outbox.subscribe(lambda n: delivered.append(n.event))

    outbox.notify(make_delegation(), NotificationEvent.REVOKED)
    outbox.notify(make_delegation(), NotificationEvent.EXPIRED)

    assert outbox.dispatch_pending() == 2
    assert delivered == [NotificationEvent.REVOKED, NotificationEvent.EXPIRED]


def test_recipients_are_unique_participants() -> None:
    with_approver = DelegationNotification(
        event=NotificationEvent.APPROVED,
        delegation=make_delegation(approver_id="carol"),
    )
    self_approved = DelegationNotification(
        event=NotificationEvent.APPROVED,
        delegation=make_delegation(approver_id="alice"),
    )
    no_approver = DelegationNotification(
        event=NotificationEvent.CREATED,
        delegation=make_delegation(),
    )

    assert with_approver.recipients == ["alice", "bob", "carol"]
    assert self_approved.recipients == ["alice", "bob"]
    assert no_approver.recipients == ["alice", "bob"]


def test_outbox_without_clock_leaves_queued_at_empty() -> None:
    outbox = NotificationOutbox()
    outbox.notify(make_delegation(), NotificationEvent.CREATED)
    assert outbox.pending[0].queued_at is None
