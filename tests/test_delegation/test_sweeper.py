"""
Tests for the expiration sweeper

The sweep promotes every overdue non-terminal delegation to EXPIRED with one
audit row each, leaves terminal rows alone, and survives per-row failures.
"""

from datetime import timedelta

import pytest

from tenant_delegation.delegation.models import AuditAction, DelegationStatus
from tenant_delegation.delegation.notifications import NotificationEvent
from tenant_delegation.delegation.sweeper import ExpirationSweeper, SweepResult
from tenant_delegation.kernel.policy import DelegationPolicy

from tests.helpers import NOW, TENANT_A, TENANT_B, audit_actions, make_delegation

PAST = {"requested_at": NOW - timedelta(days=3), "created_at": NOW - timedelta(days=3)}


def _seed(repository, *delegations) -> None:
    for delegation in delegations:
        with repository.unit_of_work(delegation.tenant_id) as uow:
            uow.add(delegation)


@pytest.fixture
def overdue_fixture(repository) -> None:
    _seed(
        repository,
        make_delegation(delegation_id="pending", expires_at=NOW - timedelta(hours=1), **PAST),
        make_delegation(
            delegation_id="approved",
            status=DelegationStatus.APPROVED,
            expires_at=NOW - timedelta(hours=2),
            **PAST,
        ),
        make_delegation(
            delegation_id="active",
            tenant_id=TENANT_B,
            delegate_id="erin",
            status=DelegationStatus.ACTIVE,
            expires_at=NOW - timedelta(hours=3),
            **PAST,
        ),
        make_delegation(
            delegation_id="rejected",
            status=DelegationStatus.REJECTED,
            expires_at=NOW - timedelta(hours=4),
            **PAST,
        ),
        make_delegation(
            delegation_id="revoked",
            status=DelegationStatus.REVOKED,
            expires_at=NOW - timedelta(hours=5),
            **PAST,
        ),
        make_delegation(delegation_id="future", status=DelegationStatus.ACTIVE),
    )


def test_sweep_expires_overdue_non_terminal(sweeper, repository, overdue_fixture) -> None:
    result = sweeper.sweep_expired()

    assert sorted(result.expired_ids) == ["active", "approved", "pending"]
    assert result.expired_count == 3
    assert not result.has_failures()

    for delegation_id, tenant_id in [("pending", TENANT_A), ("approved", TENANT_A), ("active", TENANT_B)]:
        stored = repository.get(delegation_id, tenant_id)
        assert stored.status == DelegationStatus.EXPIRED
        assert stored.version == 2
        logs = repository.list_audit_logs(delegation_id, tenant_id)
        assert audit_actions(logs) == [AuditAction.EXPIRED]
        assert logs[0].details == "Delegation expired automatically"
        assert logs[0].user_id == stored.delegator_id


def test_sweep_leaves_terminal_and_future_rows(sweeper, repository, overdue_fixture) -> None:
    sweeper.sweep_expired()

    assert repository.get("rejected", TENANT_A).status == DelegationStatus.REJECTED
    assert repository.get("revoked", TENANT_A).status == DelegationStatus.REVOKED
    assert repository.get("future", TENANT_A).status == DelegationStatus.ACTIVE
    assert repository.list_audit_logs("rejected", TENANT_A) == []
    assert repository.count_audit_logs() == 3


def test_second_sweep_is_a_no_op(sweeper, repository, overdue_fixture) -> None:
    sweeper.sweep_expired()
    result = sweeper.sweep_expired()

    assert result.expired_ids == []
    assert repository.count_audit_logs() == 3


def test_sweep_queues_expired_notifications(sweeper, outbox, overdue_fixture) -> None:
    sweeper.sweep_expired()

    assert {n.event for n in outbox.pending} == {NotificationEvent.EXPIRED}
    assert sorted(n.delegation.delegation_id for n in outbox.pending) == [
        "active",
        "approved",
        "pending",
    ]


def test_sweep_can_skip_notifications(repository, outbox, test_time, overdue_fixture) -> None:
    sweeper = ExpirationSweeper(
        repository=repository,
        notifier=outbox,
        time_provider=test_time,
        policy=DelegationPolicy(notify_on_expiry=False),
    )
    assert sweeper.sweep_expired().expired_count == 3
    assert outbox.pending == []


def test_one_pass_pages_through_every_batch(repository, test_time, overdue_fixture) -> None:
    sweeper = ExpirationSweeper(
        repository=repository,
        time_provider=test_time,
        policy=DelegationPolicy(sweep_batch_size=2),
    )

    first = sweeper.sweep_expired()
    second = sweeper.sweep_expired()

    # Oldest expiry first, across batch boundaries
    assert first.expired_ids == ["active", "approved", "pending"]
    assert second.expired_ids == []


@pytest.mark.parametrize("repo_fixture", ["repository", "sqlite_repository"])
def test_more_overdue_rows_than_one_batch(request, repo_fixture, test_time) -> None:
    repo = request.getfixturevalue(repo_fixture)
    _seed(
        repo,
        *(
            make_delegation(
                delegation_id=f"lapsed-{i:02d}",
                # Pairs share an expiry so the pages split ties
                expires_at=NOW - timedelta(hours=10 - i // 2),
                **PAST,
            )
            for i in range(7)
        ),
    )
    sweeper = ExpirationSweeper(
        repository=repo,
        time_provider=test_time,
        policy=DelegationPolicy(sweep_batch_size=3),
    )

    result = sweeper.sweep_expired()

    assert result.expired_ids == [f"lapsed-{i:02d}" for i in range(7)]
    assert repo.find_overdue(NOW) == []


def test_failing_rows_at_the_head_do_not_starve_later_rows(
    repository, test_time, overdue_fixture
) -> None:
    # "active" has the oldest expiry, so it leads every batch it is in
    sweeper = ExpirationSweeper(
        repository=FlakyUnitOfWorkRepository(repository, "active"),
        time_provider=test_time,
        policy=DelegationPolicy(sweep_batch_size=1),
    )

    first = sweeper.sweep_expired()
    second = sweeper.sweep_expired()

    assert first.failed_ids == ["active"]
    assert first.expired_ids == ["approved", "pending"]
    assert second.failed_ids == ["active"]
    assert second.expired_ids == []
    assert repository.get("pending", TENANT_A).status == DelegationStatus.EXPIRED
    assert repository.get("active", TENANT_B).status == DelegationStatus.ACTIVE


def test_sweep_uses_explicit_now(sweeper, repository, overdue_fixture) -> None:
    result = sweeper.sweep_expired(now=NOW + timedelta(days=8))

    assert "future" in result.expired_ids
    assert result.swept_at == NOW + timedelta(days=8)


class FlakyUnitOfWorkRepository:
    """Wraps a repository and fails the unit of work for one delegation"""

    def __init__(self, inner, failing_id: str) -> None:
        self.inner = inner
        self.failing_id = failing_id

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def unit_of_work(self, tenant_id: str):
        inner_uow = self.inner.unit_of_work(tenant_id)
        failing_id = self.failing_id

        class _Guard:
            def __enter__(self_inner):
                self_inner.uow = inner_uow.__enter__()
                return self_inner

            def __exit__(self_inner, *exc_info):
                return inner_uow.__exit__(*exc_info)

            def update(self_inner, delegation, expected_version):
                if delegation.delegation_id == failing_id:
                    raise RuntimeError("disk full")
                return self_inner.uow.update(delegation, expected_version)

            def append_audit_log(self_inner, entry):
                return self_inner.uow.append_audit_log(entry)

        return _Guard()


def test_one_failing_row_does_not_stop_the_sweep(repository, test_time, overdue_fixture) -> None:
    sweeper = ExpirationSweeper(
        repository=FlakyUnitOfWorkRepository(repository, "approved"),
        time_provider=test_time,
    )

    result = sweeper.sweep_expired()

    assert result.failed_ids == ["approved"]
    assert sorted(result.expired_ids) == ["active", "pending"]
    assert result.has_failures()
    assert "Failed: 1" in result.summary()
    assert repository.get("approved", TENANT_A).status == DelegationStatus.APPROVED
    assert repository.list_audit_logs("approved", TENANT_A) == []


def test_stale_row_revoked_meanwhile_is_skipped(repository, test_time) -> None:
    """A row revoked after the batch was loaded is not expired over the revocation"""
    _seed(
        repository,
        make_delegation(
            delegation_id="raced",
            status=DelegationStatus.ACTIVE,
            expires_at=NOW - timedelta(hours=1),
            **PAST,
        ),
    )
    stale = repository.get("raced", TENANT_A)
    with repository.unit_of_work(TENANT_A) as uow:
        uow.update(stale.model_copy(update={"status": DelegationStatus.REVOKED}), expected_version=1)

    class StaleBatchRepository:
        def __init__(self, inner) -> None:
            self.inner = inner

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def find_overdue(self, now, limit=None, after=None):
            return [stale] if after is None else []

    sweeper = ExpirationSweeper(repository=StaleBatchRepository(repository), time_provider=test_time)
    result = sweeper.sweep_expired()

    assert result.expired_ids == []
    assert result.failed_ids == []
    assert repository.get("raced", TENANT_A).status == DelegationStatus.REVOKED


def test_sweep_result_summary() -> None:
    result = SweepResult(swept_at=NOW, expired_ids=["a", "b"])
    assert result.summary() == f"Sweep at {NOW.isoformat()} | Expired: 2"
