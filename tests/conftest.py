"""
Pytest configuration and shared fixtures

Every fixture builds fresh state: an in-memory directory with two tenants
that deliberately reuse a user id, a small permission catalog, a repository,
an outbox, and a service wired to a frozen clock.

Fun fact: The name "conftest" comes from pytest's configuration testing
framework. Files named conftest.py are automatically discovered and their
fixtures are available to all tests in the same directory and subdirectories!
"""

from pathlib import Path

import pytest

from tenant_delegation.delegation.directory import (
    InMemoryPermissionCatalog,
    InMemoryUserDirectory,
)
from tenant_delegation.delegation.models import Permission, User
from tenant_delegation.delegation.notifications import NotificationOutbox
from tenant_delegation.delegation.repository import InMemoryDelegationRepository
from tenant_delegation.delegation.service import DelegationService
from tenant_delegation.delegation.sqlite_repository import SQLiteDelegationRepository
from tenant_delegation.delegation.sweeper import ExpirationSweeper
from tenant_delegation.kernel.ids import SequentialIdFactory
from tenant_delegation.kernel.policy import DelegationPolicy
from tenant_delegation.kernel.time import TestTimeProvider

from tests.helpers import NOW, TENANT_A, TENANT_B


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    """Provide a database path inside pytest's per-test temp directory"""
    return tmp_path / "delegations.db"


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-01-15 12:00:00 UTC (a Wednesday in the middle of the
    month, so "this month" statistics have room on both sides)
    """
    return TestTimeProvider(NOW)


@pytest.fixture
def policy() -> DelegationPolicy:
    return DelegationPolicy()


@pytest.fixture
def users() -> InMemoryUserDirectory:
    """
    Two tenants; "alice" exists in both so cross-tenant lookups are meaningful
    """
    return InMemoryUserDirectory(
        [
            User(user_id="alice", tenant_id=TENANT_A, email="alice@a.test", first_name="Alice", last_name="Archer"),
            User(user_id="bob", tenant_id=TENANT_A, email="bob@a.test", first_name="Bob", last_name="Baker"),
            User(user_id="carol", tenant_id=TENANT_A, email="carol@a.test", first_name="Carol", last_name="Cook"),
            User(user_id="dave", tenant_id=TENANT_A, email="dave@a.test"),
            User(user_id="alice", tenant_id=TENANT_B, email="alice@b.test", first_name="Alice", last_name="Other"),
            User(user_id="erin", tenant_id=TENANT_B, email="erin@b.test", first_name="Erin", last_name="Evans"),
        ]
    )


@pytest.fixture
def permissions() -> InMemoryPermissionCatalog:
    return InMemoryPermissionCatalog(
        [
            Permission(permission_id="perm-read", name="Read invoices", resource="invoices", action="read"),
            Permission(permission_id="perm-write", name="Write invoices", resource="invoices", action="write"),
            Permission(permission_id="perm-approve", name="Approve invoices", resource="invoices", action="approve"),
        ]
    )


@pytest.fixture
def repository() -> InMemoryDelegationRepository:
    return InMemoryDelegationRepository()


@pytest.fixture
def sqlite_repository(temp_db: Path) -> SQLiteDelegationRepository:
    return SQLiteDelegationRepository(temp_db)


@pytest.fixture
def outbox(test_time: TestTimeProvider) -> NotificationOutbox:
    return NotificationOutbox(clock=test_time.now)


@pytest.fixture
def id_factory() -> SequentialIdFactory:
    return SequentialIdFactory("id")


@pytest.fixture
def service(
    repository: InMemoryDelegationRepository,
    users: InMemoryUserDirectory,
    permissions: InMemoryPermissionCatalog,
    outbox: NotificationOutbox,
    test_time: TestTimeProvider,
    policy: DelegationPolicy,
    id_factory: SequentialIdFactory,
) -> DelegationService:
    return DelegationService(
        repository=repository,
        users=users,
        permissions=permissions,
        notifier=outbox,
        time_provider=test_time,
        policy=policy,
        id_factory=id_factory,
    )


@pytest.fixture
def sweeper(
    repository: InMemoryDelegationRepository,
    outbox: NotificationOutbox,
    test_time: TestTimeProvider,
    policy: DelegationPolicy,
    id_factory: SequentialIdFactory,
) -> ExpirationSweeper:
    return ExpirationSweeper(
        repository=repository,
        notifier=outbox,
        time_provider=test_time,
        policy=policy,
        id_factory=id_factory,
    )
