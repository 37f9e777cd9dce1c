"""
Delegation Examples - walkthroughs of the delegation engine

This example demonstrates:
- Self-service grants that the delegate activates
- Approval-gated grants with a fixed approver
- Authorization checks against active grants
- Revocation and the audit trail
- Lazy expiry and the expiration sweep
- Tenant statistics
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

from tenant_delegation import DelegationEngine
from tenant_delegation.kernel.errors import ForbiddenError
from tenant_delegation.kernel.time import TestTimeProvider


def seed(engine: DelegationEngine) -> None:
    engine.add_user("acme", "alice", "alice@acme.test", "Alice", "Archer")
    engine.add_user("acme", "bob", "bob@acme.test", "Bob", "Baker")
    engine.add_user("acme", "carol", "carol@acme.test", "Carol", "Cook")
    engine.add_permission("invoices.read", "Read invoices", "invoices", "read")
    engine.add_permission("invoices.approve", "Approve invoices", "invoices", "approve")


def example_1_self_service_grant():
    """
    Example 1: Self-Service Grant

    Demonstrates:
    - A grant without an approver starts APPROVED
    - It grants nothing until the delegate activates it
    """
    print("\n=== Example 1: Self-Service Grant ===\n")

    with tempfile.TemporaryDirectory() as tmpdir:
        engine = DelegationEngine(Path(tmpdir) / "example1.db")
        seed(engine)

        grant = engine.create_delegation(
            "acme",
            "alice",
            "bob",
            "Invoice reading during audit",
            permission_ids=["invoices.read"],
            ttl_hours=72,
        )
        print(f"Created {grant.delegation_id}: {grant.status.value}")
        print(f"  Bob can read invoices? {engine.has_active_delegation('bob', 'acme', ['invoices.read'])}")

        engine.activate(grant.delegation_id, "bob", "acme", confirm=True)
        print("Bob activated the grant")
        print(f"  Bob can read invoices? {engine.has_active_delegation('bob', 'acme', ['invoices.read'])}")
        print(f"  Bob can approve invoices? {engine.has_active_delegation('bob', 'acme', ['invoices.approve'])}")


def example_2_approval_and_revocation():
    """
    Example 2: Approval-Gated Grant

    Demonstrates:
    - Only the fixed approver can approve
    - Any stakeholder can revoke
    - Every transition leaves an audit entry
    """
    print("\n=== Example 2: Approval and Revocation ===\n")

    with tempfile.TemporaryDirectory() as tmpdir:
        engine = DelegationEngine(Path(tmpdir) / "example2.db")
        seed(engine)
        engine.subscribe(
            lambda n: print(f"  [notify {', '.join(n.recipients)}] {n.event.value}")
        )

        grant = engine.create_delegation(
            "acme",
            "alice",
            "bob",
            "Invoice approvals during leave",
            permission_ids=["invoices.approve"],
            ttl_hours=24 * 14,
            approver_id="carol",
        )
        print(f"Created {grant.delegation_id}: {grant.status.value}")

        try:
            engine.approve(grant.delegation_id, "bob", "acme")
        except ForbiddenError as e:
            print(f"Bob tried to approve his own grant: {e}")

        engine.approve(grant.delegation_id, "carol", "acme", notes="Covered by leave policy")
        engine.activate(grant.delegation_id, "bob", "acme")
        engine.revoke(grant.delegation_id, "alice", "acme", "Back from leave early")

        print("Notifications:")
        engine.dispatch_notifications()

        print("Audit trail (newest first):")
        for entry in engine.audit_log(grant.delegation_id, "acme"):
            who = entry.user.full_name if entry.user else entry.user_id
            print(f"  {entry.action.value:<22} by {who:<12} {entry.details}")


def example_3_expiry_and_sweep():
    """
    Example 3: Expiry

    Demonstrates:
    - An overdue grant reads as EXPIRED before any sweep runs
    - The sweep makes the expiry durable and audits it
    """
    print("\n=== Example 3: Expiry and Sweep ===\n")

    clock = TestTimeProvider(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))

    with tempfile.TemporaryDirectory() as tmpdir:
        engine = DelegationEngine(Path(tmpdir) / "example3.db", time_provider=clock)
        seed(engine)

        grant = engine.create_delegation(
            "acme", "alice", "bob", "Morning cover", permission_ids=["invoices.read"], ttl_hours=4
        )
        engine.activate(grant.delegation_id, "bob", "acme")

        clock.advance_hours(5)
        view = engine.get_delegation(grant.delegation_id, "acme")
        print(f"Stored status: {view.status.value}, effective status: {view.effective_status.value}")
        print(f"  Bob can read invoices? {engine.has_active_delegation('bob', 'acme', ['invoices.read'])}")

        result = engine.sweep()
        print(result.summary())
        view = engine.get_delegation(grant.delegation_id, "acme")
        print(f"Stored status after sweep: {view.status.value}")


def example_4_statistics():
    """
    Example 4: Tenant Statistics
    """
    print("\n=== Example 4: Statistics ===\n")

    with tempfile.TemporaryDirectory() as tmpdir:
        engine = DelegationEngine(Path(tmpdir) / "example4.db")
        seed(engine)

        engine.create_delegation("acme", "alice", "bob", "Short cover", ttl_hours=8)
        engine.create_delegation(
            "acme", "alice", "carol", "Incident response", ttl_hours=2, is_emergency=True
        )
        engine.create_delegation(
            "acme", "bob", "carol", "Quarter close", ttl_hours=24 * 5, requires_approval=True
        )

        stats = engine.stats("acme")
        print(f"Total: {stats.total_delegations}")
        print(f"Pending approvals: {stats.pending_approvals}")
        print(f"Emergency: {stats.emergency_delegations}")
        print(f"Average duration: {stats.average_delegation_duration:.1f}h")
        print(f"By status: {stats.by_status}")


if __name__ == "__main__":
    print("=" * 70)
    print("Tenant Delegation - Examples")
    print("=" * 70)

    example_1_self_service_grant()
    example_2_approval_and_revocation()
    example_3_expiry_and_sweep()
    example_4_statistics()

    print("\n" + "=" * 70)
    print("All examples completed")
    print("=" * 70)
