"""
Tenant Delegation CLI

Command-line interface for the delegation engine.
Provides commands for directory setup, the delegation lifecycle, queries
and the expiration sweep.

Usage:
    tenant-delegation init --db delegations.db
    tenant-delegation user add --tenant acme --id alice --email alice@acme.test
    tenant-delegation permission add --id invoices.approve --name "Approve invoices"
    tenant-delegation delegation create --tenant acme --from alice --to bob \\
        --title "Leave cover" --permission invoices.approve --ttl-hours 72
    tenant-delegation delegation activate --tenant acme --id <id> --actor bob
    tenant-delegation delegation check --tenant acme --user bob --permission invoices.approve
    tenant-delegation sweep
"""

import json
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from pydantic import ValidationError
from typing_extensions import Annotated

from tenant_delegation.delegation.models import DelegationStatus, DelegationType
from tenant_delegation.delegation.views import DelegationView
from tenant_delegation.engine import DelegationEngine
from tenant_delegation.kernel.errors import DelegationEngineError
from tenant_delegation.kernel.logging import configure_logging, correlation_scope

# Configure logging to stderr (avoids polluting stdout for JSON output)
configure_logging(json_output=False, log_level="WARNING")

app = typer.Typer(
    name="tenant-delegation",
    help="Tenant Delegation - time-bounded permission delegation engine",
    add_completion=False,
)

# Sub-apps
user_app = typer.Typer(help="Tenant member commands")
permission_app = typer.Typer(help="Permission catalog commands")
delegation_app = typer.Typer(help="Delegation lifecycle commands")

app.add_typer(user_app, name="user")
app.add_typer(permission_app, name="permission")
app.add_typer(delegation_app, name="delegation")

# Global state
DEFAULT_DB = Path(".delegations.db")


def get_engine(db_path: Optional[Path] = None) -> DelegationEngine:
    """Get DelegationEngine instance"""
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'tenant-delegation init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    return DelegationEngine(str(db))


@contextmanager
def engine_errors() -> Iterator[None]:
    """
    Run one command under its own correlation id

    Domain and validation errors are reported as a one-line message with
    exit code 1.
    """
    try:
        with correlation_scope():
            yield
    except DelegationEngineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ValidationError as e:
        typer.echo(f"Error: invalid input ({e.error_count()} problem(s))", err=True)
        for problem in e.errors():
            location = ".".join(str(part) for part in problem["loc"])
            typer.echo(f"  {location}: {problem['msg']}", err=True)
        raise typer.Exit(1)


def echo_delegation(view: DelegationView) -> None:
    typer.echo(f"\nDelegation: {view.delegation_id}")
    typer.echo(f"  Title: {view.title}")
    typer.echo(f"  Type: {view.delegation_type.value}")
    typer.echo(f"  Status: {view.effective_status.value}")
    typer.echo(f"  Delegator: {view.delegator_id}")
    typer.echo(f"  Delegate: {view.delegate_id}")
    if view.approver_id:
        typer.echo(f"  Approver: {view.approver_id}")
    if view.permission_names:
        typer.echo(f"  Permissions: {', '.join(view.permission_names)}")
    if view.is_emergency:
        typer.echo("  Emergency: yes")
    typer.echo(f"  Expires: {view.expires_at.isoformat()}")
    typer.echo(f"  Remaining: {view.remaining_time_in_hours:.1f}h")


# Initialization command


@app.command()
def init(
    db: Annotated[
        Path,
        typer.Option(help="Database path"),
    ] = DEFAULT_DB,
) -> None:
    """Initialize a new delegation database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    # Create database by initializing the engine
    DelegationEngine(str(db))
    typer.echo(f"✓ Initialized delegation database: {db}")


# Directory commands


@user_app.command("add")
def user_add(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    user_id: Annotated[str, typer.Option("--id", help="User ID")],
    email: Annotated[str, typer.Option("--email", help="Email address")],
    first_name: Annotated[str, typer.Option("--first-name", help="First name")] = "",
    last_name: Annotated[str, typer.Option("--last-name", help="Last name")] = "",
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Register a tenant member"""
    engine = get_engine(db)
    user = engine.add_user(tenant, user_id, email, first_name, last_name)
    typer.echo(f"✓ Added user: {user.user_id} ({user.full_name}) to tenant {tenant}")


@permission_app.command("add")
def permission_add(
    permission_id: Annotated[str, typer.Option("--id", help="Permission ID")],
    name: Annotated[str, typer.Option("--name", help="Permission name")],
    resource: Annotated[str, typer.Option("--resource", help="Resource")] = "",
    action: Annotated[str, typer.Option("--action", help="Action")] = "",
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Register a catalog permission"""
    engine = get_engine(db)
    permission = engine.add_permission(permission_id, name, resource, action)
    typer.echo(f"✓ Added permission: {permission.permission_id} ({permission.name})")


# Delegation commands


@delegation_app.command("create")
def delegation_create(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    from_user: Annotated[str, typer.Option("--from", help="Delegator")],
    to_user: Annotated[str, typer.Option("--to", help="Delegate")],
    title: Annotated[str, typer.Option("--title", help="Short title")],
    delegation_type: Annotated[
        DelegationType,
        typer.Option("--type", help="Delegation type"),
    ] = DelegationType.PERMISSION_BASED,
    permissions: Annotated[
        Optional[List[str]],
        typer.Option("--permission", help="Permission ID (repeatable)"),
    ] = None,
    ttl_hours: Annotated[
        Optional[float],
        typer.Option("--ttl-hours", help="Lifetime in hours"),
    ] = None,
    expires_at: Annotated[
        Optional[datetime],
        typer.Option("--expires-at", help="Absolute expiry (ISO 8601, UTC)"),
    ] = None,
    approver: Annotated[
        Optional[str],
        typer.Option("--approver", help="Designated approver"),
    ] = None,
    requires_approval: Annotated[
        bool,
        typer.Option("--requires-approval", help="Wait for an approver"),
    ] = False,
    emergency: Annotated[
        bool,
        typer.Option("--emergency", help="Flag as an emergency delegation"),
    ] = False,
    description: Annotated[
        Optional[str],
        typer.Option("--description", help="Longer description"),
    ] = None,
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Request a new delegation"""
    engine = get_engine(db)

    if (ttl_hours is None) == (expires_at is None):
        typer.echo("Error: provide exactly one of --ttl-hours or --expires-at", err=True)
        raise typer.Exit(1)

    with engine_errors():
        view = engine.create_delegation(
            tenant_id=tenant,
            delegator_id=from_user,
            delegate_id=to_user,
            title=title,
            delegation_type=delegation_type,
            permission_ids=permissions or [],
            expires_at=expires_at,
            ttl_hours=ttl_hours,
            approver_id=approver,
            requires_approval=requires_approval,
            is_emergency=emergency,
            description=description,
        )

    typer.echo(f"✓ Created delegation: {view.delegation_id}")
    typer.echo(f"  Status: {view.status.value}")
    typer.echo(f"  Expires: {view.expires_at.isoformat()}")


@delegation_app.command("approve")
def delegation_approve(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    delegation_id: Annotated[str, typer.Option("--id", help="Delegation ID")],
    actor: Annotated[str, typer.Option("--actor", help="Approving user")],
    notes: Annotated[
        Optional[str],
        typer.Option("--notes", help="Approval notes"),
    ] = None,
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Approve a pending delegation (PENDING → APPROVED)"""
    engine = get_engine(db)
    with engine_errors():
        view = engine.approve(delegation_id, actor, tenant, notes)
    typer.echo(f"✓ Approved delegation: {view.delegation_id}")


@delegation_app.command("reject")
def delegation_reject(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    delegation_id: Annotated[str, typer.Option("--id", help="Delegation ID")],
    actor: Annotated[str, typer.Option("--actor", help="Rejecting user")],
    reason: Annotated[str, typer.Option("--reason", help="Rejection reason")],
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Reject a pending delegation (PENDING → REJECTED)"""
    engine = get_engine(db)
    with engine_errors():
        view = engine.reject(delegation_id, actor, tenant, reason)
    typer.echo(f"✓ Rejected delegation: {view.delegation_id}")


@delegation_app.command("activate")
def delegation_activate(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    delegation_id: Annotated[str, typer.Option("--id", help="Delegation ID")],
    actor: Annotated[str, typer.Option("--actor", help="Delegate activating")],
    confirm: Annotated[
        bool,
        typer.Option("--confirm", help="Record explicit confirmation"),
    ] = False,
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Activate an approved delegation (APPROVED → ACTIVE)"""
    engine = get_engine(db)
    with engine_errors():
        view = engine.activate(delegation_id, actor, tenant, confirm or None)
    typer.echo(f"✓ Activated delegation: {view.delegation_id}")
    typer.echo(f"  Active until: {view.expires_at.isoformat()}")


@delegation_app.command("revoke")
def delegation_revoke(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    delegation_id: Annotated[str, typer.Option("--id", help="Delegation ID")],
    actor: Annotated[str, typer.Option("--actor", help="Revoking user")],
    reason: Annotated[str, typer.Option("--reason", help="Revocation reason")],
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Revoke an approved or active delegation"""
    engine = get_engine(db)
    with engine_errors():
        view = engine.revoke(delegation_id, actor, tenant, reason)
    typer.echo(f"✓ Revoked delegation: {view.delegation_id}")


@delegation_app.command("show")
def delegation_show(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    delegation_id: Annotated[str, typer.Option("--id", help="Delegation ID")],
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show delegation details"""
    engine = get_engine(db)
    with engine_errors():
        view = engine.get_delegation(delegation_id, tenant)

    if json_output:
        typer.echo(json.dumps(view.model_dump(mode="json"), indent=2))
        return
    echo_delegation(view)


@delegation_app.command("list")
def delegation_list(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    status: Annotated[
        Optional[DelegationStatus],
        typer.Option("--status", help="Filter by status"),
    ] = None,
    delegate: Annotated[
        Optional[str],
        typer.Option("--delegate", help="Filter by delegate"),
    ] = None,
    search: Annotated[
        Optional[str],
        typer.Option("--search", help="Search title and description"),
    ] = None,
    page: Annotated[int, typer.Option("--page", help="Page number")] = 1,
    limit: Annotated[
        Optional[int],
        typer.Option("--limit", help="Page size"),
    ] = None,
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List a tenant's delegations (newest first)"""
    engine = get_engine(db)
    with engine_errors():
        result = engine.list_delegations(
            tenant,
            status=status,
            delegate_id=delegate,
            search=search,
            page=page,
            limit=limit,
        )

    if json_output:
        typer.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    if not result.delegations:
        typer.echo("No delegations found")
        return

    typer.echo(
        f"Delegations ({result.total}, page {result.page}/{max(result.total_pages, 1)}):"
    )
    for view in result.delegations:
        typer.echo(
            f"  {view.delegation_id}: {view.title} "
            f"[{view.effective_status.value}] {view.delegator_id} → {view.delegate_id}"
        )


@delegation_app.command("audit")
def delegation_audit(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    delegation_id: Annotated[str, typer.Option("--id", help="Delegation ID")],
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a delegation's audit trail (newest first)"""
    engine = get_engine(db)
    with engine_errors():
        entries = engine.audit_log(delegation_id, tenant)

    if json_output:
        typer.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    typer.echo(f"Audit trail for {delegation_id} ({len(entries)} entries):")
    for entry in entries:
        who = entry.user.full_name if entry.user else entry.user_id
        typer.echo(f"  {entry.created_at.isoformat()} {entry.action.value} by {who}")
        if entry.details:
            typer.echo(f"    {entry.details}")


@delegation_app.command("check")
def delegation_check(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    user: Annotated[str, typer.Option("--user", help="User to check")],
    permissions: Annotated[
        List[str],
        typer.Option("--permission", help="Permission ID (repeatable)"),
    ],
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Check whether a user holds any of the permissions through an active delegation"""
    engine = get_engine(db)
    granted = engine.has_active_delegation(user, tenant, permissions)
    if granted:
        typer.echo(f"✓ {user} holds a delegated permission")
    else:
        typer.echo(f"✗ {user} holds none of the requested permissions by delegation")
        raise typer.Exit(2)


# Monitoring commands


@app.command()
def stats(
    tenant: Annotated[str, typer.Option("--tenant", help="Tenant ID")],
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show delegation statistics for a tenant"""
    engine = get_engine(db)
    result = engine.stats(tenant)

    if json_output:
        typer.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    typer.echo(f"\nDelegation Statistics for {tenant}:")
    typer.echo(f"  Total: {result.total_delegations}")
    typer.echo(f"  Active: {result.active_delegations}")
    typer.echo(f"  Pending approvals: {result.pending_approvals}")
    typer.echo(f"  Expired: {result.expired_delegations}")
    typer.echo(f"  Revoked: {result.revoked_delegations}")
    typer.echo(f"  Emergency: {result.emergency_delegations}")
    typer.echo(f"  Created this month: {result.delegations_this_month}")
    typer.echo(f"  Average duration: {result.average_delegation_duration:.1f}h")


@app.command()
def sweep(
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Database path"),
    ] = None,
) -> None:
    """Expire overdue delegations across all tenants"""
    engine = get_engine(db)

    result = engine.sweep()
    engine.dispatch_notifications()

    typer.echo(f"✓ {result.summary()}")
    for delegation_id in result.expired_ids:
        typer.echo(f"    - expired {delegation_id}")
    if result.has_failures():
        for delegation_id in result.failed_ids:
            typer.echo(f"    - failed {delegation_id}", err=True)
        raise typer.Exit(1)


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
