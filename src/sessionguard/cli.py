#!/usr/bin/env python
"""
Operator commands for inspecting and managing sessions.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import click

from sessionguard.audit import StructlogAuditSink
from sessionguard.device_manager import MultiDeviceManager
from sessionguard.exceptions import StoreError
from sessionguard.logging import setup_logging
from sessionguard.models import RevocationReason
from sessionguard.security_monitor import SecurityMonitor
from sessionguard.session_manager import SessionManager
from sessionguard.settings import Settings, get_settings
from sessionguard.store import StoreAdapter, create_store

T = TypeVar("T")


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    settings: Settings
    store_factory: Callable[[Settings], StoreAdapter]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(settings=get_settings(), store_factory=create_store)


@dataclass
class Services:
    store: StoreAdapter
    sessions: SessionManager
    devices: MultiDeviceManager
    monitor: SecurityMonitor


def _run(action: Callable[[Services], Awaitable[T]]) -> T:
    """Build the services around a fresh store, run ``action`` and close the store."""
    deps = _get_cli_dependencies()

    async def _main() -> T:
        store = deps.store_factory(deps.settings)
        await store.connect()
        try:
            monitor = SecurityMonitor(
                store, StructlogAuditSink(), settings=deps.settings.detection
            )
            devices = MultiDeviceManager(store, settings=deps.settings.session, monitor=monitor)
            sessions = SessionManager(
                store, devices, monitor, settings=deps.settings.session
            )
            return await action(Services(store, sessions, devices, monitor))
        finally:
            await store.close()

    return asyncio.run(_main())


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli() -> None:
    """sessionguard CLI."""
    setup_logging()


@cli.command()
@click.argument("subject_id")
@click.option("--tenant", "tenant_id", default=None, help="Restrict to one tenant")
def sessions(subject_id: str, tenant_id: str | None) -> None:
    """List a subject's valid sessions."""
    found = _run(lambda s: s.sessions.get_user_sessions(subject_id, tenant_id))
    if not found:
        click.echo(f"No active sessions for {subject_id}")
        return
    for session in found:
        click.echo(
            f"{session.id}  tenant={session.tenant_id}  ip={session.ip_address or '-'}  "
            f"last_activity={session.last_activity_at.isoformat()}  "
            f"expires={session.expires_at.isoformat()}"
        )


@cli.command()
@click.argument("session_id")
@click.option(
    "--reason",
    type=click.Choice([r.value for r in RevocationReason]),
    default=RevocationReason.ADMIN_TERMINATED.value,
    show_default=True,
    help="Revocation reason",
)
def revoke(session_id: str, reason: str) -> None:
    """Revoke a session."""
    result = _run(lambda s: s.sessions.revoke_session(session_id, reason))
    if result.success:
        click.echo(f"Session {session_id} revoked")
        return
    click.echo(f"Failed to revoke {session_id}: {result.failure.reason.value}", err=True)
    raise SystemExit(1)


@cli.command()
@click.argument("tenant_id")
@click.option("--days", default=30, show_default=True, type=int, help="Trailing days")
def stats(tenant_id: str, days: int) -> None:
    """Show security statistics for a tenant."""
    statistics = _run(lambda s: s.monitor.get_security_statistics(tenant_id, days))
    _echo_json(statistics.to_dict())


@cli.command()
@click.argument("tenant_id")
@click.option("--limit", default=None, type=int, help="Maximum alerts to show")
def alerts(tenant_id: str, limit: int | None) -> None:
    """List recent security alerts for a tenant."""
    found = _run(lambda s: s.monitor.get_security_alerts(tenant_id, limit))
    if not found:
        click.echo("No alerts")
        return
    for alert in found:
        created = alert.created_at.isoformat() if alert.created_at else "-"
        click.echo(
            f"[{alert.severity.value}] {created}  {alert.title}  "
            f"subject={alert.subject_id or '-'}  ip={alert.ip_address or '-'}"
        )


@cli.command("trust-device")
@click.argument("subject_id")
@click.argument("fingerprint")
def trust_device(subject_id: str, fingerprint: str) -> None:
    """Mark a known device as trusted."""
    try:
        record = _run(lambda s: s.devices.trust_device(subject_id, fingerprint))
    except StoreError as e:
        click.echo(f"Failed to trust {fingerprint}: {e}", err=True)
        raise SystemExit(1) from e
    if record is None:
        click.echo(f"Unknown device {fingerprint} for {subject_id}", err=True)
        raise SystemExit(1)
    if not record.is_trusted:
        click.echo(f"Device {fingerprint} is blocked and cannot be trusted", err=True)
        raise SystemExit(1)
    click.echo(f"Device {fingerprint} trusted for {subject_id}")


@cli.command()
@click.argument("subject_id")
def sweep(subject_id: str) -> None:
    """Deactivate a subject's expired sessions."""
    count = _run(lambda s: s.sessions.sweep_expired_sessions(subject_id))
    click.echo(f"Swept {count} expired session(s)")


@cli.command("check-store")
def check_store() -> None:
    """Check connectivity to the configured store."""
    backend = _get_cli_dependencies().settings.store.backend.value
    try:
        healthy = _run(lambda s: s.store.ping())
    except StoreError as e:
        click.echo(f"{backend}: ✗ Failed: {e}", err=True)
        raise SystemExit(1) from e
    if healthy:
        click.echo(f"{backend}: ✓ Connected")
        return
    click.echo(f"{backend}: ✗ Unreachable", err=True)
    raise SystemExit(1)


if __name__ == "__main__":
    cli()
