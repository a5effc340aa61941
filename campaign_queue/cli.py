"""Command-line interface for the campaign queue.

This module provides a CLI for operating the queue directly against its
SQLite database, without going through the HTTP API.

Usage:
    campaign-queue --db queue.db init
    campaign-queue --db queue.db enqueue spring-sale --list newsletter
    campaign-queue --db queue.db process
    campaign-queue --db queue.db stats spring-sale
    campaign-queue --db queue.db servers add main --host smtp.example.com --port 587 \\
        --from-name "ACME" --from-email news@acme.test
    campaign-queue --db queue.db servers health --tenant acme
    campaign-queue serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import click
from click.core import ParameterSource
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .models import Encryption, OutboundServerCreate, QueueStatus, ServerType
from .service import QueueService

console = Console()
err_console = Console(stderr=True)

DEFAULT_DB_PATH = "campaign_queue.db"


def get_service(db_path: str, **kwargs: Any) -> QueueService:
    """Create a QueueService bound to the given database path."""
    return QueueService(db_path=db_path, **kwargs)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(value: Optional[int]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(int(value), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _command(ctx: click.Context, cmd: str, payload: Optional[dict] = None, **service_kwargs: Any) -> dict:
    """Initialise the store, run one service command and return its result."""
    service = get_service(ctx.obj["db_path"], **service_kwargs)
    # one-shot commands never leave a worker loop behind
    service.producer.on_enqueued = None

    async def _run():
        await service.init()
        try:
            return await service.handle_command(cmd, payload or {})
        finally:
            await service.transport.cleanup()

    result = run_async(_run())
    if not result.get("ok"):
        print_error(result.get("error") or "command failed")
        sys.exit(1)
    return result


@click.group()
@click.option(
    "--db",
    "db_path",
    envvar="CQ_DB_PATH",
    default=DEFAULT_DB_PATH,
    show_default=True,
    help="Path to the SQLite database.",
)
@click.version_option(package_name="campaign-queue")
@click.pass_context
def main(ctx: click.Context, db_path: str) -> None:
    """campaign-queue: email campaign delivery queue."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["db_explicit"] = ctx.get_parameter_source("db_path") is not ParameterSource.DEFAULT


@main.command("init")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""
    service = get_service(ctx.obj["db_path"])
    run_async(service.init())
    print_success(f"Database ready at {ctx.obj['db_path']}")


@main.command("enqueue")
@click.argument("campaign_id")
@click.option("--list", "-l", "list_ids", multiple=True, help="Contact list id (repeatable). Omit for all contacts.")
@click.pass_context
def enqueue(ctx: click.Context, campaign_id: str, list_ids: tuple[str, ...]) -> None:
    """Queue a campaign for the active members of the given lists."""
    result = _command(ctx, "enqueueCampaign", {"campaign_id": campaign_id, "list_ids": list(list_ids)})
    print_success(
        f"{result['queued_count']} queued, {result['duplicates_skipped']} duplicates skipped, "
        f"{result['failed']} failed"
    )


@main.command("process")
@click.option("--batch-size", "-n", type=int, default=5, show_default=True, help="Items claimed in this run.")
@click.option("--item-delay", type=float, default=1.0, show_default=True, help="Seconds between deliveries.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def process(ctx: click.Context, batch_size: int, item_delay: float, as_json: bool) -> None:
    """Process one batch of due items."""
    result = _command(ctx, "processBatch", batch_size=batch_size, item_delay=item_delay)
    result.pop("ok", None)
    if as_json:
        print_json(result)
        return
    console.print(
        f"Processed [bold]{result['processed']}[/bold]: "
        f"[green]{result['sent']} sent[/green], "
        f"[yellow]{result['retried']} retried[/yellow], "
        f"[red]{result['failed']} failed[/red], "
        f"{result['deferred']} deferred"
    )


@main.command("reclaim")
@click.option("--stuck-after", type=int, default=300, show_default=True, help="Age in seconds of a stuck item.")
@click.pass_context
def reclaim(ctx: click.Context, stuck_after: int) -> None:
    """Return items stuck in processing to pending."""
    result = _command(ctx, "reclaim", stuck_after=stuck_after)
    print_success(f"{result['reclaimed']} items reclaimed")


@main.command("retry-failed")
@click.argument("campaign_id")
@click.pass_context
def retry_failed(ctx: click.Context, campaign_id: str) -> None:
    """Reset the failed items of a campaign."""
    result = _command(ctx, "retryFailed", {"campaign_id": campaign_id})
    print_success(f"{result['reset']} failed items reset to pending")


@main.command("stats")
@click.argument("campaign_id", required=False)
@click.option("--tenant", "tenant_id", help="Only campaigns of this tenant.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, campaign_id: Optional[str], tenant_id: Optional[str], as_json: bool) -> None:
    """Show queue figures for one campaign, one tenant or the whole queue."""
    result = _command(ctx, "queueMetrics", {"campaign_id": campaign_id, "tenant_id": tenant_id})
    result.pop("ok", None)
    if as_json:
        print_json(result)
        return

    if campaign_id:
        title = f"Campaign {campaign_id}"
    elif tenant_id:
        title = f"Tenant {tenant_id}"
    else:
        title = "Queue"
    table = Table(title=title)
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for status in QueueStatus:
        table.add_row(status.value, str(result["counts"].get(status.value, 0)))
    table.add_row("[bold]total[/bold]", str(result["counts"].get("total", 0)))
    console.print(table)
    console.print(f"  Sent last hour: {result['throughput_last_hour']}")
    console.print(f"  Error rate:     {result['error_rate']:.1f}%")
    console.print(f"  Last sent:      {_format_ts(result['last_sent_at'])}")


@main.command("queue")
@click.option("--campaign", "campaign_id", help="Only items of this campaign.")
@click.option("--status", type=click.Choice([s.value for s in QueueStatus]), help="Only items in this status.")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def queue(ctx: click.Context, campaign_id: Optional[str], status: Optional[str], limit: int, as_json: bool) -> None:
    """List queue items, newest first."""
    result = _command(ctx, "listQueue", {"campaign_id": campaign_id, "status": status, "limit": limit})
    items = result["items"]
    if as_json:
        print_json(items)
        return
    if not items:
        console.print("[dim]No queue items found.[/dim]")
        return

    table = Table(title="Queue")
    table.add_column("ID", style="cyan")
    table.add_column("Campaign")
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Scheduled")
    table.add_column("Error")
    for item in items:
        table.add_row(
            item["id"],
            item["campaign_id"],
            item["contact_email"],
            item["status"],
            str(item["retry_count"]),
            _format_ts(item["scheduled_for"]),
            item.get("error_message") or "-",
        )
    console.print(table)


@main.group("servers", invoke_without_command=True)
@click.pass_context
def servers(ctx: click.Context) -> None:
    """Manage outbound servers."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@servers.command("add")
@click.argument("server_id")
@click.option("--tenant", "tenant_id", default="default", show_default=True)
@click.option("--name", help="Display name.")
@click.option("--type", "server_type", type=click.Choice([t.value for t in ServerType]), default="smtp", show_default=True)
@click.option("--host", help="SMTP host.")
@click.option("--port", type=int, help="SMTP port.")
@click.option("--username", help="SMTP username.")
@click.option("--password", help="SMTP password.")
@click.option("--encryption", type=click.Choice([e.value for e in Encryption]), help="SMTP transport security.")
@click.option("--api-key", help="API key (sendgrid, mailgun).")
@click.option("--domain", help="Sending domain (mailgun).")
@click.option("--from-name", required=True)
@click.option("--from-email", required=True)
@click.option("--limit-per-minute", type=int)
@click.option("--limit-per-hour", type=int)
@click.option("--limit-per-day", type=int)
@click.option("--inactive", is_flag=True, help="Register the server as inactive.")
@click.pass_context
def servers_add(ctx: click.Context, server_id: str, server_type: str, inactive: bool, **options: Any) -> None:
    """Register or update an outbound server."""
    data = {key: value for key, value in options.items() if value is not None}
    data.update(id=server_id, type=server_type, is_active=not inactive)
    try:
        server = OutboundServerCreate.model_validate(data)
    except ValidationError as exc:
        print_error(f"Invalid server: {exc.errors()[0]['msg']}")
        sys.exit(1)
    _command(ctx, "addServer", server.model_dump())
    print_success(f"Server '{server_id}' saved")


@servers.command("list")
@click.option("--tenant", "tenant_id", help="Only servers of this tenant.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def servers_list(ctx: click.Context, tenant_id: Optional[str], as_json: bool) -> None:
    """List outbound servers."""
    result = _command(ctx, "listServers", {"tenant_id": tenant_id})
    server_list = result["servers"]
    if as_json:
        print_json(server_list)
        return
    if not server_list:
        console.print("[dim]No servers found.[/dim]")
        return

    table = Table(title="Outbound servers")
    table.add_column("ID", style="cyan")
    table.add_column("Tenant")
    table.add_column("Type")
    table.add_column("Endpoint")
    table.add_column("Active", justify="center")
    table.add_column("Limits (m/h/d)")
    for s in server_list:
        endpoint = f"{s['host']}:{s['port']}" if s["type"] == ServerType.SMTP.value else (s.get("domain") or "-")
        limits = "/".join(str(s.get(key) or "-") for key in ("limit_per_minute", "limit_per_hour", "limit_per_day"))
        table.add_row(
            s["id"],
            s["tenant_id"],
            s["type"],
            endpoint,
            "[green]✓[/green]" if s.get("is_active") else "[red]✗[/red]",
            limits,
        )
    console.print(table)


@servers.command("health")
@click.option("--tenant", "tenant_id", help="Only servers of this tenant.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def servers_health(ctx: click.Context, tenant_id: Optional[str], as_json: bool) -> None:
    """Show 24h delivery health per outbound server."""
    result = _command(ctx, "serverMetrics", {"tenant_id": tenant_id})
    report = result["servers"]
    if as_json:
        print_json(report)
        return
    if not report:
        console.print("[dim]No servers found.[/dim]")
        return

    table = Table(title="Server health (24h)")
    table.add_column("ID", style="cyan")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Healthy", justify="center")
    table.add_column("Last used")
    for s in report:
        table.add_row(
            s["server_id"],
            str(s["total_sent"]),
            str(s["total_failed"]),
            f"{s['success_rate']:.1f}%",
            "[green]✓[/green]" if s["is_healthy"] else "[red]✗[/red]",
            _format_ts(s["last_used"]),
        )
    console.print(table)


@servers.command("delete")
@click.argument("server_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def servers_delete(ctx: click.Context, server_id: str, force: bool) -> None:
    """Delete an outbound server."""
    if not force and not click.confirm(f"Delete server '{server_id}'?"):
        console.print("[dim]Aborted.[/dim]")
        return
    _command(ctx, "deleteServer", {"id": server_id})
    print_success(f"Server '{server_id}' deleted")


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API with the worker and reclaimer loops."""
    import uvicorn

    from .config import load_settings
    from .server import build_app

    settings = load_settings()
    if ctx.obj.get("db_explicit"):
        settings["db_path"] = ctx.obj["db_path"]
    host = host or str(settings["http_host"])
    port = port or int(settings["http_port"])
    console.print(f"[bold cyan]Serving campaign queue on {host}:{port}[/bold cyan]")
    uvicorn.run(build_app(settings), host=host, port=port)


if __name__ == "__main__":
    main()
