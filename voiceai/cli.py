"""
CLI interface for the VoiceAI Dashboard service.
Provides commands for seeding data, reporting, exporting, and running the server.
"""

from __future__ import annotations

import asyncio
import json
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from voiceai.config import Settings, get_settings
from voiceai.exceptions import DashboardError, ValidationError
from voiceai.logging_config import setup_logging

app = typer.Typer(
    name="voiceai",
    help="VoiceAI Dashboard: call records, analytics and billing",
    add_completion=False,
)
console = Console()

_AGENTS = [("agent_front_desk", "Front Desk"), ("agent_booking", "Booking Assistant"), ("agent_followup", "Follow-up")]
_SENTIMENTS = ["Positive", "Positive", "Neutral", "Negative", None]


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


async def _open_store(settings: Settings):
    from voiceai.store import DocumentStore

    store = DocumentStore(settings.database_path)
    await store.connect()
    return store


def demo_calls(count: int, now: datetime, seed: int = 7) -> list[dict[str, Any]]:
    """Synthetic raw call documents spread over the last 60 days."""
    rng = random.Random(seed)
    docs = []
    for i in range(count):
        agent_id, agent_name = rng.choice(_AGENTS)
        start = now - timedelta(days=rng.uniform(0, 60))
        duration = rng.randint(20, 420)
        status = rng.choices(["ended", "failed", "in_progress"], weights=[90, 7, 3])[0]
        sentiment = rng.choice(_SENTIMENTS)
        successful = None if status != "ended" else rng.random() < 0.7
        docs.append({
            "id": f"demo_{i:05d}",
            "agentId": agent_id,
            "agentName": agent_name,
            "startTime": start,
            "endTime": start + timedelta(seconds=duration),
            "durationSeconds": duration,
            "direction": rng.choice(["inbound", "outbound"]),
            "status": status,
            "callAnalysis": {
                "userSentiment": sentiment,
                "callSuccessful": successful,
                "callSummary": f"Demo call {i} handled by {agent_name}.",
                "inVoicemail": rng.random() < 0.05,
            },
            "transcriptText": "Agent: Hi, how can I help you today?\nCustomer: I'd like to book an appointment.",
            "costUsd": round(duration / 60 * 0.12, 4),
            "createdAt": start + timedelta(seconds=duration),
        })
    return docs


async def seed_calls(store, tenant_id: str, docs: list[dict[str, Any]]) -> int:
    """Write raw call documents for ``tenant_id``; returns the number written."""
    written = 0
    for raw in docs:
        if not isinstance(raw, dict):
            raise ValidationError(f"Call document must be an object, got {type(raw).__name__}")
        data = {k: v for k, v in raw.items() if k != "id"}
        data["userId"] = tenant_id
        if raw.get("id"):
            await store.set("calls", str(raw["id"]), data)
        else:
            await store.add("calls", data)
        written += 1
    return written


@app.command()
def seed(
    tenant: str = typer.Argument(..., help="Tenant (user) id to own the calls"),
    file: Optional[Path] = typer.Option(None, help="JSON file with a list of raw call documents"),
    demo: int = typer.Option(0, help="Generate this many synthetic calls instead"),
):
    """Load call documents into the store."""
    if file is None and demo <= 0:
        console.print("[red]Pass --file or --demo[/red]")
        raise typer.Exit(code=1)

    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    if file is not None:
        try:
            docs = json.loads(file.read_text(encoding="utf-8"))
        except ValueError as exc:
            console.print(f"[red]Seed file is not valid JSON: {exc}[/red]")
            raise typer.Exit(code=1)
        if not isinstance(docs, list) or not all(isinstance(d, dict) for d in docs):
            console.print("[red]Seed file must contain a JSON list of objects[/red]")
            raise typer.Exit(code=1)
    else:
        docs = demo_calls(demo, datetime.now(timezone.utc))

    async def _do():
        store = await _open_store(settings)
        try:
            count = await seed_calls(store, tenant, docs)
            console.print(f"\n[green]✓ Seeded {count} calls for {tenant}[/green]")
        finally:
            await store.close()

    _run(_do())


async def _load_calls(settings: Settings, tenant: str):
    from voiceai.fetcher import PaginatedFetcher

    store = await _open_store(settings)
    try:
        return await PaginatedFetcher(store, tenant).fetch_all(settings.page_size, settings.max_calls)
    finally:
        await store.close()


@app.command()
def overview(tenant: str = typer.Argument(..., help="Tenant (user) id")):
    """Show this month's dashboard figures and billing cycle."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=False)

    from voiceai.analytics import dashboard_overview, overall_stats
    from voiceai.billing import current_cycle
    from voiceai.formatting import format_duration_short, format_percent, format_usd

    records = _run(_load_calls(settings, tenant))
    now = datetime.now(timezone.utc)
    ov = dashboard_overview(records, now, settings.dashboard_fee_monthly)
    stats = overall_stats(records)
    cycle = current_cycle(records, now, settings.dashboard_fee_monthly, settings.billing_epoch_year)

    table = Table(title=f"Dashboard: {tenant}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Calls this month", str(ov.total_calls_this_month))
    table.add_row("Calls last month", str(ov.total_calls_last_month))
    table.add_row("Success rate", format_percent(ov.success_rate))
    table.add_row("Avg duration", format_duration_short(ov.avg_duration_seconds))
    table.add_row("Loaded calls", str(stats.total_calls))
    table.add_row("Errored / other", f"{stats.errored_calls} / {stats.other_calls}")
    table.add_row(f"Cycle {cycle.cycle_number} projected", format_usd(cycle.costs.total_projected))
    table.add_row("Days remaining", str(cycle.days_remaining))
    console.print(table)


@app.command()
def agents(tenant: str = typer.Argument(..., help="Tenant (user) id")):
    """Per-agent performance table."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=False)

    from voiceai.analytics import agent_stats
    from voiceai.formatting import format_seconds, format_usd

    records = _run(_load_calls(settings, tenant))
    table = Table(title="Agent Performance")
    for col in ("Agent", "Calls", "Success", "Failed", "Errored", "Avg", "Cost", "+ / = / -"):
        table.add_column(col)
    for s in agent_stats(records):
        table.add_row(
            f"{s.agent_name} [dim]{s.agent_id}[/dim]",
            str(s.total_calls),
            f"{s.success_rate:.1f}%",
            str(s.failed_calls),
            str(s.errored_calls),
            format_seconds(s.avg_duration),
            format_usd(s.total_cost),
            f"{s.sentiment_positive} / {s.sentiment_neutral} / {s.sentiment_negative}",
        )
    console.print(table)


@app.command()
def export(
    tenant: str = typer.Argument(..., help="Tenant (user) id"),
    include_transcript: bool = typer.Option(False, help="Include full transcripts"),
):
    """Export call records to CSV."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    from voiceai.output import generate_output_csv

    records = _run(_load_calls(settings, tenant))
    path = generate_output_csv(records, settings.output_dir, tenant, include_transcript)
    console.print(f"\n[green]✓ Calls exported to:[/green] {path}")


def _parse_month(value: str) -> tuple[int, int]:
    try:
        year, month = (int(part) for part in value.split("-"))
    except ValueError:
        raise ValidationError(f"Month must look like YYYY-MM, got {value!r}")
    return year, month


@app.command()
def invoice(
    tenant: str = typer.Argument(..., help="Tenant (user) id"),
    month: str = typer.Option(..., help="Finished month to invoice, as YYYY-MM"),
):
    """Close a finished month into an invoice (re-running returns the same one)."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    from voiceai.billing import BillingService
    from voiceai.fetcher import PaginatedFetcher
    from voiceai.formatting import format_usd

    async def _do():
        store = await _open_store(settings)
        try:
            records = await PaginatedFetcher(store, tenant).fetch_all(settings.page_size)
            return await BillingService(store, settings).generate_invoice(tenant, records, *_parse_month(month))
        finally:
            await store.close()

    try:
        inv = _run(_do())
    except DashboardError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1)

    table = Table(title=f"Invoice {inv.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Period", f"{inv.period_start} to {inv.period_end}")
    table.add_row("Dashboard fee", format_usd(inv.dashboard_fee))
    table.add_row("Retell usage", format_usd(inv.retell_cost))
    table.add_row("Total", format_usd(inv.total_amount))
    table.add_row("Status", inv.payment_status.value)
    table.add_row("File", inv.file_name)
    console.print(table)


@app.command("mark-paid")
def mark_paid(
    tenant: str = typer.Argument(..., help="Tenant (user) id"),
    invoice_id: str = typer.Argument(..., help="Invoice id, e.g. user_002"),
):
    """Record payment of an invoice."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    from voiceai.billing import BillingService

    async def _do():
        store = await _open_store(settings)
        try:
            return await BillingService(store, settings).mark_paid(tenant, invoice_id)
        finally:
            await store.close()

    try:
        inv = _run(_do())
    except DashboardError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ {inv.id} marked paid at {inv.paid_at}[/green]")


async def pull_calls(client, max_calls: int, page_size: int) -> list[dict[str, Any]]:
    """Page through the ``getCalls`` backend function, up to ``max_calls`` documents."""
    docs: list[dict[str, Any]] = []
    cursor = None
    while len(docs) < max_calls:
        body = await client.get_calls(limit=min(page_size, max_calls - len(docs)), cursor=cursor)
        if isinstance(body, list):
            batch, cursor = body, None
        elif isinstance(body, dict):
            batch, cursor = body.get("calls") or [], body.get("nextCursor")
        else:
            raise ValidationError("getCalls returned an unexpected body")
        docs.extend(d for d in batch if isinstance(d, dict))
        if not batch or not cursor:
            break
    return docs[:max_calls]


@app.command()
def sync(
    tenant: str = typer.Argument(..., help="Tenant (user) id to own the calls"),
    token: str = typer.Option(..., envvar="VOICEAI_TOKEN", help="Bearer token for the backend functions"),
):
    """Copy a tenant's calls from the hosted backend into the local store."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    from voiceai.backend_client import BackendClient

    async def _do():
        client = BackendClient(settings, lambda: token)
        store = await _open_store(settings)
        try:
            docs = await pull_calls(client, settings.max_calls, settings.page_size)
            return await seed_calls(store, tenant, docs)
        finally:
            await client.close()
            await store.close()

    try:
        count = _run(_do())
    except DashboardError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1)
    console.print(f"\n[green]✓ Synced {count} calls for {tenant}[/green]")


@app.command()
def watch(
    tenant: str = typer.Argument(..., help="Tenant (user) id"),
    subscribe: bool = typer.Option(False, help="Live subscription instead of periodic refresh"),
    interval: Optional[int] = typer.Option(None, help="Refresh interval in seconds (30-600)"),
):
    """Follow a tenant's call feed and print a line per update."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from voiceai.analytics import overall_stats
        from voiceai.cache import CallsCache
        from voiceai.feed import CallsFeed, FeedMode

        store = await _open_store(settings)
        feed = CallsFeed(
            store,
            CallsCache(settings.cache_ttl_seconds),
            tenant,
            mode=FeedMode.SUBSCRIPTION if subscribe else FeedMode.PAGINATED,
            page_size=settings.page_size,
            max_calls=settings.max_calls,
        )
        refresher = None
        try:
            await feed.start()
            if not subscribe:
                every = max(30, min(600, interval or settings.refresh_interval_seconds))
                refresher = asyncio.create_task(feed.run_periodic_refresh(every))
            while True:
                snap = feed.snapshot()
                if snap.error:
                    console.print(f"[red]{snap.error}[/red]")
                else:
                    stats = overall_stats(snap.data)
                    console.print(
                        f"{datetime.now():%H:%M:%S}  calls={stats.total_calls}  "
                        f"success={stats.success_rate:.1f}%  more={snap.has_more}"
                    )
                await feed.wait_for_change()
        finally:
            if refresher is not None:
                refresher.cancel()
            await feed.close()
            await store.close()

    try:
        _run(_do())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@app.command()
def token(
    tenant: str = typer.Argument(..., help="Tenant (user) id"),
    email: str = typer.Option("", help="E-mail claim"),
    role: str = typer.Option("user", help="Role claim"),
):
    """Issue a bearer token for the HTTP API."""
    from voiceai.auth import AuthManager

    settings = get_settings()
    console.print(AuthManager(settings.jwt_secret).create_token(tenant, email=email, role=role))


@app.command()
def keygen():
    """Print a fresh ENCRYPTION_KEY value."""
    from voiceai.encryption import generate_secret

    console.print(f"ENCRYPTION_KEY={generate_secret()}")


@app.command()
def serve():
    """Run the dashboard HTTP API."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        import uvicorn
        from voiceai.server import create_app

        config = uvicorn.Config(
            create_app(settings),
            host=settings.host,
            port=settings.port,
            log_level="info",
        )
        server = uvicorn.Server(config)
        console.print(f"\n[green]Dashboard API running on {settings.host}:{settings.port}[/green]")
        await server.serve()

    _run(_do())


if __name__ == "__main__":
    app()
