"""Operator CLI for the wearable webhook pipeline.

Run the API and the consumer worker locally, inspect failed and dead-lettered
webhooks, and re-enqueue stored raw webhooks after a fix.
"""

import os

import redis
import typer
import uvicorn
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from sqlalchemy import text

from app.config.settings import settings
from app.core.logger import setup_logger
from app.db.models import Base
from app.db.session import get_engine, get_session, get_session_factory
from app.persistence.health_state import HealthStateStore
from app.persistence.raw_webhooks import RawWebhookRecord, RawWebhookStore
from app.queue.factory import build_queue
from app.webhooks.configuration import validate_webhook_configuration, webhook_urls
from app.webhooks.errors import RoutingError
from app.webhooks.replay import ReplaySummary, WebhookReplayer
from app.workers.webhook_consumer import build_consumer, install_signal_handlers

console = Console()

app = typer.Typer(
    name="wearable-ingest",
    help="Wearable webhook ingestion - operator CLI",
    add_completion=False,
)

DEFAULT_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
DEFAULT_LIMIT = 100


def _replayer() -> WebhookReplayer:
    session_factory = get_session_factory()
    return WebhookReplayer(RawWebhookStore(session_factory), HealthStateStore(session_factory), build_queue(settings))


def _print_summary(summary: ReplaySummary) -> None:
    console.print(f"[green]✓ Re-enqueued {len(summary.queued)} webhook(s)[/green]")
    for raw_id, reason in summary.skipped.items():
        console.print(f"[yellow]  skipped {raw_id}: {reason}[/yellow]")


def _records_table(title: str, records: list[RawWebhookRecord]) -> Table:
    table = Table(title=title)
    table.add_column("Raw webhook id", style="cyan", no_wrap=True)
    table.add_column("Received")
    table.add_column("Structure")
    table.add_column("User")
    table.add_column("Error", style="red")
    for record in records:
        table.add_row(
            record.id,
            record.received_at.isoformat(timespec="seconds"),
            record.data_structure,
            record.external_user_id,
            record.error or "",
        )
    return table


@app.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
) -> None:
    """Run the webhook API with uvicorn."""
    logger.info(f"Starting FastAPI server on {host}:{port} (reload={reload})")
    uvicorn.run("app.main:app", host=host, port=port, reload=reload)


@app.command()
def worker(debug: bool = typer.Option(False, "--debug", help="Enable debug logging")) -> None:
    """Run the queue consumer until SIGTERM/SIGINT."""
    setup_logger(level="DEBUG" if debug else settings.log_level)
    consumer = build_consumer(settings)
    install_signal_handlers(consumer, settings.worker_shutdown_grace_seconds)
    consumer.run()


@app.command()
def init_db() -> None:
    """Create missing tables."""
    Base.metadata.create_all(bind=get_engine())
    console.print("[green]✓ Database tables verified[/green]")


@app.command()
def check_db() -> None:
    """Verify Redis and database connections are working."""
    results: list[tuple[str, bool, str]] = []

    if settings.queue_backend == "redis":
        try:
            redis.from_url(settings.redis_url, decode_responses=True).ping()
            results.append(("Redis", True, f"Connected to {settings.redis_url}"))
        except redis.exceptions.RedisError as e:
            results.append(("Redis", False, f"Connection failed: {e!s}"))

    try:
        with get_session() as db:
            db.execute(text("SELECT 1"))
        results.append(("Database", True, "Connected to database"))
    except Exception as e:
        results.append(("Database", False, f"Connection failed: {e!s}"))

    all_ok = all(status for _, status, _ in results)
    details = "\n".join([f"  {'✓' if status else '✗'} {name}: {message}" for name, status, message in results])
    console.print(
        Panel(
            Text(
                "All connections OK" if all_ok else "Some connections failed",
                style="bold green" if all_ok else "bold red",
            ),
            subtitle=details,
            border_style="green" if all_ok else "red",
        )
    )
    if not all_ok:
        raise typer.Exit(1)


@app.command()
def webhook_config() -> None:
    """Show the webhook URLs to register with the provider and any config problems."""
    report = validate_webhook_configuration(settings)
    for name in report.missing:
        console.print(f"[red]✗ Missing {name}[/red]")
    for warning in report.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    if settings.webhook_base_url:
        for provider in sorted(settings.provider_names):
            urls = webhook_urls(settings.webhook_base_url, provider)
            console.print(f"\n[bold]{provider}[/bold]")
            console.print(f"  Health data:   {urls.health_data}")
            console.print(f"  Notifications: {urls.notifications}")
            console.print(f"  Health check:  {urls.health}")
    if not report.is_valid:
        raise typer.Exit(1)


@app.command()
def create_user(email: str | None = typer.Option(None, "--email", help="Optional email")) -> None:
    """Create a local user; its id is what the provider must send as user_id."""
    user_id = HealthStateStore(get_session_factory()).create_user(email=email)
    console.print(f"[green]✓ Created user {user_id}[/green]")


@app.command()
def replay(raw_id: str = typer.Argument(..., help="Raw webhook id")) -> None:
    """Re-enqueue one stored raw webhook."""
    try:
        message_id = _replayer().replay(raw_id)
    except LookupError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1) from e
    except RoutingError as e:
        console.print(f"[red]✗ Cannot replay {raw_id}: {e}[/red]")
        raise typer.Exit(1) from e
    console.print(f"[green]✓ Re-enqueued {raw_id} as message {message_id}[/green]")


@app.command()
def replay_unprocessed(limit: int = typer.Option(DEFAULT_LIMIT, "--limit", "-n")) -> None:
    """Re-enqueue raw webhooks never marked processed, oldest first."""
    _print_summary(_replayer().replay_unprocessed(limit))


@app.command()
def replay_failed(limit: int = typer.Option(DEFAULT_LIMIT, "--limit", "-n")) -> None:
    """Re-enqueue raw webhooks that failed permanently, newest first."""
    _print_summary(_replayer().replay_failed(limit))


@app.command()
def failed(limit: int = typer.Option(DEFAULT_LIMIT, "--limit", "-n")) -> None:
    """List raw webhooks processed with an error."""
    records = RawWebhookStore(get_session_factory()).find_failed(limit)
    console.print(_records_table(f"Failed webhooks ({len(records)})", records))


@app.command()
def dead_letters(limit: int = typer.Option(DEFAULT_LIMIT, "--limit", "-n")) -> None:
    """List messages on the dead-letter queue."""
    queue = build_queue(settings)
    entries = queue.dead_letters(limit)
    table = Table(title=f"Dead letters ({len(entries)}), main queue depth {queue.depth()}")
    table.add_column("Message id", style="cyan", no_wrap=True)
    table.add_column("Deliveries", justify="right")
    table.add_column("Reason", style="red")
    table.add_column("Body")
    for entry in entries:
        table.add_row(entry.id, str(entry.receive_count), entry.reason, entry.body[:80])
    console.print(table)


if __name__ == "__main__":
    app()
