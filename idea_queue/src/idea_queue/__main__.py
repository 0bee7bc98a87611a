"""
Command-line interface for Idea Queue.

Usage:
    python -m idea_queue run                    # Run one ingestion pass
    python -m idea_queue refresh 3              # Refresh one subscriber's feeds
    python -m idea_queue prune                  # Drop stale queue entries
    python -m idea_queue serve                  # Start the HTTP server
    python -m idea_queue worker                 # Run scheduled passes only
    python -m idea_queue stats                  # Show database statistics
    python -m idea_queue config                 # Show current configuration
    python -m idea_queue subscriber-add EMAIL   # Create a subscriber
    python -m idea_queue feed-add 3 URL NAME    # Subscribe to a feed
    python -m idea_queue token 3                # Show the protocol token
    python -m idea_queue decide 3 42 --yes      # Record a decision
"""

import asyncio
from datetime import timedelta

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from .config import get_settings
from .logging_conf import setup_logging, get_logger
from .db import get_database
from .ingest import IngestAbortedError, IngestionRunner, PassReport
from .fanout import FanoutQueue
from .sweeper import RetentionSweeper
from .sources.registry import FeedRegistry, SubscriptionExistsError, SubscriptionNotFoundError
from .subscribers import (
    SubscriberNotFoundError,
    create_subscriber,
    ensure_token,
    regenerate_token,
)

console = Console()
logger = get_logger(__name__)


def _print_report(report: PassReport) -> None:
    table = Table(title="Pass Results")
    table.add_column("Feed", style="cyan")
    table.add_column("Subscribers")
    table.add_column("Fetched")
    table.add_column("New", style="green")
    table.add_column("Existing")
    table.add_column("Queued", style="green")
    table.add_column("Error", style="red")

    for feed in report.feeds:
        table.add_row(
            feed.feed_url,
            str(feed.subscribers),
            str(feed.fetched),
            str(feed.new),
            str(feed.existing),
            str(feed.queued),
            feed.error or "",
        )

    console.print(table)
    console.print(
        f"run_id: {report.run_id} | new: {report.new_items} | existing: {report.existing_items} "
        f"| queued: {report.queued} | pruned: {report.pruned} | failed feeds: {report.feeds_failed}"
    )


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug: bool):
    """Idea Queue CLI."""
    settings = get_settings()
    level = "DEBUG" if debug else settings.log_level
    setup_logging(level=level, json_output=settings.log_json)


@cli.command()
def run():
    """
    Run one ingestion pass over every registered feed.

    Examples:
      python -m idea_queue run
      python -m idea_queue --debug run
    """
    console.print(Panel("[bold green]Starting Ingestion Pass[/bold green]"))

    try:
        report = asyncio.run(IngestionRunner(db=get_database()).run_pass())
    except IngestAbortedError as e:
        console.print(f"[bold red]Pass {e.run_id} aborted: {e}[/bold red]")
        raise click.Abort()

    _print_report(report)
    console.print("\n[bold green]Pass completed[/bold green]")


@cli.command()
@click.argument("subscriber_id", type=int)
def refresh(subscriber_id: int):
    """Fetch only one subscriber's enabled feeds."""
    console.print(Panel(f"[bold cyan]Refreshing subscriber {subscriber_id}[/bold cyan]"))

    try:
        report = asyncio.run(IngestionRunner(db=get_database()).refresh_subscriber(subscriber_id))
    except IngestAbortedError as e:
        console.print(f"[bold red]Refresh {e.run_id} aborted: {e}[/bold red]")
        raise click.Abort()

    if not report.feeds:
        console.print("[yellow]No enabled feeds for this subscriber[/yellow]")
        return
    _print_report(report)


@cli.command()
@click.option("--days", "-d", type=int, help="Retention horizon in days")
def prune(days: int):
    """Delete undecided queue entries older than the retention horizon."""
    days = days or get_settings().retention_days
    removed = RetentionSweeper(get_database()).prune_stale(horizon=timedelta(days=days))
    console.print(f"[green]Removed {removed} stale queue entries (older than {days} days)[/green]")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", "-p", type=int, help="Port to bind to")
@click.option("--with-scheduler", is_flag=True, help="Enable built-in scheduler")
def serve(host: str, port: int, with_scheduler: bool):
    """Start the HTTP server (health, stats and protocol endpoints)."""
    from .server import run_server

    console.print(Panel("[bold blue]Starting Server[/bold blue]"))

    settings = get_settings()
    port = port or settings.port

    console.print(f"Host: {host}")
    console.print(f"Port: {port}")
    console.print(f"Scheduler: {'Enabled' if with_scheduler else 'Disabled'}")
    console.print()

    run_server(host=host, port=port, with_scheduler=with_scheduler)


@cli.command()
def worker():
    """Run scheduled passes without the HTTP server."""
    from .scheduler import run_scheduler_sync

    settings = get_settings()
    console.print(Panel("[bold blue]Starting Scheduler Worker[/bold blue]"))
    console.print(f"Schedule (UTC hours): {settings.schedule_hours}")

    try:
        run_scheduler_sync()
    except KeyboardInterrupt:
        console.print("[yellow]Worker stopped[/yellow]")


@cli.command()
def stats():
    """Show database statistics."""
    db_stats = get_database().get_stats()

    table = Table(title="Database Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Total Items", str(db_stats["total_items"]))
    table.add_row("Queued Entries", str(db_stats["total_queue_entries"]))
    table.add_row("Decisions", str(db_stats["total_decisions"]))
    table.add_row("Subscribers", str(db_stats["total_subscribers"]))
    table.add_row("Subscriptions", str(db_stats["total_subscriptions"]))
    table.add_row("Total Runs", str(db_stats["total_runs"]))
    table.add_row("Successful Runs", str(db_stats["successful_runs"]))

    console.print(table)


@cli.command()
def config():
    """Show current configuration (excluding secrets)."""
    settings = get_settings()

    console.print(Panel("[bold blue]Current Configuration[/bold blue]"))

    console.print("\n[cyan]Ingestion:[/cyan]")
    console.print(f"  recency_hours:         {settings.recency_hours}")
    console.print(f"  max_items_per_feed:    {settings.max_items_per_feed}")
    console.print(f"  retention_days:        {settings.retention_days}")
    console.print(f"  ingest_concurrency:    {settings.ingest_concurrency}")
    console.print(f"  summary_rules:         {settings.summary_rules}")

    console.print("\n[cyan]Fetching:[/cyan]")
    console.print(f"  fetch_timeout_seconds: {settings.fetch_timeout_seconds}")
    console.print(f"  user_agent:            {settings.user_agent}")

    console.print("\n[cyan]Protocol:[/cyan]")
    console.print(f"  keepalive_seconds:     {settings.keepalive_seconds}")
    console.print(f"  public_base_url:       {settings.public_base_url or '(from request)'}")
    console.print(f"  protocol_version:      {settings.protocol_version}")

    console.print("\n[cyan]Database:[/cyan]")
    console.print(f"  backend: {'postgres' if settings.is_postgres else 'sqlite'}")

    console.print("\n[cyan]Scheduler:[/cyan]")
    console.print(f"  enable_scheduler: {settings.enable_scheduler}")
    console.print(f"  schedule_hours:   {settings.schedule_hours}")


@cli.command("subscriber-add")
@click.argument("email")
@click.option("--name", "-n", type=str, help="Display name")
def subscriber_add(email: str, name: str):
    """Create a subscriber and issue its protocol token."""
    db = get_database()
    subscriber = create_subscriber(db, email, name)
    token = ensure_token(db, subscriber.id)
    console.print(f"[green]Subscriber {subscriber.id} created[/green]")
    console.print(f"Token: {token}")


@cli.command("feed-add")
@click.argument("subscriber_id", type=int)
@click.argument("feed_url")
@click.argument("name")
@click.option("--category", "-c", type=str, help="Category (default: custom)")
def feed_add(subscriber_id: int, feed_url: str, name: str, category: str):
    """Subscribe a subscriber to a feed."""
    registry = FeedRegistry(get_database())
    try:
        sub = registry.add_subscription(subscriber_id, feed_url, name, category)
    except (SubscriptionExistsError, SubscriberNotFoundError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise click.Abort()

    console.print(f"[green]Subscription {sub.id} added: {sub.display_name} ({sub.feed_url})[/green]")


@cli.command("feed-list")
@click.argument("subscriber_id", type=int)
def feed_list(subscriber_id: int):
    """List a subscriber's feeds."""
    subs = FeedRegistry(get_database()).list_subscriptions(subscriber_id)

    table = Table(title=f"Feeds for subscriber {subscriber_id}")
    table.add_column("ID")
    table.add_column("Name", style="cyan")
    table.add_column("Category", style="yellow")
    table.add_column("Enabled")
    table.add_column("Last Fetched")
    table.add_column("Last Error", style="red")

    for sub in subs:
        enabled = "[green]Yes[/green]" if sub.enabled else "[red]No[/red]"
        fetched = sub.last_fetched_at.isoformat() if sub.last_fetched_at else "never"
        table.add_row(str(sub.id), sub.display_name, sub.category, enabled, fetched, sub.last_error or "")

    console.print(table)
    console.print(f"\nTotal: {len(subs)}")


def _set_enabled(subscriber_id: int, subscription_id: int, enabled: bool) -> None:
    try:
        FeedRegistry(get_database()).update_subscription(subscriber_id, subscription_id, enabled=enabled)
    except SubscriptionNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise click.Abort()
    console.print(f"[green]Subscription {subscription_id} {'enabled' if enabled else 'disabled'}[/green]")


@cli.command("feed-enable")
@click.argument("subscriber_id", type=int)
@click.argument("subscription_id", type=int)
def feed_enable(subscriber_id: int, subscription_id: int):
    """Enable a subscription."""
    _set_enabled(subscriber_id, subscription_id, True)


@cli.command("feed-disable")
@click.argument("subscriber_id", type=int)
@click.argument("subscription_id", type=int)
def feed_disable(subscriber_id: int, subscription_id: int):
    """Disable a subscription (it is skipped by passes)."""
    _set_enabled(subscriber_id, subscription_id, False)


@cli.command("feed-remove")
@click.argument("subscriber_id", type=int)
@click.argument("subscription_id", type=int)
def feed_remove(subscriber_id: int, subscription_id: int):
    """Delete a subscription."""
    try:
        FeedRegistry(get_database()).delete_subscription(subscriber_id, subscription_id)
    except SubscriptionNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise click.Abort()
    console.print(f"[green]Subscription {subscription_id} removed[/green]")


@cli.command()
@click.argument("subscriber_id", type=int)
@click.option("--regenerate", is_flag=True, help="Issue a new token; the old one stops working")
def token(subscriber_id: int, regenerate: bool):
    """Show (or regenerate) a subscriber's protocol token."""
    db = get_database()
    try:
        value = regenerate_token(db, subscriber_id) if regenerate else ensure_token(db, subscriber_id)
    except SubscriberNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise click.Abort()

    settings = get_settings()
    base = (settings.public_base_url or f"http://localhost:{settings.port}").rstrip("/")
    console.print(f"Token: {value}")
    console.print(f"Stream: {base}/stream/{value}/open")


@cli.command()
@click.argument("subscriber_id", type=int)
@click.argument("item_id", type=int)
@click.option("--yes/--no", "accepted", default=True, help="Accept or reject the item")
@click.option("--note", "-n", type=str, help="Note stored with the decision")
@click.option("--undo", is_flag=True, help="Remove the decision and re-queue the item")
def decide(subscriber_id: int, item_id: int, accepted: bool, note: str, undo: bool):
    """Record a yes/no decision on a queued item."""
    queue = FanoutQueue(get_database())

    if undo:
        if queue.undo_decision(subscriber_id, item_id):
            console.print(f"[green]Decision on item {item_id} removed[/green]")
        else:
            console.print(f"[yellow]No decision on item {item_id}[/yellow]")
        return

    queue.record_decision(subscriber_id, item_id, accepted, note)
    console.print(f"[green]Item {item_id} marked {'yes' if accepted else 'no'}[/green]")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
