"""
Command-line interface for Instantiate

Runs webhook payloads and queued event messages through the stack lifecycle,
reconciles stack health and inspects the ledger.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click

from .config import InstantiateConfig, load_config
from .database import PostgresStore, create_pool
from .environment.stack_manager import StackManager
from .health import HealthChecker
from .logging_config import setup_logging
from .models import Handled, Provider
from .store import InMemoryStore, Store, StoreError
from .webhooks import parse_webhook
from .worker import EventWorker, MessageError, decode_message, message_from_outcome


def build_store(config: InstantiateConfig) -> Store:
    """PostgreSQL ledger when configured, process local memory otherwise."""
    if config.database_url:
        return PostgresStore(create_pool(config.database_url, config.database_pool_size))
    click.echo("⚠️  No database configured, using an in-memory ledger", err=True)
    return InMemoryStore()


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.option(
    "--log-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory for log files",
)
@click.option(
    "--no-file-logging",
    is_flag=True,
    help="Only log to the console",
)
@click.version_option(package_name="instantiate")
@click.pass_context
def cli(
    ctx: click.Context,
    log_level: Optional[str],
    verbose: bool,
    log_dir: Optional[Path],
    no_file_logging: bool,
) -> None:
    """
    Instantiate: preview environments per merge request

    Deploys a stack when a merge request opens or changes and destroys it
    when the merge request closes.
    """
    config = load_config(
        cli_overrides={
            "log_level": log_level.upper() if log_level else None,
            "verbose": verbose or None,
            "log_dir": str(log_dir) if log_dir else None,
        },
    )

    setup_logging(
        log_dir=config.log_dir,
        verbose=config.verbose,
        log_level=config.log_level,
        enable_file_logging=not no_file_logging,
    )

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the merge_requests, exposed_ports and stacks tables."""
    config = ctx.obj["config"]
    if not config.database_url:
        click.echo("❌ INSTANTIATE_DATABASE_URL is not set", err=True)
        sys.exit(1)

    try:
        store = PostgresStore(create_pool(config.database_url, 1))
        store.initialize_schema()
    except StoreError as e:
        click.echo(f"❌ Schema initialization failed: {e}", err=True)
        sys.exit(1)
    click.echo("✅ Database schema ready")


@cli.command()
@click.argument("payload_file", type=click.File("r"))
@click.option(
    "--provider",
    type=click.Choice([provider.value for provider in Provider]),
    required=True,
    help="Provider that sent the webhook",
)
@click.option("--event", "event_kind", required=True, help="Value of the X-GitHub-Event or X-Gitlab-Event header")
@click.option("--project-key", default="", help="Project key the webhook was received for")
@click.option("--dry-run", is_flag=True, help="Only show the normalized event")
@click.pass_context
def webhook(
    ctx: click.Context,
    payload_file,
    provider: str,
    event_kind: str,
    project_key: str,
    dry_run: bool,
) -> None:
    """Normalize a webhook payload and process the resulting event.

    PAYLOAD_FILE: JSON body of the webhook ('-' for stdin)
    """
    config = ctx.obj["config"]

    try:
        body = json.load(payload_file)
    except json.JSONDecodeError as e:
        click.echo(f"❌ Invalid JSON payload: {e}", err=True)
        sys.exit(1)

    outcome = asyncio.run(parse_webhook(Provider(provider), body, event_kind, config))
    if not isinstance(outcome, Handled):
        click.echo(f"⏭️  Skipped: {outcome.reason}")
        return

    event = outcome.event
    click.echo(
        f"📨 {event.provider.value} {event.full_name} #{event.mr_display_id} "
        f"{event.branch}@{event.commit_sha[:8]} -> {event.status.value}"
        f"{' (forced)' if outcome.force_deploy else ''}"
    )
    if dry_run:
        return

    _run_message(config, message_from_outcome(outcome, project_key))


@cli.command()
@click.argument("message", type=click.File("r"))
@click.pass_context
def process(ctx: click.Context, message) -> None:
    """Process one queued event message.

    MESSAGE: file holding the JSON message ('-' for stdin)
    """
    config = ctx.obj["config"]
    try:
        event_message = decode_message(message.read())
    except MessageError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    _run_message(config, event_message)


def _run_message(config: InstantiateConfig, event_message) -> None:
    store = build_store(config)
    worker = EventWorker(StackManager(config, store), store)
    try:
        host_dns = asyncio.run(worker.handle(event_message))
    except Exception as e:
        click.echo(f"❌ Processing failed: {e}", err=True)
        sys.exit(1)

    if host_dns:
        click.echo(f"✅ Stack deployed under {host_dns}")
    else:
        click.echo("✅ Done")


@cli.command()
@click.option("--watch", is_flag=True, help="Keep checking on the configured interval")
@click.option("--interval", type=float, default=None, help="Seconds between checks (with --watch)")
@click.pass_context
def health(ctx: click.Context, watch: bool, interval: Optional[float]) -> None:
    """Check the health of every recorded stack."""
    config = ctx.obj["config"]
    checker = HealthChecker(build_store(config))

    if watch:
        try:
            asyncio.run(checker.run_forever(interval or config.health_interval))
        except KeyboardInterrupt:
            click.echo("Stopped")
        return

    results = asyncio.run(checker.check_all_stacks())
    if not results:
        click.echo("No stacks recorded")
        return
    for key, status in sorted(results.items()):
        icon = "✅" if status.value == "running" else "❌"
        click.echo(f"{icon} {key}: {status.value}")


@cli.command()
@click.pass_context
def stacks(ctx: click.Context) -> None:
    """List recorded stacks."""
    config = ctx.obj["config"]
    records = build_store(config).list_stacks()
    if not records:
        click.echo("No stacks recorded")
        return
    for record in records:
        click.echo(record.get_summary())


@cli.command("config-show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Display current configuration with secrets masked."""
    config = ctx.obj["config"]

    click.echo("Current Instantiate Configuration:")
    click.echo("=" * 40)
    for name, value in config.mask_sensitive_values().items():
        click.echo(f"{name:<20}: {value}")
    click.echo(f"{'host_dns':<20}: {config.host_dns}")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
