"""Command-line interface for mail-wizard.

Usage:
    mail-wizard serve
    mail-wizard scheduled list --chat-id 12345 --limit 20
    mail-wizard scheduled pending
    mail-wizard scheduled tick

Example:
    $ MW_TELEGRAM_TOKEN=123:abc MW_SMTP_USER=me@example.com \\
        MW_SMTP_PASSWORD=secret mail-wizard serve
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, List, Optional

import click
from rich.console import Console
from rich.table import Table

from mail_wizard import __version__
from mail_wizard.app import MailWizard, build_mailer
from mail_wizard.config import load_settings
from mail_wizard.errors import ConfigurationError
from mail_wizard.logger import configure_logging
from mail_wizard.models import ScheduledEmail
from mail_wizard.persistence import Persistence
from mail_wizard.scheduler import ScheduledWorker

console = Console()
err_console = Console(stderr=True)

DEFAULT_DB_PATH = "botdata.db"


def get_persistence(db_path: str) -> Persistence:
    """Create a Persistence instance with the given database path."""
    return Persistence(db_path)


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


def _load_settings_or_exit(config_path: Optional[str]):
    try:
        return load_settings(config_path)
    except ConfigurationError as exc:
        print_error(str(exc))
        sys.exit(1)


def _render_records(records: List[ScheduledEmail], title: str) -> None:
    table = Table(title=title)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Chat", justify="right")
    table.add_column("To")
    table.add_column("Subject")
    table.add_column("Send at")
    table.add_column("Status", justify="center")
    table.add_column("Files", justify="right")

    for rec in records:
        status = "[yellow]pending[/yellow]" if rec.status.value == "pending" else "[green]sent[/green]"
        table.add_row(
            str(rec.id),
            str(rec.chat_id),
            rec.recipients,
            rec.subject or "-",
            rec.send_at,
            status,
            str(len(rec.attachments)),
        )

    console.print(table)


@click.group()
@click.version_option(__version__)
@click.option(
    "--config",
    "config_path",
    envvar="MW_CONFIG",
    default=None,
    help="Path to the INI configuration file (default: config.ini).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """mail-wizard: compose emails from a Telegram chat."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command("serve")
@click.option("--log-level", default=None, help="Logging level (default: MW_LOG_LEVEL or INFO).")
@click.pass_context
def serve(ctx: click.Context, log_level: Optional[str]) -> None:
    """Run the bot until interrupted."""
    configure_logging(log_level)
    settings = _load_settings_or_exit(ctx.obj["config_path"])
    console.print(f"[bold]mail-wizard[/bold] {__version__} polling Telegram, db={settings.db_path}")
    try:
        run_async(MailWizard(settings).run())
    except ConfigurationError as exc:
        print_error(str(exc))
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


@main.group("scheduled", invoke_without_command=True)
@click.option("--db", "db_path", envvar="MW_DB_PATH", default=None, help=f"SQLite database path (default: {DEFAULT_DB_PATH}).")
@click.pass_context
def scheduled(ctx: click.Context, db_path: str) -> None:
    """Inspect and drive the scheduled-send store."""
    ctx.obj["db_path"] = db_path
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@scheduled.command("list")
@click.option("--chat-id", type=int, default=None, help="Only show emails of this chat.")
@click.option("--limit", "-l", type=int, default=20, show_default=True, help="Maximum rows to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def scheduled_list(ctx: click.Context, chat_id: Optional[int], limit: int, as_json: bool) -> None:
    """List scheduled emails, newest first."""
    persistence = get_persistence(ctx.obj["db_path"] or DEFAULT_DB_PATH)

    async def _list():
        await persistence.init_db()
        if chat_id is not None:
            return await persistence.list_by_chat(chat_id, limit)
        return await persistence.list_all(limit)

    records = run_async(_list())

    if as_json:
        print_json([rec.model_dump(mode="json") for rec in records])
        return

    if not records:
        console.print("[dim]No scheduled emails found.[/dim]")
        return

    _render_records(records, "Scheduled emails")


@scheduled.command("pending")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def scheduled_pending(ctx: click.Context, as_json: bool) -> None:
    """Show emails still waiting for delivery."""
    persistence = get_persistence(ctx.obj["db_path"] or DEFAULT_DB_PATH)

    async def _pending():
        await persistence.init_db()
        return await persistence.list_pending()

    records = run_async(_pending())

    if as_json:
        print_json({"pending": len(records), "emails": [rec.model_dump(mode="json") for rec in records]})
        return

    console.print(f"Pending: [bold]{len(records)}[/bold]")
    if records:
        _render_records(records, "Pending emails")


@scheduled.command("tick")
@click.pass_context
def scheduled_tick(ctx: click.Context) -> None:
    """Deliver every due email once and exit."""
    configure_logging()
    settings = _load_settings_or_exit(ctx.obj["config_path"])
    persistence = get_persistence(ctx.obj["db_path"] or settings.db_path)
    worker = ScheduledWorker(persistence, build_mailer(settings), timezone=settings.tzinfo)

    async def _tick():
        await persistence.init_db()
        return await worker.tick()

    sent = run_async(_tick())
    if sent:
        print_success(f"Marked {len(sent)} email(s) as sent: {', '.join(str(i) for i in sent)}")
    else:
        console.print("[dim]Nothing due.[/dim]")


if __name__ == "__main__":
    main()
