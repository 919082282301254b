#!/usr/bin/env python3
"""
Follow-up Bot Daemon.
Long-running service that runs the scheduler tick and the send queue for one
bot instance, plus read-only status commands for operators.

Usage:
    followup-bot run --dry-run
    followup-bot run --channel mypackage.whatsapp:create_channel
    followup-bot status
    followup-bot contacts --stage negotiating
"""
import argparse
import asyncio
import importlib
import logging
import signal
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from followup_bot.core.bot import EngagementBot
from followup_bot.core.config import Settings, load_settings
from followup_bot.core.events import EventLog
from followup_bot.core.models import ConnectionState
from followup_bot.database.kv_store import JsonFileStore
from followup_bot.messaging.channel import DryRunChannel, MessagingChannel

console = Console()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def load_channel(spec: Optional[str], dry_run: bool) -> MessagingChannel:
    """
    Resolve the messaging channel.

    Args:
        spec: ``"module:factory"`` path of a zero-argument channel factory.
        dry_run: Use :class:`DryRunChannel` regardless of ``spec``.

    Raises:
        ValueError: If no channel can be resolved.
    """
    if dry_run:
        return DryRunChannel()
    if not spec or ":" not in spec:
        raise ValueError("No channel configured: pass --channel module:factory or --dry-run")
    module_name, factory_name = spec.split(":", 1)
    factory = getattr(importlib.import_module(module_name), factory_name)
    return factory()


def build_bot(settings: Settings, channel: MessagingChannel) -> EngagementBot:
    store = JsonFileStore(settings.bot_dir)
    events = EventLog(settings.bot_dir / "events.jsonl")
    return EngagementBot(channel=channel, store=store, settings=settings, events=events, console=console)


def create_status_table(bot: EngagementBot) -> Table:
    """Create a status table for display."""
    status = bot.get_status()
    stats = bot.get_stats()

    table = Table(title=f"Follow-up Bot Status ({bot.settings.bot_id})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Connected", "yes" if status.connected else "no")
    table.add_row("Enabled", "yes" if status.enabled else "no")
    table.add_row("Queue Size", str(status.queue_size))
    table.add_row("Contacts", str(stats["contacts"]))
    for stage, count in stats["byStage"].items():
        table.add_row(f"  {stage}", str(count))
    table.add_row("Clients", str(stats["clients"]))
    table.add_row("Blocked", str(stats["blocked"]))
    table.add_row("Sent Today", str(stats["sentToday"]))
    table.add_row("Total Sent", str(stats["totalSent"]))
    table.add_row("Pending Reminders", str(stats["pendingAgenda"]))
    table.add_row("Pending Deferred Starts", str(stats["pendingDeferred"]))
    years = stats["vehicleYears"]
    table.add_row(
        "Vehicle Years (below / at-or-above / unknown)",
        f"{years['belowMinimum']} / {years['atOrAboveMinimum']} / {years['unknown']}",
    )
    if status.last_error:
        table.add_row("Last Error", f"[red]{status.last_error}[/red]")
    return table


def create_contacts_table(bot: EngagementBot, stage: Optional[str]) -> Table:
    table = Table(title="Contacts")
    for column in ("Handle", "Stage", "Step", "Next Eligible", "Year", "Flags"):
        table.add_column(column)

    now = bot.clock()
    for record in sorted(bot.contacts.all(), key=lambda r: r.handle):
        if stage and record.stage != stage:
            continue
        flags = []
        if record.blocked:
            flags.append("blocked")
        if record.is_client:
            flags.append("client")
        if record.is_paused(now):
            flags.append("paused")
        if record.is_manual_off(now):
            flags.append("manual-off")
        table.add_row(
            record.handle,
            record.stage,
            str(record.step_index),
            record.next_eligible_at.isoformat(timespec="minutes") if record.next_eligible_at else "-",
            str(record.detected_year or "-"),
            ", ".join(flags),
        )
    return table


async def run(settings: Settings, channel: MessagingChannel) -> None:
    """Run the bot until SIGINT/SIGTERM."""
    bot = build_bot(settings, channel)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    console.print(Panel.fit(
        "[bold green]Follow-up Bot Daemon Started[/bold green]\n"
        f"Data: {settings.bot_dir}\n"
        "Press Ctrl+C to stop",
        title="Status",
    ))

    bot.attach_channel()
    await bot.start()
    console.print(create_status_table(bot))
    try:
        await stop_event.wait()
    finally:
        console.print("[yellow]Shutting down...[/yellow]")
        await bot.stop()
        console.print(create_status_table(bot))


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(prog="followup-bot", description="Follow-up Bot Daemon")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Run the scheduler and send queue")
    run_parser.add_argument("--dry-run", action="store_true", help="Log messages instead of sending")
    run_parser.add_argument("--channel", default=None, help="Channel factory as module:callable")

    sub.add_parser("status", help="Show bot status and counters")

    contacts_parser = sub.add_parser("contacts", help="List tracked contacts")
    contacts_parser.add_argument("--stage", default=None, help="Only contacts in this stage")

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except ValueError as e:
        console.print(f"[red bold]Invalid settings: {e}[/red bold]")
        return 2
    setup_logging(settings.log_level)

    if args.command == "run":
        try:
            channel = load_channel(args.channel, args.dry_run)
        except (ValueError, ImportError, AttributeError) as e:
            console.print(f"[red bold]{e}[/red bold]")
            return 2
        asyncio.run(run(settings, channel))
        return 0

    bot = build_bot(settings, DryRunChannel(state=ConnectionState.DISCONNECTED))
    bot.load()
    if args.command == "status":
        console.print(create_status_table(bot))
    elif args.command == "contacts":
        console.print(create_contacts_table(bot, args.stage))
    return 0


if __name__ == "__main__":
    sys.exit(main())
