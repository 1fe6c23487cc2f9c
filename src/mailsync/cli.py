"""Command line entry point for mailsync."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .configuration import Settings, resolve_settings
from .errors import ConfigError
from .imap.accounts import Account, AccountRegistry
from .imap.session_manager import SessionManager
from .sink import InMemoryIndexSink, LoggingBroadcaster, SinkDispatcher

console = Console()
app = typer.Typer(help="Keep IMAP mailboxes synchronized into a search index")

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _load(config: Optional[Path]) -> tuple[Settings, List[Account]]:
    try:
        settings = resolve_settings(config)
    except ConfigError as e:
        console.print(f"[bold red]Configuration error: {e.message}[/bold red]")
        raise typer.Exit(1)
    return settings, AccountRegistry.from_settings(settings).load()


@app.command("accounts")
def list_accounts(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.json"),
    json_out: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """List the configured mail accounts."""
    _, accounts = _load(config)

    if json_out:
        typer.echo(json.dumps([account.model_dump(mode="json") for account in accounts]))
        return
    if not accounts:
        console.print("[yellow]No mail accounts configured[/yellow]")
        return

    table = Table(title="Mail accounts")
    table.add_column("ID", style="cyan")
    table.add_column("Address")
    table.add_column("Server")
    table.add_column("Security")
    table.add_column("Active")
    for account in accounts:
        table.add_row(
            account.id,
            account.address,
            f"{account.host}:{account.port}",
            account.security.value,
            "yes" if account.active else "[dim]no[/dim]",
        )
    console.print(table)


@app.command("run")
def run(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.json"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Synchronize every active account until interrupted."""
    _configure_logging(log_level)
    settings, accounts = _load(config)
    if not accounts:
        console.print("[yellow]No mail accounts configured; nothing to synchronize[/yellow]")
        return

    console.print(f"[bold green]Syncing {len(accounts)} account(s)[/bold green]")
    console.print("Press Ctrl+C to stop\n")
    asyncio.run(run_engine(settings, accounts))
    console.print("[bold green]Sync stopped[/bold green]")


async def run_engine(
    settings: Settings,
    accounts: List[Account],
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Run one session manager until ``shutdown_event`` or SIGINT/SIGTERM."""
    shutdown_event = shutdown_event or asyncio.Event()
    manager = SessionManager(settings.sync)
    subscription = manager.subscribe()
    dispatcher = SinkDispatcher(
        subscription,
        index_sink=InMemoryIndexSink(),
        broadcaster=LoggingBroadcaster(),
    )
    dispatch_task = asyncio.create_task(dispatcher.run())

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for {sig.name}")
        else:
            installed.append(sig)

    try:
        await manager.start_all(accounts)
        await shutdown_event.wait()
    finally:
        logger.info("Shutting down sync sessions")
        await manager.stop_all()
        subscription.close()
        await dispatch_task
        for sig in installed:
            loop.remove_signal_handler(sig)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
