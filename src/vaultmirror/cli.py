"""
vaultmirror CLI -- one command, one run.

Entry points:
    vaultmirror        run the mirror pipeline once (cron-friendly)
    vaultmirror-seal   seal a credential read from stdin

Exit status is 0 on success (dry-run included), 1 when some deletes
failed, and the error's own code for fatal failures (see exceptions).
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import VAULTMIRROR_HOME, __version__
from .config import SECRET_NAMES, load_settings, sealed_ref
from .credentials import CredentialVault, generate_key_file
from .exceptions import ConfigError, SyncError
from .logs import configure_logging
from .models import PURGE_ORDER, RunStatus, SyncRun
from .orchestrator import SyncOrchestrator

console = Console()

_STATUS_STYLE = {
    RunStatus.SUCCEEDED: "[bold green]SUCCEEDED[/]",
    RunStatus.PARTIAL: "[bold yellow]PARTIAL[/]",
    RunStatus.FAILED: "[bold red]FAILED[/]",
    RunStatus.INTERRUPTED: "[bold red]INTERRUPTED[/]",
    RunStatus.RUNNING: "[dim]RUNNING[/]",
}


def render_summary(run: Optional[SyncRun]) -> None:
    """Print the end-of-run summary panel and purge table."""
    if run is None:
        return

    title = "Dry-Run Summary" if run.dry_run else "Sync Summary"
    lines = [f"Status: {_STATUS_STYLE.get(run.status, run.status.value)}"]
    if run.source_totals:
        lines.append(
            "Source: {folders} folders, {items} items, {attachments} attachments".format(**run.source_totals)
        )
    if run.archive is not None:
        lines.append(f"Archive: [cyan]{run.archive.name}[/]")
    if run.imported_archive is not None:
        verb = "Would import" if run.dry_run else "Imported"
        lines.append(f"{verb}: [cyan]{run.imported_archive.name}[/]")
    if run.error:
        lines.append(f"[red]{run.error_type}: {run.error}[/]")

    border = "green" if run.status == RunStatus.SUCCEEDED else "yellow" if run.status == RunStatus.PARTIAL else "red"
    console.print(Panel("\n".join(lines), title=title, border_style=border))

    if run.purge is None:
        return

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Category", style="cyan")
    table.add_column("Would delete" if run.dry_run else "Attempted", justify="right")
    table.add_column("Succeeded", justify="right")
    table.add_column("Failed", justify="right")
    for category in PURGE_ORDER:
        r = run.purge.get(category)
        failed = f"[red]{r.failed}[/]" if r.failed else "0"
        table.add_row(category.plural, str(r.attempted), str(r.succeeded), failed)
    console.print(table)
    console.print()


@click.command()
@click.version_option(version=__version__, prog_name="vaultmirror")
@click.option("--home", default=VAULTMIRROR_HOME, type=click.Path(), help="Working directory.")
@click.option("--config", "config_file", default=None, type=click.Path(dir_okay=False), help="YAML config file.")
@click.option("--dry-run/--apply", "dry_run", default=None, help="Simulate deletes and import, or apply them.")
@click.option("--source-account", default=None, help="Source account id.")
@click.option("--source-server", default=None, help="Source server URL.")
@click.option("--source-client-id", default=None, help="Source API client id.")
@click.option("--dest-account", default=None, help="Destination account id.")
@click.option("--dest-server", default=None, help="Destination server URL.")
@click.option("--dest-client-id", default=None, help="Destination API client id.")
@click.option("--delay", type=float, default=None, help="Seconds between delete calls.")
@click.option(
    "--verify-archive/--no-verify-archive", "verify_archive", default=None,
    help="Decode the restore archive before purging the destination.",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def main(
    home: str,
    config_file: Optional[str],
    dry_run: Optional[bool],
    source_account: Optional[str],
    source_server: Optional[str],
    source_client_id: Optional[str],
    dest_account: Optional[str],
    dest_server: Optional[str],
    dest_client_id: Optional[str],
    delay: Optional[float],
    verify_archive: Optional[bool],
    verbose: bool,
):
    """Mirror the source vault into the destination vault.

    Exports the source, archives it encrypted, purges the destination,
    and imports the newest archive.

    Examples:

        vaultmirror --dry-run

        vaultmirror --apply --delay 0.25
    """
    try:
        settings = load_settings(
            home=Path(home).expanduser(),
            config_file=Path(config_file) if config_file else None,
            overrides={
                "dry_run": dry_run,
                "rate_limit_delay": delay,
                "verify_archive_before_purge": verify_archive,
                "source.account_id": source_account,
                "source.server_url": source_server,
                "source.client_id": source_client_id,
                "destination.account_id": dest_account,
                "destination.server_url": dest_server,
                "destination.client_id": dest_client_id,
            },
        )
    except ConfigError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(exc.exit_code)

    log_file = configure_logging(settings.log_dir, settings.log_retention_days, verbose)
    if log_file is not None:
        console.print(f"[dim]Log: {log_file}[/]")

    orchestrator = SyncOrchestrator(settings)
    try:
        run = orchestrator.run()
    except SyncError as exc:
        render_summary(orchestrator.last_run)
        sys.exit(exc.exit_code)
    except KeyboardInterrupt:
        render_summary(orchestrator.last_run)
        sys.exit(130)

    render_summary(run)
    if run.status == RunStatus.PARTIAL:
        sys.exit(1)


@click.command()
@click.version_option(version=__version__, prog_name="vaultmirror-seal")
@click.argument("name", type=click.Choice(SECRET_NAMES))
@click.option("--home", default=VAULTMIRROR_HOME, type=click.Path(), help="Working directory.")
@click.option("--key-file", default=None, type=click.Path(dir_okay=False), help="Key file (default: <home>/secrets/NAME.key).")
@click.option("--output", "-o", default=None, type=click.Path(dir_okay=False), help="Sealed file (default: <home>/secrets/NAME.enc).")
@click.option("--generate-key", is_flag=True, help="Create the key file with random material first.")
def seal_main(name: str, home: str, key_file: Optional[str], output: Optional[str], generate_key: bool):
    """Seal a secret read from stdin.

    Examples:

        printf '%s' "$MASTER_PW" | vaultmirror-seal source_master_passphrase --generate-key
    """
    ref = sealed_ref(Path(home).expanduser(), name)
    if key_file:
        ref.key_file = Path(key_file).expanduser()
    if output:
        ref.sealed_file = Path(output).expanduser()

    secret = click.get_text_stream("stdin").read().rstrip("\r\n")
    if not secret:
        console.print("[red]No secret on stdin.[/]")
        sys.exit(ConfigError.exit_code)

    try:
        if generate_key:
            generate_key_file(ref.key_file)
        path = CredentialVault().seal_to_file(secret, ref)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(exc.exit_code)

    console.print(f"[green]Sealed[/] {name} -> [cyan]{path}[/]")
