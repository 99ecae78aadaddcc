"""
Sync Orchestrator -- one full mirror run, start to finish.

    lock pair -> unseal credentials -> prune old archives
      -> source: login, unlock, export, logout -> encode archive
      -> destination: login, unlock, export (purge plan)
      -> purge folders, items, attachments
      -> select latest archive -> decode -> import
      -> release sessions and secrets -> summary

Cleanup is owned by an ExitStack, so sessions are logged out, token
files erased, secrets dropped, and the pair lock released on every exit
path: success, fatal error, Ctrl-C, or SIGTERM/SIGHUP.

The dangerous window is between a finished purge and a finished import:
an interruption there leaves the destination empty. Every run purges
before it imports, so simply running again converges on the same state.
"""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from pydantic import SecretStr

from .archive import ArchiveCodec
from .client import BitwardenCLI, VaultClient
from .config import SyncSettings, TargetSettings
from .credentials import CredentialVault
from .exceptions import ConfigError, RunInterrupted
from .exporter import ExportEngine
from .importer import ImportEngine
from .lock import PairLock
from .models import (
    ArchiveFile,
    Category,
    DeletionCounts,
    ExportSnapshot,
    RunStatus,
    SyncRun,
    VaultTarget,
)
from .purge import PurgeEngine
from .session import SessionManager

logger = logging.getLogger("vaultmirror.orchestrator")

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


@contextmanager
def termination_signals(signals: tuple[signal.Signals, ...] = TERMINATION_SIGNALS) -> Iterator[None]:
    """Turn termination signals into RunInterrupted for the duration of the block.

    Only the main thread may install handlers; elsewhere this is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _raise(signum, frame):
        raise RunInterrupted(signum)

    previous = {sig: signal.signal(sig, _raise) for sig in signals}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def summary_lines(run: SyncRun) -> list[str]:
    """Human-readable end-of-run summary."""
    lines = [f"Run {run.run_id}: {run.status.value}" + (" (dry-run)" if run.dry_run else "")]
    if run.purge is not None:
        prefix = "Would delete" if run.dry_run else "Deleted"
        for category in (Category.FOLDER, Category.ITEM, Category.ATTACHMENT):
            r = run.purge.get(category)
            line = f"{prefix} {category.plural}: {r.succeeded}/{r.attempted}"
            if r.failed:
                line += f" ({r.failed} failed)"
            lines.append(line)
    if run.imported_archive is not None:
        verb = "Would import" if run.dry_run else "Imported"
        lines.append(f"{verb}: {run.imported_archive.name}")
    if run.error:
        lines.append(f"Error ({run.error_type}): {run.error}")
    return lines


class SyncOrchestrator:
    """Sequences a complete mirror run.

    Args:
        settings: Validated run configuration.
        client: Vault service capability. Defaults to the ``bw`` CLI.
        vault: Credential unsealer.
        sleep: Sleep function used by the purge rate limiter.
    """

    def __init__(
        self,
        settings: SyncSettings,
        client: Optional[VaultClient] = None,
        vault: Optional[CredentialVault] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.settings = settings
        self.client = client or BitwardenCLI(
            settings.runtime_dir, settings.bw_binary, settings.command_timeout
        )
        self.vault = vault or CredentialVault()
        self.codec = ArchiveCodec(
            settings.backup_dir,
            archive_retention_days=settings.archive_retention_days,
            plaintext_retention_days=settings.plaintext_retention_days,
            iterations=settings.pbkdf2_iterations,
        )
        self.sessions = SessionManager(self.client, settings.runtime_dir)
        self.exporter = ExportEngine(self.client)
        self.purger = PurgeEngine(self.client, settings.rate_limit_delay, sleep)
        self.importer = ImportEngine(self.client)
        self.last_run: Optional[SyncRun] = None
        self._secrets: dict[str, str] = {}

    def run(self, dry_run: Optional[bool] = None) -> SyncRun:
        """Execute the full pipeline once.

        Args:
            dry_run: Override ``settings.dry_run`` for this run.

        Returns:
            The finalized SyncRun. It is also kept on ``last_run``.

        Raises:
            SyncError: Any fatal error, after cleanup has completed.
            KeyboardInterrupt: On Ctrl-C, after cleanup has completed.
        """
        dry_run = self.settings.dry_run if dry_run is None else dry_run
        run = SyncRun(dry_run=dry_run)
        self.last_run = run
        logger.info("Starting vault sync run=%s dry_run=%s", run.run_id, dry_run)

        try:
            with ExitStack() as stack:
                stack.enter_context(termination_signals())
                self._execute(run, stack)
        except (RunInterrupted, KeyboardInterrupt) as exc:
            run.status = RunStatus.INTERRUPTED
            run.error = str(exc) or "Interrupted"
            run.error_type = type(exc).__name__
            raise
        except Exception as exc:
            run.status = RunStatus.FAILED
            run.error = str(exc)
            run.error_type = type(exc).__name__
            raise
        else:
            failed = run.purge.total_failed if run.purge else 0
            run.status = RunStatus.PARTIAL if failed else RunStatus.SUCCEEDED
        finally:
            run.finished_at = datetime.now(timezone.utc)
            log = logger.info if run.status == RunStatus.SUCCEEDED else logger.warning
            for line in summary_lines(run):
                log(line)
        return run

    def _execute(self, run: SyncRun, stack: ExitStack) -> None:
        settings = self.settings
        settings.validate_targets()
        settings.ensure_dirs()

        stack.enter_context(
            PairLock(settings.lock_dir, settings.source.identity, settings.destination.identity)
        )
        stack.callback(self._release_secrets)
        stack.callback(self.sessions.close_all)

        with self._stage("unseal"):
            self._unseal()
        if not self.client.available():
            raise ConfigError("Vault client is not available (is the bw CLI installed?)")

        with self._stage("retention"):
            self.codec.prune()

        passphrase = self._secrets["archive_passphrase"]

        # Backup
        source = self._build_target("source", settings.source)
        with self._stage("source-export"):
            with self.sessions.open(source) as session:
                snapshot = self.exporter.export(session)
        run.source_totals = snapshot.totals()
        if run.dry_run:
            logger.info(
                "[DRY-RUN] Source holds %d folders, %d items, %d attachments",
                run.source_totals["folders"], run.source_totals["items"],
                run.source_totals["attachments"],
            )

        with self._stage("archive"):
            archive = self.codec.encode(snapshot, passphrase)
        run.archive = archive.path
        del snapshot

        # Restore
        destination = self._build_target("destination", settings.destination)
        with self.sessions.open(destination) as session:
            with self._stage("destination-export"):
                current = self.exporter.export(session)
            run.destination_totals = current.totals()
            logger.info(
                "Destination vault contains %d folders, %d items, %d attachments.",
                run.destination_totals["folders"], run.destination_totals["items"],
                run.destination_totals["attachments"],
            )

            restore: Optional[tuple[ArchiveFile, ExportSnapshot]] = None
            if settings.verify_archive_before_purge:
                with self._stage("verify-archive"):
                    restore = self._load_latest(passphrase)

            with self._stage("purge"):
                report = self.purger.purge(session, current, run.dry_run)
            run.purge = report
            run.counts = DeletionCounts.from_report(report)

            if restore is None:
                with self._stage("select-archive"):
                    restore = self._load_latest(passphrase)
            latest, restored = restore

            with self._stage("import"):
                run.import_result = self.importer.import_snapshot(
                    session, restored, latest, run.dry_run
                )
            run.imported_archive = run.import_result.archive

    def _load_latest(self, passphrase: str) -> tuple[ArchiveFile, ExportSnapshot]:
        latest = self.importer.select_latest_archive(self.codec.backup_dir)
        return latest, self.codec.decode(latest, passphrase)

    def _unseal(self) -> None:
        """Open every sealed secret up front; any failure aborts before network contact."""
        s = self.settings
        refs = {
            "archive_passphrase": s.archive_passphrase,
            "source.client_secret": s.source.client_secret,
            "source.master_passphrase": s.source.master_passphrase,
            "destination.client_secret": s.destination.client_secret,
            "destination.master_passphrase": s.destination.master_passphrase,
        }
        for name, ref in refs.items():
            if ref is None:
                raise ConfigError(f"No sealed secret configured for {name}")
            self._secrets[name] = self.vault.unseal_ref(ref)
        logger.info("Unsealed %d credentials", len(refs))

    def _build_target(self, name: str, target: TargetSettings) -> VaultTarget:
        return VaultTarget(
            name=name,
            account_id=target.account_id,
            server_url=target.server_url,
            client_id=target.client_id,
            client_secret=SecretStr(self._secrets[f"{name}.client_secret"]),
            master_passphrase=SecretStr(self._secrets[f"{name}.master_passphrase"]),
        )

    def _release_secrets(self) -> None:
        self._secrets.clear()
        logger.debug("In-memory secrets released")

    @contextmanager
    def _stage(self, name: str) -> Iterator[None]:
        logger.info("stage=%s status=started", name)
        try:
            yield
        except BaseException as exc:
            logger.error("stage=%s status=failed error=%s", name, type(exc).__name__)
            raise
        logger.info("stage=%s status=done", name)
