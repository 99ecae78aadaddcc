"""Restore stage -- pick the freshest archive and import it."""

from __future__ import annotations

import logging
from pathlib import Path

from .archive import ArchiveCodec
from .client import IMPORT_FORMAT, VaultClient
from .exceptions import ArchiveError
from .models import ArchiveFile, ExportSnapshot, ImportResult, Session

logger = logging.getLogger("vaultmirror.importer")


class ImportEngine:
    """Selects archives and submits snapshots to the destination."""

    def __init__(self, client: VaultClient, fmt: str = IMPORT_FORMAT):
        self.client = client
        self.fmt = fmt

    def select_latest_archive(self, directory: Path) -> ArchiveFile:
        """Return the most recently created valid archive in ``directory``.

        Raises:
            ArchiveError: If the directory holds no valid archive.
        """
        archives = ArchiveCodec(directory).list_archives()
        if not archives:
            raise ArchiveError(f"No backup archive found in {directory}")
        latest = archives[0]
        logger.info("Latest archive: %s", latest.path.name)
        return latest

    def import_snapshot(
        self,
        session: Session,
        snapshot: ExportSnapshot,
        archive: ArchiveFile,
        dry_run: bool,
    ) -> ImportResult:
        """Import the snapshot into the destination as a full document.

        Under dry-run only reports which archive would be imported.

        Raises:
            ImportRejectedError: If the destination refuses the import.
        """
        result = ImportResult(archive=archive.path, dry_run=dry_run, totals=snapshot.totals())
        if dry_run:
            logger.info("[DRY-RUN] Would import archive: %s", archive.path.name)
            return result

        logger.info("Importing %s into %s vault", archive.path.name, session.target.name)
        self.client.import_document(
            session.token.get_secret_value(),
            session.target,
            self.fmt,
            snapshot.to_document(),
        )
        result.imported = True
        logger.info("Import complete: %s", archive.path.name)
        return result
