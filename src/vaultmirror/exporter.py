"""Full-vault export from an unlocked session."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from .client import VaultClient
from .exceptions import AuthError, VaultCommandError
from .models import ExportSnapshot, Session

logger = logging.getLogger("vaultmirror.exporter")


class ExportEngine:
    """Fetches snapshots. Read-only, so it runs under dry-run as well."""

    def __init__(self, client: VaultClient):
        self.client = client

    def export(self, session: Session) -> ExportSnapshot:
        """Export every folder, item, and attachment visible to the session.

        Raises:
            AuthError: If the session is not unlocked or the token is refused.
            VaultCommandError: If the export document is unusable.
        """
        target = session.target
        if not session.is_unlocked:
            raise AuthError(
                f"Cannot export from {target.name}: session is {session.state.value}",
                target=target.name,
            )

        document = self.client.export(session.token.get_secret_value(), target)
        try:
            snapshot = ExportSnapshot.model_validate(document)
        except ValidationError as exc:
            raise VaultCommandError(f"Malformed export from {target.name}: {exc}") from exc

        totals = snapshot.totals()
        logger.info(
            "Exported %s vault: %d folders, %d items, %d attachments",
            target.name, totals["folders"], totals["items"], totals["attachments"],
        )
        return snapshot
