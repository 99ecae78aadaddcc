"""
Destination purge -- ordered, rate-limited, best-effort deletion.

Categories are processed strictly as folder -> item -> attachment.
Within a category every id is attempted once; a failed delete is
counted and the loop moves on. A fixed delay follows every real delete
so consecutive destructive calls never come faster than the server's
quota allows. Under dry-run nothing is sent and every id counts as an
intended delete.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .client import VaultClient
from .exceptions import TransientOpError
from .models import PURGE_ORDER, CategoryReport, ExportSnapshot, PurgeReport, Session

logger = logging.getLogger("vaultmirror.purge")


class PurgeEngine:
    """Deletes everything a destination snapshot lists.

    Args:
        client: Vault service capability.
        delay: Seconds to wait after each delete request.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        client: VaultClient,
        delay: float = 0.1,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.client = client
        self.delay = delay
        self._sleep = sleep or time.sleep

    def purge(self, session: Session, snapshot: ExportSnapshot, dry_run: bool) -> PurgeReport:
        """Delete all folders, then items, then attachments.

        Args:
            session: Unlocked destination session.
            snapshot: Destination contents to remove.
            dry_run: Count intended deletes without issuing any request.

        Returns:
            Per-category attempted/succeeded/failed counts.
        """
        report = PurgeReport(dry_run=dry_run)
        token = session.token.get_secret_value()

        for category in PURGE_ORDER:
            ids = snapshot.ids(category)
            result = CategoryReport(category=category)
            report.categories[category] = result

            if not ids:
                logger.info("No %s to delete.", category.plural)
                continue

            logger.info("Preparing to delete %d %s...", len(ids), category.plural)
            for record_id in ids:
                result.attempted += 1
                if dry_run:
                    result.succeeded += 1
                    continue

                try:
                    self.client.delete(token, session.target, category, record_id)
                    result.succeeded += 1
                except TransientOpError as exc:
                    result.failed += 1
                    result.failed_ids.append(record_id)
                    logger.debug("Delete failed: %s", exc)
                self._sleep(self.delay)

            if dry_run:
                logger.info("[DRY-RUN] %d %s would be deleted.", result.succeeded, category.plural)
            else:
                logger.info("Deleted %d/%d %s.", result.succeeded, result.attempted, category.plural)
                if result.failed:
                    logger.warning("%d %s failed to delete.", result.failed, category.plural)

        return report
