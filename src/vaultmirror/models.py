"""
Data models for the mirroring pipeline -- targets, sessions, snapshots,
archives, and the per-run report.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class Category(str, Enum):
    """Record categories in a vault export, named as the vault CLI names them."""

    FOLDER = "folder"
    ITEM = "item"
    ATTACHMENT = "attachment"

    @property
    def plural(self) -> str:
        return f"{self.value}s"


# Folders first: the coarsest containers go before anything that may reference them.
PURGE_ORDER: tuple[Category, ...] = (Category.FOLDER, Category.ITEM, Category.ATTACHMENT)

_NULL_IDS = {"", "null", "None"}


def target_identity(account_id: str, server_url: str) -> str:
    """Stable identifier for a vault endpoint (no secrets)."""
    return f"{account_id}@{server_url.rstrip('/')}"


class VaultTarget(BaseModel):
    """One endpoint of the mirror (source or destination).

    Holds decrypted credentials in memory only. Immutable once built.

    Attributes:
        name: Role label, "source" or "destination".
        account_id: Account e-mail / identifier on the server.
        server_url: Base URL of the vault server.
        client_id: API key client id.
        client_secret: API key client secret.
        master_passphrase: Master password used to unlock the vault.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    account_id: str
    server_url: str
    client_id: str
    client_secret: SecretStr
    master_passphrase: SecretStr

    @property
    def identity(self) -> str:
        return target_identity(self.account_id, self.server_url)


class SessionState(str, Enum):
    """Authentication lifecycle of a single target."""

    LOGGED_OUT = "logged_out"
    LOGGING_IN = "logging_in"
    LOGGED_IN = "logged_in"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"


class Session(BaseModel):
    """An unlocked, ephemeral handle on a vault target."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    target: VaultTarget
    token: SecretStr
    state: SessionState = SessionState.UNLOCKED
    token_file: Optional[Path] = None
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_unlocked(self) -> bool:
        return self.state == SessionState.UNLOCKED


class ExportSnapshot(BaseModel):
    """Full contents of a vault at one instant.

    Mirrors the vault's JSON export document. Unknown top-level keys
    (``encrypted``, ``collections``, ...) are preserved so that a
    snapshot survives an archive round-trip unchanged.
    """

    model_config = ConfigDict(extra="allow")

    folders: list[dict[str, Any]] = Field(default_factory=list)
    items: list[dict[str, Any]] = Field(default_factory=list)
    attachments: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("folders", "items", "attachments", mode="before")
    @classmethod
    def _null_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def records(self, category: Category) -> list[dict[str, Any]]:
        return getattr(self, category.plural)

    def ids(self, category: Category) -> list[str]:
        """Ordered record ids for a category, skipping empty or null ids."""
        result = []
        for record in self.records(category):
            raw = record.get("id") if isinstance(record, dict) else None
            if raw is None or str(raw) in _NULL_IDS:
                continue
            result.append(str(raw))
        return result

    def totals(self) -> dict[str, int]:
        return {c.plural: len(self.records(c)) for c in PURGE_ORDER}

    def to_document(self) -> dict[str, Any]:
        """Serialize back to the vault's JSON export shape."""
        return self.model_dump(mode="json")


class ArchiveFile(BaseModel):
    """An encrypted, compressed snapshot on disk."""

    model_config = ConfigDict(frozen=True)

    path: Path
    created_at: datetime
    size: int = 0

    @classmethod
    def from_path(cls, path: Path) -> "ArchiveFile":
        stat = path.stat()
        return cls(
            path=path,
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size=stat.st_size,
        )


class CategoryReport(BaseModel):
    """Delete outcome for one category."""

    category: Category
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_ids: list[str] = Field(default_factory=list)


class PurgeReport(BaseModel):
    """Outcome of a destination purge, per category in purge order."""

    dry_run: bool = False
    categories: dict[Category, CategoryReport] = Field(default_factory=dict)

    def get(self, category: Category) -> CategoryReport:
        return self.categories.get(category) or CategoryReport(category=category)

    @property
    def total_failed(self) -> int:
        return sum(r.failed for r in self.categories.values())

    @property
    def total_attempted(self) -> int:
        return sum(r.attempted for r in self.categories.values())


class ImportResult(BaseModel):
    """Outcome of the restore step."""

    archive: Path
    dry_run: bool = False
    imported: bool = False
    totals: dict[str, int] = Field(default_factory=dict)


class DeletionCounts(BaseModel):
    """Attempted deletes per category (intended deletes under dry-run)."""

    folders_deleted: int = 0
    items_deleted: int = 0
    attachments_deleted: int = 0

    @classmethod
    def from_report(cls, report: PurgeReport) -> "DeletionCounts":
        return cls(
            folders_deleted=report.get(Category.FOLDER).attempted,
            items_deleted=report.get(Category.ITEM).attempted,
            attachments_deleted=report.get(Category.ATTACHMENT).attempted,
        )


class RunStatus(str, Enum):
    """Final state of a sync run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class SyncRun(BaseModel):
    """Record of a single pipeline invocation.

    Built at run start, finalized on exit, reported through the log
    summary and the CLI. Never persisted.
    """

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    dry_run: bool = False
    counts: DeletionCounts = Field(default_factory=DeletionCounts)
    purge: Optional[PurgeReport] = None
    source_totals: dict[str, int] = Field(default_factory=dict)
    destination_totals: dict[str, int] = Field(default_factory=dict)
    archive: Optional[Path] = None
    imported_archive: Optional[Path] = None
    import_result: Optional[ImportResult] = None
    status: RunStatus = RunStatus.RUNNING
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCEEDED
