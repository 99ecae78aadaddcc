"""Exceptions raised by the mirroring pipeline.

Every error carries the process exit status the CLI reports for it.
Per-item failures (TransientOpError) are caught and counted by the
purge loop; everything else unwinds the run through its cleanup path.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base exception for all vaultmirror errors."""

    exit_code: int = 1


class ConfigError(SyncError):
    """Raised when configuration or sealed credential material is unusable."""

    exit_code = 2


class AuthError(SyncError):
    """Raised when a vault target rejects login, unlock, or a session token."""

    exit_code = 3

    def __init__(self, message: str, target: Optional[str] = None):
        super().__init__(message)
        self.target = target


class ArchiveError(SyncError):
    """Raised when no valid archive is available for import."""

    exit_code = 4


class IntegrityError(SyncError):
    """Raised when an archive fails to decrypt, decompress, or parse."""

    exit_code = 5


class VaultCommandError(SyncError):
    """Raised when a vault service call fails outside the categories above."""

    exit_code = 6

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class ImportRejectedError(VaultCommandError):
    """Raised when the destination refuses an import. Never retried."""


class CommandTimeoutError(VaultCommandError):
    """Raised when a vault CLI call does not finish within its timeout."""


class TransientOpError(SyncError):
    """Raised for a single failed per-item call (e.g. one delete).

    The purge loop records these and keeps going.
    """

    def __init__(self, message: str, category: Optional[str] = None, record_id: Optional[str] = None):
        super().__init__(message)
        self.category = category
        self.record_id = record_id


class SessionStateError(SyncError):
    """Raised on an illegal session state transition."""


class LockError(SyncError):
    """Raised when another run already holds the lock for this vault pair."""

    exit_code = 7


class RunInterrupted(SyncError):
    """Raised inside a run when a termination signal arrives."""

    exit_code = 130

    def __init__(self, signum: int):
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum
