"""
Encrypted snapshot archives -- encode, decode, and retention.

An archive is built as a chain of explicit stages, so nothing shells
out and every stage can be exercised on its own:

    snapshot -> JSON document (plaintext export on disk, 0600)
             -> gzip tar holding that document
             -> Fernet token (PBKDF2-HMAC-SHA256 key from the passphrase)
             -> bw_export_<timestamp>.tar.gz.enc

Archive layout:
    b"VMA1" | iterations (uint32, big-endian) | salt (16 bytes) | Fernet token

The plaintext export is removed as soon as the archive is on disk.
Decoding runs entirely in memory.

Retention (run at the start of every pipeline invocation):
    - archives older than 30 days are deleted
    - leftover plaintext exports older than 7 days are deleted
"""

from __future__ import annotations

import base64
import io
import json
import logging
import os
import secrets
import struct
import tarfile
import time
from datetime import datetime, timezone
from functools import reduce
from pathlib import Path
from typing import Any, Callable, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from .exceptions import IntegrityError
from .models import ArchiveFile, ExportSnapshot

logger = logging.getLogger("vaultmirror.archive")

ARCHIVE_PREFIX = "bw_export_"
ARCHIVE_SUFFIX = ".tar.gz.enc"
PLAINTEXT_SUFFIX = ".json"
PARTIAL_SUFFIX = ".part"

ARCHIVE_MAGIC = b"VMA1"
SALT_SIZE = 16
MAX_ITERATIONS = 10_000_000
_HEADER = struct.Struct(">4sI16s")

ARCHIVE_GLOB = f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}"
PLAINTEXT_GLOB = f"{ARCHIVE_PREFIX}*{PLAINTEXT_SUFFIX}"

Stage = Callable[[Any], Any]


def _compose(*stages: Stage) -> Stage:
    return lambda data: reduce(lambda acc, stage: stage(acc), stages, data)


def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=SHA256(), length=32, salt=salt, iterations=iterations)
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def serialize(snapshot: ExportSnapshot) -> bytes:
    """Snapshot -> JSON document bytes."""
    return json.dumps(snapshot.to_document(), ensure_ascii=False, indent=2).encode("utf-8")


def deserialize(document: bytes) -> ExportSnapshot:
    """JSON document bytes -> snapshot."""
    try:
        return ExportSnapshot.model_validate(json.loads(document.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise IntegrityError(f"Archive document is malformed: {exc}") from exc


def compressor(member_name: str) -> Stage:
    """Build a stage that wraps a document in a gzip tar under ``member_name``."""

    def compress(document: bytes) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            info = tarfile.TarInfo(name=member_name)
            info.size = len(document)
            info.mtime = int(time.time())
            info.mode = 0o600
            tar.addfile(info, io.BytesIO(document))
        return buf.getvalue()

    return compress


def decompress(blob: bytes) -> bytes:
    """Extract the single JSON export member from a gzip tar, in memory."""
    try:
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            for member in tar.getmembers():
                if member.isfile() and member.name.endswith(PLAINTEXT_SUFFIX):
                    f = tar.extractfile(member)
                    if f is not None:
                        return f.read()
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise IntegrityError(f"Archive does not decompress: {exc}") from exc
    raise IntegrityError("Archive holds no JSON export document")


def encryptor(passphrase: str, iterations: int) -> Stage:
    """Build a stage that seals bytes under the archive passphrase."""

    def encrypt(data: bytes) -> bytes:
        salt = secrets.token_bytes(SALT_SIZE)
        token = Fernet(_derive_key(passphrase, salt, iterations)).encrypt(data)
        return _HEADER.pack(ARCHIVE_MAGIC, iterations, salt) + token

    return encrypt


def decryptor(passphrase: str) -> Stage:
    """Build a stage that opens bytes sealed by :func:`encryptor`."""

    def decrypt(blob: bytes) -> bytes:
        if len(blob) <= _HEADER.size:
            raise IntegrityError("Archive is truncated")
        magic, iterations, salt = _HEADER.unpack_from(blob)
        if magic != ARCHIVE_MAGIC or not 1 <= iterations <= MAX_ITERATIONS:
            raise IntegrityError("Archive header is not recognized")
        try:
            return Fernet(_derive_key(passphrase, salt, iterations)).decrypt(blob[_HEADER.size:])
        except InvalidToken as exc:
            raise IntegrityError("Archive failed to decrypt: wrong passphrase or corrupt data") from exc

    return decrypt


def has_archive_magic(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(len(ARCHIVE_MAGIC)) == ARCHIVE_MAGIC
    except OSError:
        return False


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

class ArchiveCodec:
    """Writes, reads, and prunes encrypted snapshot archives.

    Args:
        backup_dir: Directory holding archives (and transient plaintext).
        archive_retention_days: Age ceiling for archives.
        plaintext_retention_days: Age ceiling for leftover plaintext exports.
        iterations: PBKDF2 iterations for newly written archives.
    """

    def __init__(
        self,
        backup_dir: Path,
        archive_retention_days: int = 30,
        plaintext_retention_days: int = 7,
        iterations: int = 480_000,
    ):
        self.backup_dir = Path(backup_dir).expanduser()
        self.archive_retention_days = archive_retention_days
        self.plaintext_retention_days = plaintext_retention_days
        self.iterations = iterations

    def _next_stem(self) -> str:
        while True:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
            stem = f"{ARCHIVE_PREFIX}{stamp}"
            if not (self.backup_dir / f"{stem}{ARCHIVE_SUFFIX}").exists():
                return stem
            time.sleep(0.001)

    def encode(self, snapshot: ExportSnapshot, passphrase: str) -> ArchiveFile:
        """Archive a snapshot under the passphrase.

        Returns:
            The completed archive.
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stem = self._next_stem()
        plaintext_path = self.backup_dir / f"{stem}{PLAINTEXT_SUFFIX}"
        archive_path = self.backup_dir / f"{stem}{ARCHIVE_SUFFIX}"
        partial_path = archive_path.with_name(archive_path.name + PARTIAL_SUFFIX)

        try:
            _write_private(plaintext_path, serialize(snapshot))
            pipeline = _compose(
                Path.read_bytes,
                compressor(plaintext_path.name),
                encryptor(passphrase, self.iterations),
            )
            _write_private(partial_path, pipeline(plaintext_path))
            os.replace(partial_path, archive_path)
        finally:
            plaintext_path.unlink(missing_ok=True)
            partial_path.unlink(missing_ok=True)

        archive = ArchiveFile.from_path(archive_path)
        logger.info("Archive written: %s (%d bytes)", archive_path.name, archive.size)
        return archive

    def decode(self, archive: ArchiveFile | Path, passphrase: str) -> ExportSnapshot:
        """Open an archive back into a snapshot.

        Raises:
            IntegrityError: If the archive cannot be read, decrypted, or parsed.
        """
        path = archive.path if isinstance(archive, ArchiveFile) else Path(archive)
        try:
            blob = path.read_bytes()
        except OSError as exc:
            raise IntegrityError(f"Cannot read archive {path}: {exc}") from exc

        pipeline = _compose(decryptor(passphrase), decompress, deserialize)
        snapshot = pipeline(blob)
        logger.info("Archive decoded: %s", path.name)
        return snapshot

    def list_archives(self) -> list[ArchiveFile]:
        """Valid archives, newest first (mtime, then name)."""
        if not self.backup_dir.exists():
            return []
        candidates = []
        for path in self.backup_dir.glob(ARCHIVE_GLOB):
            if not path.is_file() or path.stat().st_size == 0:
                continue
            if not has_archive_magic(path):
                logger.debug("Skipping non-archive %s", path.name)
                continue
            candidates.append(ArchiveFile.from_path(path))
        return sorted(candidates, key=lambda a: (a.created_at, a.path.name), reverse=True)

    def prune(self, now: Optional[float] = None) -> list[Path]:
        """Delete archives and plaintext exports past their ceilings.

        Args:
            now: Reference epoch seconds. Defaults to the current time.

        Returns:
            Paths that were removed.
        """
        if not self.backup_dir.exists():
            return []
        now = time.time() if now is None else now
        removed: list[Path] = []
        rules = (
            (ARCHIVE_GLOB, self.archive_retention_days, "archive"),
            (PLAINTEXT_GLOB, self.plaintext_retention_days, "plaintext export"),
        )
        for pattern, days, label in rules:
            cutoff = now - days * 86400
            for path in self.backup_dir.glob(pattern):
                if not path.is_file():
                    continue
                if path.stat().st_mtime < cutoff:
                    path.unlink(missing_ok=True)
                    removed.append(path)
                    logger.info("Removed %s older than %d days: %s", label, days, path.name)
        return removed
