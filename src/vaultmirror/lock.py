"""
Per-pair run lock.

Two runs against the same source/destination pair must never interleave
sessions, archives, or purges. An exclusive, non-blocking flock on a
file keyed by the pair's identity gates the orchestrator. The kernel
drops the lock if the process dies, so there are no stale locks to reap.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

from .exceptions import LockError

logger = logging.getLogger("vaultmirror.lock")


def pair_key(source: str, destination: str) -> str:
    """Deterministic lock key for a source -> destination pair."""
    data = f"vaultmirror:pair:{source}->{destination}"
    return hashlib.sha256(data.encode()).hexdigest()[:16]


class PairLock:
    """Advisory lock for one vault pair.

    Usage:
        with PairLock(lock_dir, source.identity, destination.identity):
            ...

    Raises:
        LockError: On enter, if another process holds the lock.
    """

    def __init__(self, lock_dir: Path, source: str, destination: str):
        self.lock_dir = Path(lock_dir).expanduser()
        self.path = self.lock_dir / f"pair-{pair_key(source, destination)}.lock"
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise LockError(
                f"Another run is already mirroring this vault pair (lock {self.path.name})"
            ) from exc
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Lock acquired: %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Lock released: %s", self.path)

    def __enter__(self) -> "PairLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()
