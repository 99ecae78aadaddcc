"""
Vault service clients -- how the pipeline talks to a vault server.

The pipeline only sees the abstract VaultClient. BitwardenCLI drives
the official ``bw`` binary in subprocesses: every target gets its own
CLI data directory, and credentials travel in the child environment
only (never argv, never os.environ).
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from .exceptions import (
    AuthError,
    CommandTimeoutError,
    ImportRejectedError,
    TransientOpError,
    VaultCommandError,
)
from .models import Category, VaultTarget

logger = logging.getLogger("vaultmirror.client")

IMPORT_FORMAT = "bitwardenjson"

# stderr fragments that mean the session is unusable, not that the call failed
_AUTH_FAILURE = re.compile(
    r"not logged in|vault is locked|invalid session|session key|unauthori[sz]ed|invalid_grant",
    re.IGNORECASE,
)


class VaultClient(ABC):
    """Abstract vault service capability."""

    @abstractmethod
    def configure_server(self, target: VaultTarget) -> None:
        """Point the client at the target's server URL."""

    @abstractmethod
    def login(self, target: VaultTarget) -> None:
        """Authenticate with the target's API credentials.

        Raises:
            AuthError: If the server rejects the credentials.
        """

    @abstractmethod
    def unlock(self, target: VaultTarget) -> str:
        """Exchange the master passphrase for a session token.

        Raises:
            AuthError: If the passphrase is rejected.
        """

    @abstractmethod
    def export(self, token: str, target: VaultTarget) -> dict[str, Any]:
        """Return the full vault export document."""

    @abstractmethod
    def delete(self, token: str, target: VaultTarget, category: Category, record_id: str) -> None:
        """Permanently delete one record.

        Raises:
            TransientOpError: If this single delete fails.
        """

    @abstractmethod
    def import_document(
        self, token: str, target: VaultTarget, fmt: str, document: dict[str, Any]
    ) -> None:
        """Import a full export document.

        Raises:
            ImportRejectedError: If the server refuses the import.
        """

    @abstractmethod
    def logout(self, target: VaultTarget) -> None:
        """End any session for the target."""

    def available(self) -> bool:
        """Check whether the client can be used at all."""
        return True


def _tail(text: str, limit: int = 300) -> str:
    text = (text or "").strip()
    return text[-limit:]


class BitwardenCLI(VaultClient):
    """VaultClient backed by the Bitwarden ``bw`` command line tool.

    Args:
        runtime_dir: Private directory for per-target CLI state and temp files.
        binary: Name or path of the ``bw`` executable.
        timeout: Seconds before any single command is abandoned.
    """

    def __init__(self, runtime_dir: Path, binary: str = "bw", timeout: float = 300.0):
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.binary = binary
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _appdata_dir(self, target: VaultTarget) -> Path:
        path = self.runtime_dir / "bw-appdata" / target.name
        path.mkdir(parents=True, exist_ok=True)
        os.chmod(path, 0o700)
        return path

    def _env(self, target: VaultTarget, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if not k.startswith("BW_")}
        env["BITWARDENCLI_APPDATA_DIR"] = str(self._appdata_dir(target))
        env["BW_NOINTERACTION"] = "true"
        env["LC_ALL"] = "C"
        if extra:
            env.update(extra)
        return env

    def _run(
        self,
        args: list[str],
        target: VaultTarget,
        extra_env: Optional[dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """Run a ``bw`` subcommand for a target and capture output.

        Raises:
            VaultCommandError: If the binary is missing or the call times out.
        """
        cmd = [self.binary, *args]
        logger.debug("[%s] bw %s", target.name, args[0])
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
                env=self._env(target, extra_env),
            )
        except FileNotFoundError as exc:
            raise VaultCommandError(f"Vault CLI not found: {self.binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(
                f"bw {args[0]} timed out after {self.timeout:.0f}s for {target.name}"
            ) from exc

    def configure_server(self, target: VaultTarget) -> None:
        result = self._run(["config", "server", target.server_url], target)
        if result.returncode != 0:
            raise AuthError(
                f"Cannot select server {target.server_url}: {_tail(result.stderr)}",
                target=target.name,
            )

    def login(self, target: VaultTarget) -> None:
        try:
            result = self._run(
                ["login", target.account_id, "--apikey", "--raw"],
                target,
                {
                    "BW_CLIENTID": target.client_id,
                    "BW_CLIENTSECRET": target.client_secret.get_secret_value(),
                },
            )
        except VaultCommandError as exc:
            raise AuthError(str(exc), target=target.name) from exc
        if result.returncode != 0:
            raise AuthError(
                f"Login rejected for {target.identity}: {_tail(result.stderr)}",
                target=target.name,
            )

    def unlock(self, target: VaultTarget) -> str:
        try:
            result = self._run(
                ["unlock", "--passwordenv", "BW_PASSWORD", "--raw"],
                target,
                {"BW_PASSWORD": target.master_passphrase.get_secret_value()},
            )
        except VaultCommandError as exc:
            raise AuthError(str(exc), target=target.name) from exc
        token = (result.stdout or "").strip()
        if result.returncode != 0 or not token:
            raise AuthError(
                f"Unlock rejected for {target.identity}: {_tail(result.stderr)}",
                target=target.name,
            )
        return token

    def export(self, token: str, target: VaultTarget) -> dict[str, Any]:
        result = self._run(
            ["export", "--format", "json", "--raw"], target, {"BW_SESSION": token}
        )
        if result.returncode != 0:
            message = f"Export failed for {target.identity}: {_tail(result.stderr)}"
            if _AUTH_FAILURE.search(result.stderr or ""):
                raise AuthError(message, target=target.name)
            raise VaultCommandError(message, returncode=result.returncode)
        try:
            document = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise VaultCommandError(f"Export from {target.name} is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise VaultCommandError(f"Export from {target.name} is not a JSON object")
        return document

    def delete(self, token: str, target: VaultTarget, category: Category, record_id: str) -> None:
        try:
            result = self._run(
                ["delete", category.value, record_id, "--permanent"],
                target,
                {"BW_SESSION": token},
            )
        except CommandTimeoutError as exc:
            raise TransientOpError(
                f"Delete {category.value} {record_id} failed: {exc}",
                category=category.value,
                record_id=record_id,
            ) from exc
        if result.returncode != 0:
            message = f"Delete {category.value} {record_id} failed: {_tail(result.stderr)}"
            if _AUTH_FAILURE.search(result.stderr or ""):
                raise AuthError(message, target=target.name)
            raise TransientOpError(message, category=category.value, record_id=record_id)

    def import_document(
        self, token: str, target: VaultTarget, fmt: str, document: dict[str, Any]
    ) -> None:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix="import-", suffix=".json", dir=self.runtime_dir)
        path = Path(name)
        try:
            os.chmod(path, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f)
            result = self._run(["import", fmt, str(path)], target, {"BW_SESSION": token})
            if result.returncode != 0:
                raise ImportRejectedError(
                    f"Import into {target.identity} rejected: {_tail(result.stderr)}",
                    returncode=result.returncode,
                )
        finally:
            path.unlink(missing_ok=True)

    def logout(self, target: VaultTarget) -> None:
        result = self._run(["logout"], target)
        if result.returncode != 0:
            raise VaultCommandError(
                f"Logout failed for {target.name}: {_tail(result.stderr)}",
                returncode=result.returncode,
            )
