"""Shared test fixtures for vaultmirror."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Optional

import pytest
from pydantic import SecretStr

from vaultmirror.client import VaultClient
from vaultmirror.config import SECRET_NAMES, SyncSettings, TargetSettings, sealed_ref
from vaultmirror.credentials import CredentialVault, generate_key_file
from vaultmirror.exceptions import (
    AuthError,
    ImportRejectedError,
    TransientOpError,
    VaultCommandError,
)
from vaultmirror.models import Category, Session, VaultTarget

SECRET_VALUES = {
    "archive_passphrase": "archive-pass",
    "source_client_secret": "src-client-secret",
    "source_master_passphrase": "src-master",
    "dest_client_secret": "dst-client-secret",
    "dest_master_passphrase": "dst-master",
}


def empty_document() -> dict[str, Any]:
    return {"encrypted": False, "folders": [], "items": [], "attachments": []}


class FakeVaultClient(VaultClient):
    """In-memory vault service that records every call.

    Args:
        documents: Export document per target name ("source"/"destination").
        fail_ids: Record ids whose delete raises TransientOpError.
        reject_login: Target names whose login is rejected.
        reject_unlock: Target names whose unlock is rejected.
        reject_import: Whether import raises ImportRejectedError.
        clock: Optional callable stamped onto each delete.
    """

    def __init__(
        self,
        documents: Optional[dict[str, dict[str, Any]]] = None,
        fail_ids: tuple[str, ...] = (),
        reject_login: tuple[str, ...] = (),
        reject_unlock: tuple[str, ...] = (),
        reject_import: bool = False,
        available: bool = True,
        clock=None,
    ):
        self.documents = documents or {}
        self.fail_ids = set(fail_ids)
        self.reject_login = set(reject_login)
        self.reject_unlock = set(reject_unlock)
        self.reject_import = reject_import
        self._available = available
        self.clock = clock
        self.calls: list[tuple[str, str]] = []
        self.deletes: list[tuple[str, str, str]] = []
        self.delete_times: list[float] = []
        self.imports: list[tuple[str, str, dict[str, Any]]] = []
        self.logged_in: set[str] = set()
        self.tokens: dict[str, str] = {}

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def available(self) -> bool:
        return self._available

    def configure_server(self, target: VaultTarget) -> None:
        self.calls.append(("configure_server", target.name))

    def login(self, target: VaultTarget) -> None:
        self.calls.append(("login", target.name))
        if target.name in self.reject_login:
            raise AuthError(f"Login rejected for {target.name}", target=target.name)
        self.logged_in.add(target.name)

    def unlock(self, target: VaultTarget) -> str:
        self.calls.append(("unlock", target.name))
        if target.name in self.reject_unlock:
            raise AuthError(f"Unlock rejected for {target.name}", target=target.name)
        token = f"token-{target.name}"
        self.tokens[target.name] = token
        return token

    def export(self, token: str, target: VaultTarget) -> dict[str, Any]:
        self.calls.append(("export", target.name))
        if token != self.tokens.get(target.name):
            raise AuthError("invalid session", target=target.name)
        return copy.deepcopy(self.documents.get(target.name, empty_document()))

    def delete(self, token: str, target: VaultTarget, category: Category, record_id: str) -> None:
        self.calls.append(("delete", target.name))
        self.deletes.append((target.name, category.value, record_id))
        if self.clock is not None:
            self.delete_times.append(self.clock())
        if record_id in self.fail_ids:
            raise TransientOpError("delete failed", category=category.value, record_id=record_id)

    def import_document(self, token: str, target: VaultTarget, fmt: str, document: dict[str, Any]) -> None:
        self.calls.append(("import", target.name))
        if self.reject_import:
            raise ImportRejectedError("import rejected")
        self.imports.append((target.name, fmt, copy.deepcopy(document)))

    def logout(self, target: VaultTarget) -> None:
        self.calls.append(("logout", target.name))
        if target.name not in self.logged_in:
            raise VaultCommandError("You are not logged in.")
        self.logged_in.discard(target.name)
        self.tokens.pop(target.name, None)


@pytest.fixture
def source_document() -> dict[str, Any]:
    """A small source vault export."""
    return {
        "encrypted": False,
        "folders": [{"id": "sf1", "name": "Work"}],
        "items": [
            {"id": "si1", "folderId": "sf1", "type": 1, "name": "mail", "login": {"username": "me"}},
            {"id": "si2", "folderId": None, "type": 2, "name": "note", "notes": "ünïcode"},
        ],
        "attachments": [],
    }


@pytest.fixture
def destination_document() -> dict[str, Any]:
    """Destination contents to be purged."""
    return {
        "encrypted": False,
        "folders": [{"id": "f1", "name": "Old"}, {"id": "f2", "name": "Older"}],
        "items": [{"id": "i1", "name": "stale"}],
        "attachments": [],
    }


@pytest.fixture
def fake_client(source_document, destination_document) -> FakeVaultClient:
    return FakeVaultClient(
        documents={"source": source_document, "destination": destination_document}
    )


def _target(name: str) -> VaultTarget:
    return VaultTarget(
        name=name,
        account_id=f"{name}@example.org",
        server_url=f"https://{name}.example.org",
        client_id=f"user.{name}",
        client_secret=SecretStr(f"{name}-secret"),
        master_passphrase=SecretStr(f"{name}-master"),
    )


@pytest.fixture
def source_target() -> VaultTarget:
    return _target("source")


@pytest.fixture
def dest_target() -> VaultTarget:
    return _target("destination")


@pytest.fixture
def dest_session(dest_target: VaultTarget) -> Session:
    """An unlocked destination session with a fixed token."""
    return Session(target=dest_target, token=SecretStr("token-destination"))


def seal_all(home: Path) -> None:
    """Seal every credential the pipeline needs under ``home/secrets``."""
    vault = CredentialVault()
    for name in SECRET_NAMES:
        ref = sealed_ref(home, name)
        generate_key_file(ref.key_file)
        vault.seal_to_file(SECRET_VALUES[name], ref)


@pytest.fixture
def sync_home(tmp_path: Path) -> Path:
    """A working directory with all credentials sealed."""
    home = tmp_path / ".vaultmirror"
    home.mkdir()
    seal_all(home)
    return home


@pytest.fixture
def settings(sync_home: Path) -> SyncSettings:
    """Run settings with fast key derivation and no delete delay."""
    return SyncSettings(
        home=sync_home,
        rate_limit_delay=0.0,
        pbkdf2_iterations=1000,
        source=TargetSettings(
            account_id="source@example.org",
            server_url="https://source.example.org",
            client_id="user.source",
        ),
        destination=TargetSettings(
            account_id="destination@example.org",
            server_url="https://destination.example.org",
            client_id="user.destination",
        ),
    )
