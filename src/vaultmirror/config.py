"""
Runtime configuration for vaultmirror.

Settings are layered: built-in defaults, then ``<home>/config.yaml``,
then ``VAULTMIRROR_*`` environment variables, then explicit overrides
(usually CLI options). Secrets never live here in plaintext -- only
references to sealed files and their key files.

Example config.yaml:

    rate_limit_delay: 0.2
    source:
      account_id: backup@example.org
      server_url: https://vault.example.org
      client_id: user.1234
    destination:
      account_id: restore@example.org
      server_url: https://mirror.example.org
      client_id: user.5678
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from . import VAULTMIRROR_HOME
from .archive import MAX_ITERATIONS
from .exceptions import ConfigError
from .models import target_identity

logger = logging.getLogger("vaultmirror.config")

CONFIG_FILENAME = "config.yaml"

_TRUE = {"1", "true", "yes", "on"}


class SealedSecretRef(BaseModel):
    """Location of a sealed secret and the key file that opens it."""

    sealed_file: Path
    key_file: Path


SECRET_NAMES = (
    "archive_passphrase",
    "source_client_secret",
    "source_master_passphrase",
    "dest_client_secret",
    "dest_master_passphrase",
)


def sealed_ref(home: Path, name: str) -> SealedSecretRef:
    return SealedSecretRef(
        sealed_file=home / "secrets" / f"{name}.enc",
        key_file=home / "secrets" / f"{name}.key",
    )


class TargetSettings(BaseModel):
    """Non-secret identity of a vault target plus its sealed credentials."""

    account_id: str = ""
    server_url: str = ""
    client_id: str = ""
    client_secret: Optional[SealedSecretRef] = None
    master_passphrase: Optional[SealedSecretRef] = None

    @property
    def identity(self) -> str:
        return target_identity(self.account_id, self.server_url)


class SyncSettings(BaseModel):
    """Complete configuration for one mirroring run."""

    home: Path = Field(default_factory=lambda: Path(VAULTMIRROR_HOME).expanduser())
    dry_run: bool = False
    rate_limit_delay: float = Field(default=0.1, ge=0)
    archive_retention_days: int = Field(default=30, ge=1)
    plaintext_retention_days: int = Field(default=7, ge=1)
    log_retention_days: int = Field(default=30, ge=1)
    verify_archive_before_purge: bool = False
    bw_binary: str = "bw"
    command_timeout: float = Field(default=300.0, gt=0)
    pbkdf2_iterations: int = Field(default=480_000, ge=1, le=MAX_ITERATIONS)

    backup_dir: Optional[Path] = None
    log_dir: Optional[Path] = None
    lock_dir: Optional[Path] = None
    runtime_dir: Optional[Path] = None

    archive_passphrase: Optional[SealedSecretRef] = None
    source: TargetSettings = Field(default_factory=TargetSettings)
    destination: TargetSettings = Field(default_factory=TargetSettings)

    @field_validator("home", mode="after")
    @classmethod
    def _expand_home(cls, v: Path) -> Path:
        return v.expanduser()

    def model_post_init(self, __context: object) -> None:
        home = self.home
        self.backup_dir = (self.backup_dir or home / "backups").expanduser()
        self.log_dir = (self.log_dir or home / "logs").expanduser()
        self.lock_dir = (self.lock_dir or home / "locks").expanduser()
        self.runtime_dir = (self.runtime_dir or home / "run").expanduser()
        if self.archive_passphrase is None:
            self.archive_passphrase = sealed_ref(home, "archive_passphrase")
        for role, target in (("source", self.source), ("dest", self.destination)):
            if target.client_secret is None:
                target.client_secret = sealed_ref(home, f"{role}_client_secret")
            if target.master_passphrase is None:
                target.master_passphrase = sealed_ref(home, f"{role}_master_passphrase")

    def validate_targets(self) -> None:
        """Ensure both targets carry enough identity to log in.

        Raises:
            ConfigError: If any required field is empty.
        """
        missing = []
        for role, target in (("source", self.source), ("destination", self.destination)):
            for field in ("account_id", "server_url", "client_id"):
                if not getattr(target, field):
                    missing.append(f"{role}.{field}")
        if missing:
            raise ConfigError(f"Missing configuration: {', '.join(missing)}")

    def ensure_dirs(self) -> None:
        """Create working directories with owner-only permissions."""
        for d in (self.backup_dir, self.log_dir, self.lock_dir, self.runtime_dir):
            d.mkdir(parents=True, exist_ok=True)
            os.chmod(d, 0o700)


# Env var -> dotted settings path
ENV_OVERRIDES: dict[str, str] = {
    "VAULTMIRROR_DRY_RUN": "dry_run",
    "VAULTMIRROR_RATE_LIMIT_DELAY": "rate_limit_delay",
    "VAULTMIRROR_BW_BINARY": "bw_binary",
    "VAULTMIRROR_SOURCE_ACCOUNT": "source.account_id",
    "VAULTMIRROR_SOURCE_SERVER": "source.server_url",
    "VAULTMIRROR_SOURCE_CLIENT_ID": "source.client_id",
    "VAULTMIRROR_DEST_ACCOUNT": "destination.account_id",
    "VAULTMIRROR_DEST_SERVER": "destination.server_url",
    "VAULTMIRROR_DEST_CLIENT_ID": "destination.client_id",
}


def _set_dotted(data: dict[str, Any], dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    node = data
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(
    home: Optional[Path] = None,
    config_file: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> SyncSettings:
    """Build settings from file, environment, and explicit overrides.

    Args:
        home: Working directory. Defaults to $VAULTMIRROR_HOME or ~/.vaultmirror.
        config_file: YAML file to read. Defaults to <home>/config.yaml.
        env: Environment mapping. Defaults to os.environ.
        overrides: Dotted-path overrides applied last; None values are ignored.

    Returns:
        Validated SyncSettings.

    Raises:
        ConfigError: If the file is malformed or values fail validation.
    """
    env = os.environ if env is None else env
    home_path = Path(home or env.get("VAULTMIRROR_HOME") or VAULTMIRROR_HOME).expanduser()
    cfg_path = Path(config_file).expanduser() if config_file else home_path / CONFIG_FILENAME

    data = _read_config_file(cfg_path)
    data["home"] = str(home_path)

    for var, dotted in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        value: Any = raw
        if dotted == "dry_run":
            value = raw.strip().lower() in _TRUE
        _set_dotted(data, dotted, value)

    for dotted, value in (overrides or {}).items():
        if value is not None:
            _set_dotted(data, dotted, value)

    try:
        settings = SyncSettings(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    logger.debug(
        "Settings loaded: home=%s dry_run=%s delay=%.2fs",
        settings.home, settings.dry_run, settings.rate_limit_delay,
    )
    return settings
