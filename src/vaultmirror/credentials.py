"""
Sealed credentials -- secrets encrypted at rest, opened only in memory.

Each sealed file pairs with a key file. The key file's bytes are input
keying material; a per-file salt feeds HKDF-SHA256 to produce the
Fernet key (AES-128-CBC + HMAC-SHA256) that protects the secret.

Sealed file layout:
    b"VMS1" | salt (16 bytes) | Fernet token

Security Note:
    Unsealed values exist only in process memory for the run's lifetime.
    Never log them; only log file names.
"""

from __future__ import annotations

import base64
import logging
import os
import secrets
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import SealedSecretRef
from .exceptions import ConfigError

logger = logging.getLogger("vaultmirror.credentials")

SEALED_MAGIC = b"VMS1"
SALT_SIZE = 16
_HKDF_INFO = b"vaultmirror:sealed-credential:v1"


def _derive_fernet_key(key_material: bytes, salt: bytes) -> bytes:
    """Derive a url-safe Fernet key from key material using HKDF-SHA256.

    Args:
        key_material: Raw contents of the key file.
        salt: Per-file random salt.

    Returns:
        Base64 url-safe encoded 32-byte key.
    """
    hkdf = HKDF(algorithm=SHA256(), length=32, salt=salt, info=_HKDF_INFO)
    return base64.urlsafe_b64encode(hkdf.derive(key_material))


def _normalize_key(key_material: bytes | str) -> bytes:
    if isinstance(key_material, str):
        key_material = key_material.encode("utf-8")
    # Key files written by editors usually carry a trailing newline.
    key_material = key_material.rstrip(b"\r\n")
    if not key_material:
        raise ConfigError("Key material is empty")
    return key_material


def generate_key_file(path: Path) -> Path:
    """Write 32 random bytes (base64) to a new owner-only key file.

    Raises:
        ConfigError: If the file already exists.
    """
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError as exc:
        raise ConfigError(f"Key file already exists: {path}") from exc
    with os.fdopen(fd, "wb") as f:
        f.write(base64.b64encode(secrets.token_bytes(32)) + b"\n")
    logger.info("Generated key file: %s", path)
    return path


class CredentialVault:
    """Seals and unseals configuration secrets."""

    def seal(self, secret: str, key_material: bytes | str) -> bytes:
        """Encrypt a secret for storage at rest.

        Args:
            secret: Plaintext secret.
            key_material: Bytes (or text) from the paired key file.

        Returns:
            Sealed blob ready to write to disk.
        """
        key = _normalize_key(key_material)
        salt = secrets.token_bytes(SALT_SIZE)
        token = Fernet(_derive_fernet_key(key, salt)).encrypt(secret.encode("utf-8"))
        return SEALED_MAGIC + salt + token

    def seal_to_file(self, secret: str, ref: SealedSecretRef) -> Path:
        """Seal a secret into ``ref.sealed_file`` using ``ref.key_file``.

        The sealed file is created with owner-only permissions.
        """
        key_material = self._read_key(ref.key_file)
        blob = self.seal(secret, key_material)
        ref.sealed_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(ref.sealed_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(blob)
        os.chmod(ref.sealed_file, 0o600)
        logger.info("Sealed secret written: %s", ref.sealed_file)
        return ref.sealed_file

    def unseal(self, sealed_file: Path, key_material: bytes | str) -> str:
        """Decrypt a sealed secret into memory.

        Args:
            sealed_file: Path to the sealed blob.
            key_material: Bytes (or text) from the paired key file.

        Returns:
            The plaintext secret.

        Raises:
            ConfigError: If the file is missing or malformed, or the key is wrong.
        """
        key = _normalize_key(key_material)
        try:
            blob = Path(sealed_file).read_bytes()
        except OSError as exc:
            raise ConfigError(f"Cannot read sealed file {sealed_file}: {exc}") from exc

        header = len(SEALED_MAGIC) + SALT_SIZE
        if len(blob) <= header or not blob.startswith(SEALED_MAGIC):
            raise ConfigError(f"Not a sealed credential file: {sealed_file}")

        salt = blob[len(SEALED_MAGIC):header]
        try:
            plaintext = Fernet(_derive_fernet_key(key, salt)).decrypt(blob[header:])
        except InvalidToken as exc:
            raise ConfigError(
                f"Cannot unseal {Path(sealed_file).name}: wrong key material or corrupt data"
            ) from exc

        logger.debug("Unsealed %s", Path(sealed_file).name)
        return plaintext.decode("utf-8")

    def unseal_ref(self, ref: SealedSecretRef) -> str:
        """Unseal using the key file named by the reference."""
        return self.unseal(ref.sealed_file, self._read_key(ref.key_file))

    def _read_key(self, key_file: Path) -> bytes:
        try:
            return Path(key_file).expanduser().read_bytes()
        except OSError as exc:
            raise ConfigError(f"Cannot read key file {key_file}: {exc}") from exc
