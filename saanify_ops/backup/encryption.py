"""Authenticated encryption of backup artifacts."""

import base64
import binascii
import logging
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..utils.errors import ConfigurationError, IntegrityError, create_error_suggestions
from ..utils.files import FileManager, sha256_hex

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
ENCRYPTED_SUFFIX = ".enc"


def generate_key() -> str:
    """New random key in its urlsafe base64 text form."""
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=KEY_SIZE * 8)).decode("ascii")


def decode_key(text: str, source: str) -> bytes:
    """
    Decode a base64 key.

    Raises:
        ConfigurationError: If the text is not base64 for a 32-byte key
    """
    try:
        key = base64.urlsafe_b64decode(text.strip().encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise ConfigurationError(f"Backup key from {source} is not valid base64") from e

    if len(key) != KEY_SIZE:
        raise ConfigurationError(
            f"Backup key from {source} must decode to {KEY_SIZE} bytes, got {len(key)}",
            suggestions=["Use the urlsafe base64 encoding of 32 random bytes"],
        )
    return key


class BackupCipher:
    """
    AES-256-GCM over whole artifacts.

    The stored form is ``nonce || ciphertext || tag``. Each artifact is
    bound to its backup id and name as associated data, so an artifact
    copied into another unit or renamed fails to decrypt.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ConfigurationError(f"Backup key must be {KEY_SIZE} bytes")
        self._aead = AESGCM(key)
        self.key_id = sha256_hex(key)[:16]

    @classmethod
    def from_config(cls, config: Dict[str, Any], create: bool = False, require: bool = False) -> Optional["BackupCipher"]:
        """
        Cipher for the configured key, or None when encryption is disabled.

        ``require`` loads the key even when encryption is disabled, for
        reading units that were written while it was enabled.

        The key is taken from ``security.backup_key`` (``SAANIFY_BACKUP_KEY``)
        first, then from ``paths.backup_key_file``. With ``create`` a missing
        key file is generated with owner-only permissions.

        Raises:
            ConfigurationError: If encryption is enabled and no usable key exists
        """
        if not require and not config["backup"].get("encrypt", True):
            return None

        key_text = config.get("security", {}).get("backup_key")
        if key_text:
            return cls(decode_key(key_text, "SAANIFY_BACKUP_KEY"))

        key_file = config["paths"].get("backup_key_file")
        if not key_file:
            raise ConfigurationError("Backup encryption is enabled but no key is configured")

        if os.path.isfile(key_file):
            with open(key_file, encoding="ascii") as f:
                return cls(decode_key(f.read(), key_file))

        if not create:
            raise ConfigurationError(
                f"Backup key file not found: {key_file}",
                suggestions=["Set SAANIFY_BACKUP_KEY or restore the key file kept with your backups' credentials"],
            )

        os.makedirs(os.path.dirname(os.path.abspath(key_file)), exist_ok=True)
        key_text = generate_key()
        FileManager().write_bytes(key_file, f"{key_text}\n".encode("ascii"), private=True)
        logger.warning("Generated backup encryption key at %s; keep a copy outside the backups directory", key_file)
        return cls(decode_key(key_text, key_file))

    @staticmethod
    def associated_data(backup_id: str, name: str) -> bytes:
        return f"{backup_id}/{name}".encode("utf-8")

    def encrypt(self, backup_id: str, name: str, data: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, data, self.associated_data(backup_id, name))

    def decrypt(self, backup_id: str, name: str, blob: bytes, backups_dir: str = "backups") -> bytes:
        """
        Decrypt one artifact.

        Raises:
            IntegrityError: If the blob is truncated, altered or under another key
        """
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise IntegrityError(
                f"Encrypted artifact {name} in backup {backup_id} is truncated",
                suggestions=create_error_suggestions("backup_corrupted", backup_dir=backups_dir),
            )

        try:
            return self._aead.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], self.associated_data(backup_id, name))
        except InvalidTag as e:
            raise IntegrityError(
                f"Artifact {name} in backup {backup_id} failed authentication",
                details=f"Decryption with key {self.key_id} failed",
                suggestions=create_error_suggestions("backup_corrupted", backup_dir=backups_dir),
            ) from e
