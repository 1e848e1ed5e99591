# Copyright (c) 2024 Parsible Contributors
# MIT License

"""
Parsible Vault Support

Recognizes Ansible Vault envelopes (inline ``!vault`` scalars and whole
encrypted files). Decryption itself is delegated to a caller-supplied
decryptor; without one, vaulted content stays opaque and only its vault
id is recorded.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Protocol, Tuple, Union, runtime_checkable

from parsible.engine.errors import VaultDecryptionFailed
from parsible.engine.values import VaultValue

logger = logging.getLogger(__name__)


# Vault file header
VAULT_HEADER = "$ANSIBLE_VAULT"
VAULT_HEADER_REGEX = re.compile(r'^\$ANSIBLE_VAULT;(\d+\.\d+);(AES256)(?:;([\w.-]+))?$')
DEFAULT_VAULT_ID = "default"


@runtime_checkable
class VaultDecryptor(Protocol):
    """Turns a vault envelope into plaintext."""

    def decrypt(self, ciphertext: str, vault_id: str) -> str:
        """Return the plaintext or raise VaultDecryptionFailed."""
        ...


def is_encrypted(data: Union[str, bytes]) -> bool:
    """Check if data is vault encrypted."""
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError:
            return False

    if not isinstance(data, str):
        return False

    return data.strip().startswith(VAULT_HEADER)


def parse_header(data: str) -> Tuple[str, str, str]:
    """
    Parse the envelope header line.

    Returns:
        Tuple of (format version, cipher, vault id)

    Raises:
        VaultDecryptionFailed: If the header is malformed
    """
    lines = data.strip().splitlines()
    if not lines:
        raise VaultDecryptionFailed(DEFAULT_VAULT_ID, "Empty vault data")

    match = VAULT_HEADER_REGEX.match(lines[0].strip())
    if not match:
        raise VaultDecryptionFailed(DEFAULT_VAULT_ID, f"Invalid vault header: {lines[0][:50]}")

    version, cipher, vault_id = match.groups()
    return version, cipher, vault_id or DEFAULT_VAULT_ID


def vault_id_of(data: str) -> str:
    """Vault id named in an envelope, falling back to the default id."""
    try:
        return parse_header(data)[2]
    except VaultDecryptionFailed:
        return DEFAULT_VAULT_ID


class VaultHandler:
    """
    Tracks vault ids met during one parse and decrypts when possible.
    """

    def __init__(self, decryptor: Optional[VaultDecryptor] = None):
        self.decryptor = decryptor
        self._vault_ids: List[str] = []

    @property
    def vault_ids(self) -> List[str]:
        """Vault ids in the order first encountered."""
        return list(self._vault_ids)

    def record(self, vault_id: str) -> None:
        if vault_id not in self._vault_ids:
            self._vault_ids.append(vault_id)

    def reveal(self, value: VaultValue) -> Union[str, VaultValue]:
        """Plaintext of a vaulted scalar, or the opaque value without a decryptor."""
        self.record(value.vault_id)
        if self.decryptor is None:
            return value
        return self._decrypt(value.ciphertext, value.vault_id)

    def open_source(self, text: str) -> Optional[str]:
        """
        Plaintext of a whole-file vault.

        Returns None when no decryptor is available.
        """
        vault_id = vault_id_of(text)
        self.record(vault_id)
        if self.decryptor is None:
            return None
        return self._decrypt(text, vault_id)

    def _decrypt(self, ciphertext: str, vault_id: str) -> str:
        logger.debug("Decrypting vault content with vault id %s", vault_id)
        try:
            plaintext = self.decryptor.decrypt(ciphertext, vault_id)
        except VaultDecryptionFailed:
            raise
        except Exception as e:
            raise VaultDecryptionFailed(vault_id, str(e)) from e
        if isinstance(plaintext, bytes):
            plaintext = plaintext.decode('utf-8')
        return plaintext
