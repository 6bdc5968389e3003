"""Encrypted key-value storage for persisted engine state."""
import hashlib
import os
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

import nacl.exceptions
from nacl.secret import SecretBox

from .errors import StorageIOFailure


class Vault(Protocol):
    """Storage collaborator; implementations raise OSError on I/O failure."""

    def load(self, key: str) -> Optional[bytes]:
        ...

    def save(self, key: str, value: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryVault:
    """Process local vault."""

    def __init__(self):
        self.values: Dict[str, bytes] = {}

    def load(self, key: str) -> Optional[bytes]:
        return self.values.get(key)

    def save(self, key: str, value: bytes):
        self.values[key] = bytes(value)

    def delete(self, key: str):
        self.values.pop(key, None)


class FileVault:
    """One SecretBox encrypted file per key under a directory."""

    def __init__(self, directory: Union[str, Path], secret_key: bytes):
        self.directory = Path(directory)
        self._box = SecretBox(secret_key)

    def _path(self, key: str) -> Path:
        return self.directory / hashlib.sha256(key.encode("utf-8")).hexdigest()

    def load(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        sealed = path.read_bytes()
        try:
            return self._box.decrypt(sealed)
        except nacl.exceptions.CryptoError:
            raise StorageIOFailure(f"Vault record for {key!r} failed authentication")

    def save(self, key: str, value: bytes):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(bytes(self._box.encrypt(value)))
        os.replace(tmp, path)

    def delete(self, key: str):
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
