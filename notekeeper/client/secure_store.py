from __future__ import annotations

import asyncio
import json
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from notekeeper.client.errors import StorageError
from notekeeper.config import ClientSettings
from notekeeper.logging import get_logger

logger = get_logger(__name__)


class SecureCredentialStore:
    """Encrypted key/value file for client credentials.

    All entries live in one Fernet token at ``path``. When no key is supplied a
    key file is created next to it (``<path>.key``, mode 0600) on first use.
    """

    def __init__(self, path: Union[str, Path], key: Optional[Union[str, bytes]] = None):
        self.path = Path(path)
        self._key = key.encode() if isinstance(key, str) else key
        self._fernet: Optional[Fernet] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "SecureCredentialStore":
        return cls(settings.credential_path, settings.credential_key)

    @property
    def key_path(self) -> Path:
        return self.path.with_name(self.path.name + ".key")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            key = self._key or self._load_or_create_key()
            try:
                self._fernet = Fernet(key)
            except ValueError as exc:
                raise StorageError("invalid credential encryption key") from exc
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        if self.key_path.exists():
            return self.key_path.read_bytes().strip()
        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(key)
        logger.info("credential_key_created", path=str(self.key_path))
        return key

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            token = self.path.read_bytes()
            decoded = json.loads(self._get_fernet().decrypt(token))
        except InvalidToken as exc:
            raise StorageError("credential store could not be decrypted") from exc
        except (OSError, ValueError) as exc:
            raise StorageError("credential store is unreadable") from exc
        if not isinstance(decoded, dict):
            raise StorageError("credential store is corrupted")
        return {str(k): str(v) for k, v in decoded.items()}

    def _write_all(self, entries: Dict[str, str]) -> None:
        try:
            token = self._get_fernet().encrypt(json.dumps(entries).encode("utf-8"))
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(token)
            tmp_path.replace(self.path)
        except OSError as exc:
            raise StorageError("credential store could not be written") from exc

    def get_sync(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read_all().get(key)

    def set_sync(self, key: str, value: str) -> None:
        with self._lock:
            entries = self._read_all()
            entries[key] = value
            self._write_all(entries)

    def delete_sync(self, key: str) -> bool:
        with self._lock:
            entries = self._read_all()
            if key not in entries:
                return False
            del entries[key]
            self._write_all(entries)
            return True

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self.get_sync, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self.set_sync, key, value)

    async def delete(self, key: str) -> bool:
        """Remove ``key``; returns whether it was present."""
        return await asyncio.to_thread(self.delete_sync, key)
