"""
Durable storage for cryptographic key material.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Optional
import logging
import threading

from .interfaces import KeyStorageInterface

logger = logging.getLogger(__name__)

_SAFE_KEY_ID = re.compile(r'^[A-Za-z0-9._:-]+$')


def _validate_key_id(key_id: str) -> str:
    if not key_id or not _SAFE_KEY_ID.match(key_id) or key_id in ('.', '..'):
        raise ValueError(f"Invalid key id: {key_id!r}")
    return key_id


class FileKeyStorage(KeyStorageInterface):
    """Stores each key in its own owner-only file."""

    def __init__(self, key_dir: str):
        """
        Initialize file key storage.

        Args:
            key_dir: Directory holding key files
        """
        self.key_dir = Path(key_dir)
        self.key_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.key_dir, 0o700)

    def _path(self, key_id: str) -> Path:
        return self.key_dir / f"{_validate_key_id(key_id).replace(':', '_')}.key"

    def store(self, key_id: str, data: bytes) -> None:
        path = self._path(key_id)
        fd, tmp_path = tempfile.mkstemp(dir=self.key_dir, prefix='.tmp-')
        try:
            os.chmod(tmp_path, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except Exception:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logger.debug(f"Stored key {key_id}")

    def load(self, key_id: str) -> Optional[bytes]:
        path = self._path(key_id)
        if not path.exists():
            return None
        return path.read_bytes()

    def delete(self, key_id: str) -> bool:
        path = self._path(key_id)
        if not path.exists():
            return False
        path.unlink()
        logger.debug(f"Deleted key {key_id}")
        return True


class InMemoryKeyStorage(KeyStorageInterface):
    """Process-local key storage for simulations and tests."""

    def __init__(self):
        self._keys: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def store(self, key_id: str, data: bytes) -> None:
        with self._lock:
            self._keys[_validate_key_id(key_id)] = bytes(data)

    def load(self, key_id: str) -> Optional[bytes]:
        with self._lock:
            return self._keys.get(key_id)

    def delete(self, key_id: str) -> bool:
        with self._lock:
            return self._keys.pop(key_id, None) is not None
