"""
Key-value stores for persisted governance state.

The policy layer only needs ``get(key) -> bytes | None`` and
``set(key, bytes)``, so the backing store can be swapped (memory, disk,
remote) without touching the policy algorithms.

Design:
- Stores raise StorageError on I/O failure; the policy layer logs it and
  proceeds as if no prior state existed
- InMemoryStore for tests and single-process use
- FileStore writes one file per key with an atomic replace
"""

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterator, Optional, Union
from urllib.parse import quote, unquote

from src.core.exceptions import StorageError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """
    Abstract byte-oriented key-value store.

    Implementations must be safe to call from several threads.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """
        Read a value.

        Args:
            key: Storage key

        Returns:
            Stored bytes, or None when the key is absent

        Raises:
            StorageError: If the backing store cannot be read
        """
        pass

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """
        Write a value, replacing any previous one.

        Raises:
            StorageError: If the backing store cannot be written
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> Iterator[str]:
        """Iterate over stored keys starting with prefix."""
        pass


class InMemoryStore(KeyValueStore):
    """Dictionary-backed store."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise StorageError(f"Value for {key!r} must be bytes")
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> Iterator[str]:
        with self._lock:
            snapshot = [k for k in self._data if k.startswith(prefix)]
        return iter(snapshot)


class FileStore(KeyValueStore):
    """
    Durable store keeping one file per key under a directory.

    Keys are percent-encoded into file names; writes go to a temporary file
    that atomically replaces the target.
    """

    suffix = ".state"

    def __init__(self, directory: Union[str, Path]):
        """
        Initialize file store.

        Args:
            directory: Directory holding state files (created if missing)

        Raises:
            StorageError: If the directory cannot be created
        """
        self.directory = Path(directory)
        self._lock = threading.Lock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create state directory {self.directory}: {exc}") from exc

    def _path(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + self.suffix)

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to read {key!r}: {exc}") from exc

    def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise StorageError(f"Value for {key!r} must be bytes")
        path = self._path(key)
        with self._lock:
            try:
                fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            except OSError as exc:
                raise StorageError(f"Failed to write {key!r}: {exc}") from exc
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(value)
                os.replace(tmp_name, path)
            except OSError as exc:
                self._discard(tmp_name)
                raise StorageError(f"Failed to write {key!r}: {exc}") from exc

    @staticmethod
    def _discard(tmp_name: str) -> None:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove temporary file %s: %s", tmp_name, exc)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageError(f"Failed to delete {key!r}: {exc}") from exc

    def keys(self, prefix: str = "") -> Iterator[str]:
        for path in sorted(self.directory.glob(f"*{self.suffix}")):
            key = unquote(path.name[: -len(self.suffix)])
            if key.startswith(prefix):
                yield key
