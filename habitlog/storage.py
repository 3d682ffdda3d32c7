"""
Key-value backing stores for the `HabitStore`.

A backend stores opaque text blobs by key:

- `get(key)` returns the blob or None when the key was never written.
- `set(key, blob)` replaces the blob.
- `remove_many(keys)` deletes the given keys, ignoring the ones that do not exist.

`EncryptedFileBackend` is the durable one: one Fernet-encrypted file per key. Each write
goes to a temporary file that is then moved over the old one, so a crash mid-write leaves
the previous blob intact. It is not transactional across keys.
`MemoryBackend` keeps everything in a dict and is what the tests use.
"""
# habitlog/storage.py

import os
import re
from typing import Dict, Iterable, Optional

from cryptography.fernet import Fernet

from habitlog.errors import PersistenceError

_SAFE_KEY = re.compile(r'^[A-Za-z0-9_.\-]+$')


class MemoryBackend:
    """Dictionary-backed store for tests and throwaway stores."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._blobs: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._blobs.get(key)

    def set(self, key: str, blob: str) -> None:
        self._blobs[key] = blob

    def remove_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._blobs.pop(key, None)

    def keys(self):
        return list(self._blobs)


class EncryptedFileBackend:
    """Stores each key as an encrypted file inside `data_dir`."""

    def __init__(self, data_dir: str, encryptor: Fernet) -> None:
        self.data_dir = data_dir
        self._encryptor = encryptor

    def _path(self, key: str) -> str:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Unsafe storage key: {key!r}")
        return os.path.join(self.data_dir, f"{key}.json")

    def get(self, key: str) -> Optional[str]:
        """Reads and decrypts a blob.

        Raises:
            cryptography.fernet.InvalidToken: If the file was not written with this key.
            PersistenceError: If the file exists but cannot be read.
        """
        path = self._path(key)
        try:
            with open(path, 'rb') as f:
                encrypted_data = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Could not read {path}", original_error=e) from e
        if not encrypted_data:
            return None
        return self._encryptor.decrypt(encrypted_data).decode('utf-8')

    def set(self, key: str, blob: str) -> None:
        path = self._path(key)
        tmp_path = path + '.tmp'
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(tmp_path, 'wb') as f:
                f.write(self._encryptor.encrypt(blob.encode('utf-8')))
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(f"Could not write {path}", original_error=e) from e

    def remove_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            path = self._path(key)
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                raise PersistenceError(f"Could not remove {path}", original_error=e) from e
