"""Persistent key/value storage backends.

This module provides the client-side storage the OAuth layer persists
tokens and pending flows into:
- MemoryStorage: in-process dictionary, for tests and embedding apps
- EncryptedFileStorage: a single JSON file encrypted with Fernet
  (AES-128-CBC + HMAC), the key held in the OS keyring, restricted file
  permissions and file locking around every read and write
"""

import base64
import getpass
import hashlib
import json
import logging
import os
import platform
import stat
import sys
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .errors import TokenStoreError

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "integrate-sdk"
KEYRING_USERNAME = "storage-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "integrate-sdk"
STORAGE_FILE = "storage.json"

RECOVERY_HINT = "Run 'integrate logout' to clear stored data and re-authorize."


class StorageDecryptionError(TokenStoreError):
    """Failed to decrypt the storage file.

    The encryption key changed (keyring cleared, different machine) or the
    file is corrupted. Clearing the storage and re-authorizing recovers.
    """

    pass


class KeyValueStorage(ABC):
    """String key/value storage, modelled on browser localStorage."""

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        """Return the value for key, or None."""

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store value under key."""

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    def keys(self) -> list[str]:
        """List all stored keys."""


class MemoryStorage(KeyValueStorage):
    """In-memory storage. Contents are lost when the process exits."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def __len__(self) -> int:
        return len(self._data)


@contextmanager
def locked(path: Path, exclusive: bool = True) -> Iterator[None]:
    """Hold an OS lock on a sidecar .lock file next to path.

    Windows has no shared locks, so readers lock exclusively there.
    """
    lock_path = path.with_name(path.name + ".lock")
    lock_path.touch(exist_ok=True)

    with open(lock_path, "r+") as handle:
        fd = handle.fileno()
        if sys.platform == "win32":
            msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            try:
                yield
            finally:
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)


def machine_key() -> bytes:
    """Fernet key derived from the machine and user identity.

    Only used when no keyring backend is available: it keeps tokens
    unreadable to other users and machines, not to this user.
    """
    machine_id = Path("/etc/machine-id")
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "integrate"

    seed = "|".join(
        [
            machine_id.read_text().strip() if machine_id.exists() else platform.node(),
            user,
            str(Path.home()),
        ]
    )
    return base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest())


def load_encryption_key() -> tuple[bytes, bool]:
    """Return the storage key and whether it came from the OS keyring.

    A missing keyring entry is created. Any keyring failure falls back to
    machine_key().
    """
    try:
        stored = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
        if stored is None:
            stored = Fernet.generate_key().decode("ascii")
            keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, stored)
            logger.debug("Stored new storage encryption key in keyring")
        return stored.encode("ascii"), True
    except Exception as e:
        logger.warning(f"Keyring unavailable ({type(e).__name__}: {e}); using machine-derived storage key")
        return machine_key(), False


class EncryptedFileStorage(KeyValueStorage):
    """Encrypted file-backed key/value storage.

    All items live in one Fernet-encrypted JSON document under store_dir
    (default ~/.cache/integrate-sdk/) with 0600 permissions. Every change
    is a locked read-modify-write followed by an atomic rename.
    """

    def __init__(self, store_dir: Path | None = None, filename: str = STORAGE_FILE):
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self.filename = filename

        self.store_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not restrict permissions on {self.store_dir}: {e}")

        key, self._using_keyring = load_encryption_key()
        self._fernet = Fernet(key)

    @property
    def path(self) -> Path:
        """Path of the encrypted storage file."""
        return self.store_dir / self.filename

    def is_using_keyring(self) -> bool:
        """Whether the OS keyring holds the encryption key."""
        return self._using_keyring

    def _decode(self, blob: bytes) -> dict[str, str]:
        if not blob:
            return {}
        try:
            document = json.loads(self._fernet.decrypt(blob))
        except InvalidToken as e:
            raise StorageDecryptionError(
                f"Cannot decrypt {self.filename}: the encryption key may have changed. {RECOVERY_HINT}"
            ) from e
        except ValueError as e:
            raise StorageDecryptionError(f"Storage file {self.filename} is corrupted. {RECOVERY_HINT}") from e

        if not isinstance(document, dict):
            raise StorageDecryptionError(f"Storage file {self.filename} has an unexpected format. {RECOVERY_HINT}")
        return {str(k): str(v) for k, v in document.items()}

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        with locked(self.path, exclusive=False):
            return self._decode(self.path.read_bytes())

    def _update(self, change: Callable[[dict[str, str]], bool]) -> None:
        """Apply change to the stored document; it returns whether to write."""
        with locked(self.path):
            data = self._decode(self.path.read_bytes()) if self.path.exists() else {}
            if not change(data):
                return

            blob = self._fernet.encrypt(json.dumps(data).encode("utf-8"))
            fd, tmp_name = tempfile.mkstemp(dir=self.store_dir, prefix=f".{self.filename}.")
            try:
                with os.fdopen(fd, "wb") as tmp:
                    tmp.write(blob)
                os.chmod(tmp_name, stat.S_IRUSR | stat.S_IWUSR)
                os.replace(tmp_name, self.path)
            except OSError as e:
                Path(tmp_name).unlink(missing_ok=True)
                raise TokenStoreError(f"Could not write {self.path}: {e}") from e

    def get_item(self, key: str) -> str | None:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        def put(data: dict[str, str]) -> bool:
            data[key] = value
            return True

        self._update(put)

    def remove_item(self, key: str) -> None:
        self._update(lambda data: data.pop(key, None) is not None)

    def keys(self) -> list[str]:
        return list(self._load())

    def clear(self) -> None:
        """Delete the storage file entirely."""
        with locked(self.path):
            self.path.unlink(missing_ok=True)
        logger.info("Cleared encrypted storage")
