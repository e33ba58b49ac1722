"""Token storage backends.

The flow engine only talks to the four-operation TokenStore interface
(save, retrieve, has, clear). Two backends ship with oauthkit:

- MemoryTokenStore: per-process dictionary guarded by per-key locks
- EncryptedFileTokenStore: Fernet-encrypted JSON file with the key held in
  the OS keyring (Keychain, libsecret, DPAPI), 0600 permissions and file
  locking against concurrent writers
"""

import base64
import hashlib
import json
import logging
import os
import stat
import sys
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .errors import TokenDecryptionError, TokenNotFoundError, TokenStoreError
from .tokens import Token, token_from_dict, token_to_dict

logger = logging.getLogger(__name__)

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


KEYRING_SERVICE = "oauthkit"
KEYRING_USERNAME = "token-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "oauthkit"
TOKENS_FILE = "tokens.json"

# Lock stripes shared by all keys of a MemoryTokenStore
LOCK_STRIPES = 32


def token_key(service: str, owner: str | None = None) -> str:
    """Storage key for a service, optionally scoped to one user or session.

    Multi-user deployments must pass an owner so that one user's request
    token never overwrites another's.
    """
    service_key = service.strip().lower()
    if owner:
        return f"{owner}::{service_key}"
    return service_key


class TokenStore(ABC):
    """Interface every storage backend implements."""

    @abstractmethod
    def save(self, key: str, token: Token) -> None:
        """Store a token, replacing whatever was stored under key."""

    @abstractmethod
    def retrieve(self, key: str) -> Token:
        """Load the token stored under key.

        Raises:
            TokenNotFoundError: If nothing is stored under key
        """

    @abstractmethod
    def has(self, key: str) -> bool:
        """Whether a token is stored under key. Never raises for a missing key."""

    @abstractmethod
    def clear(self, key: str) -> bool:
        """Remove the entry for key.

        Returns:
            True if an entry was removed, False if there was none
        """

    def keys(self) -> list[str]:
        """All keys with stored tokens."""
        return []


class MemoryTokenStore(TokenStore):
    """In-memory token store for single-process deployments and tests.

    Each key maps onto one of a fixed set of lock stripes, so the number of
    locks stays constant no matter how many owners come and go.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, dict[str, Any]] = {}
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % LOCK_STRIPES]

    def save(self, key: str, token: Token) -> None:
        # Stored serialized so callers cannot mutate what is in the store
        data = token_to_dict(token)
        with self._lock_for(key):
            self._tokens[key] = data
        logger.debug(f"Stored {data['kind']} token for {key}")

    def retrieve(self, key: str) -> Token:
        with self._lock_for(key):
            data = self._tokens.get(key)
        if data is None:
            raise TokenNotFoundError(key)
        return token_from_dict(data)

    def has(self, key: str) -> bool:
        return key in self._tokens

    def clear(self, key: str) -> bool:
        with self._lock_for(key):
            removed = self._tokens.pop(key, None) is not None
        if removed:
            logger.debug(f"Cleared token for {key}")
        return removed

    def keys(self) -> list[str]:
        return list(self._tokens)


def _derive_fallback_key() -> bytes:
    """Derive a fallback encryption key from machine-specific data.

    Used when keyring is not available. Less secure than keyring but
    still provides encryption at rest.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "oauthkit")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


class EncryptedFileTokenStore(TokenStore):
    """Encrypted on-disk token storage.

    Tokens are encrypted using Fernet (AES-128-CBC + HMAC) with the
    encryption key stored in the OS keyring. The token file lives in
    ~/.cache/oauthkit/ by default with 0600 permissions. Each mutation is a
    read-modify-write under an exclusive file lock.
    """

    def __init__(self, store_dir: Path | None = None):
        """Initialize token store.

        Args:
            store_dir: Optional custom storage directory
        """
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self._cipher: Fernet | None = None
        self._using_keyring = False
        self._lock = threading.RLock()

        self._init_storage()
        self._init_encryption()

    def _init_storage(self) -> None:
        """Create the storage directory with owner-only permissions."""
        self.store_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Initialize encryption using keyring or fallback."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            # Any keyring backend failure (missing backend, locked, D-Bus errors)
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key). "
                f"Tokens are still encrypted but with reduced security."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    @property
    def tokens_path(self) -> Path:
        return self.store_dir / TOKENS_FILE

    def _encrypt(self, data: str) -> str:
        if self._cipher is None:
            raise TokenStoreError("Encryption not initialized")
        return self._cipher.encrypt(data.encode("utf-8")).decode("ascii")

    def _decrypt(self, data: str) -> str:
        if self._cipher is None:
            raise TokenStoreError("Encryption not initialized")
        try:
            return self._cipher.decrypt(data.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise TokenStoreError(
                "Failed to decrypt token data. The encryption key may have changed."
            ) from e

    def _read_unlocked(self) -> dict[str, Any]:
        filepath = self.tokens_path
        if not filepath.exists():
            return {}

        encrypted_data = filepath.read_text()
        if not encrypted_data:
            return {}

        try:
            result: dict[str, Any] = json.loads(self._decrypt(encrypted_data))
            return result
        except TokenStoreError as e:
            raise TokenDecryptionError(
                f"Cannot decrypt {TOKENS_FILE}. The encryption key may have changed. "
                f"Clear the store and re-authenticate."
            ) from e
        except json.JSONDecodeError as e:
            raise TokenDecryptionError(
                f"Token file {TOKENS_FILE} is corrupted. Clear the store and re-authenticate."
            ) from e

    def _write_unlocked(self, data: dict[str, Any]) -> None:
        filepath = self.tokens_path
        filepath.write_text(self._encrypt(json.dumps(data, indent=2)))
        try:
            filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

    def _read(self) -> dict[str, Any]:
        with self._lock, _file_lock(self.tokens_path, exclusive=False):
            return self._read_unlocked()

    def save(self, key: str, token: Token) -> None:
        data = token_to_dict(token)
        with self._lock, _file_lock(self.tokens_path, exclusive=True):
            tokens = self._read_unlocked()
            tokens[key] = data
            self._write_unlocked(tokens)
        logger.debug(f"Stored {data['kind']} token for {key}")

    def retrieve(self, key: str) -> Token:
        tokens = self._read()
        if key not in tokens:
            raise TokenNotFoundError(key)
        try:
            return token_from_dict(tokens[key])
        except (KeyError, ValueError) as e:
            raise TokenStoreError(f"Invalid token data for {key}: {e}") from e

    def has(self, key: str) -> bool:
        try:
            return key in self._read()
        except TokenStoreError as e:
            logger.warning(f"Could not read token store: {e}")
            return False

    def clear(self, key: str) -> bool:
        with self._lock, _file_lock(self.tokens_path, exclusive=True):
            tokens = self._read_unlocked()
            if key not in tokens:
                return False
            del tokens[key]
            self._write_unlocked(tokens)
        logger.debug(f"Cleared token for {key}")
        return True

    def keys(self) -> list[str]:
        return list(self._read())

    def clear_all(self) -> None:
        """Delete every stored token."""
        with self._lock:
            if self.tokens_path.exists():
                self.tokens_path.unlink()
        logger.info("Cleared all stored tokens")

    def is_using_keyring(self) -> bool:
        """True if the encryption key lives in the OS keyring."""
        return self._using_keyring


def create_store(backend: str = "memory", store_dir: Path | None = None) -> TokenStore:
    """Build a store backend by name ("memory" or "file").

    Raises:
        TokenStoreError: If the backend name is unknown
    """
    if backend == "memory":
        return MemoryTokenStore()
    if backend == "file":
        return EncryptedFileTokenStore(store_dir)
    raise TokenStoreError(f"Unknown token store backend: {backend!r}")
