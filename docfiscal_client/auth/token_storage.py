"""
Secure Token Storage for the DocFiscal client.

This module persists the access/refresh token pair under three keys of a
durable key-value backend: the system keyring, an encrypted file, or process
memory. CredentialStore keeps the three keys consistent: a failed write is
rolled back (or the keys purged) so that a half-written pair is never read.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict

from cryptography.fernet import Fernet

from shared.exceptions import StorageUnavailableError, ErrorCode, ConfigurationError
from shared.interfaces import IKeyValueBackend
from shared.models import TokenPair, TOKEN_KEYS

logger = logging.getLogger(__name__)


DEFAULT_SERVICE_NAME = "docfiscal-client"


def default_storage_path() -> Path:
    """Get path for encrypted file storage."""
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        config_dir = Path(xdg_config) / 'docfiscal'
    else:
        config_dir = Path.home() / '.config' / 'docfiscal'
    return config_dir / 'credentials.enc'


class MemoryBackend(IKeyValueBackend):
    """Process-local backend; nothing survives a restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class KeyringBackend(IKeyValueBackend):
    """Backend storing each key as a password entry in the system keyring."""

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        self.service_name = service_name

    @staticmethod
    def is_available(service_name: str = DEFAULT_SERVICE_NAME) -> bool:
        """Check if system keyring is available."""
        try:
            import keyring
            test_key = f"{service_name}_test"
            keyring.set_password(service_name, test_key, "test")
            result = keyring.get_password(service_name, test_key)
            keyring.delete_password(service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def get(self, key: str) -> Optional[str]:
        import keyring
        return keyring.get_password(self.service_name, key)

    def set(self, key: str, value: str) -> None:
        import keyring
        keyring.set_password(self.service_name, key, value)

    def delete(self, key: str) -> None:
        import keyring
        from keyring.errors import PasswordDeleteError

        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            pass


class EncryptedFileBackend(IKeyValueBackend):
    """
    Backend keeping all keys in one Fernet-encrypted JSON document.

    The encryption key lives next to the data file; both are created with
    mode 0600. Writes go through a temporary file and os.replace.
    """

    def __init__(self, storage_path: Optional[Path] = None, key_path: Optional[Path] = None):
        self.storage_path = Path(storage_path) if storage_path else default_storage_path()
        self.key_path = Path(key_path) if key_path else self.storage_path.with_suffix('.key')
        self._encryption_key: Optional[bytes] = None

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(key)

        self._encryption_key = key
        return key

    def _load(self) -> Dict[str, str]:
        """Decrypt the whole document; raises on a corrupt or foreign file."""
        if not self.storage_path.exists():
            return {}

        fernet = Fernet(self._get_encryption_key())
        decrypted_data = fernet.decrypt(self.storage_path.read_bytes()).decode()
        data = json.loads(decrypted_data)
        if not isinstance(data, dict):
            raise StorageUnavailableError(
                "Credential file does not contain a key-value document",
                error_code=ErrorCode.STORAGE_CORRUPTED
            )
        return data

    def _load_for_write(self) -> Dict[str, str]:
        try:
            return self._load()
        except Exception as e:
            # An unreadable file is replaced by the next write
            logger.warning(f"Discarding unreadable credential file: {e}")
            return {}

    def _save(self, data: Dict[str, str]) -> None:
        if not data:
            if self.storage_path.exists():
                self.storage_path.unlink()
            return

        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        fernet = Fernet(self._get_encryption_key())
        encrypted_data = fernet.encrypt(json.dumps(data).encode())

        tmp_path = self.storage_path.with_name(self.storage_path.name + '.tmp')
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(encrypted_data)
        os.replace(tmp_path, self.storage_path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load_for_write()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load_for_write()
        if key in data or not data:
            data.pop(key, None)
            self._save(data)


def create_backend(
    backend_name: str,
    storage_path: Optional[str] = None,
    service_name: str = DEFAULT_SERVICE_NAME
) -> IKeyValueBackend:
    """
    Create a storage backend by name.

    Args:
        backend_name: 'memory', 'keyring' or 'file'
        storage_path: Encrypted file location (file backend)
        service_name: Keyring service name (keyring backend)

    Returns:
        Configured backend; 'keyring' falls back to 'file' when no
        usable keyring is installed
    """
    name = (backend_name or 'file').lower()

    if name == 'memory':
        return MemoryBackend()

    if name == 'keyring':
        if KeyringBackend.is_available(service_name):
            return KeyringBackend(service_name)
        logger.warning("System keyring unavailable, using encrypted file storage")
        name = 'file'

    if name == 'file':
        return EncryptedFileBackend(Path(storage_path).expanduser() if storage_path else None)

    raise ConfigurationError(f"Unknown storage backend: {backend_name}", config_key='auth.storage_backend')


class CredentialStore:
    """
    Fail-safe persistence of the token pair.

    The pair is written under three independent keys; store() restores the
    previous values (or purges all three) when any write fails, read()
    reports anything incomplete as no credentials, and clear() never raises.

    `generation` advances on every store() and clear(), so a writer holding an
    older generation can tell that the pair changed underneath it.
    """

    def __init__(self, backend: Optional[IKeyValueBackend] = None):
        self.backend = backend or MemoryBackend()
        self._generation = 0
        logger.debug(f"Credential store initialized ({type(self.backend).__name__})")

    @property
    def generation(self) -> int:
        return self._generation

    def store(self, pair: TokenPair) -> None:
        """
        Persist all three fields of a token pair.

        Raises:
            StorageUnavailableError: If the pair could not be written; the
                store then holds the previous pair or nothing
        """
        self._generation += 1
        try:
            previous = self._snapshot()
        except Exception as e:
            logger.warning(f"Could not snapshot stored credentials before write: {e}")
            previous = None

        try:
            for key, value in pair.to_storage().items():
                self.backend.set(key, value)
        except Exception as e:
            logger.error(f"Failed to store tokens: {e}")
            self._restore(previous)
            raise StorageUnavailableError(
                f"Failed to store tokens: {e}",
                error_code=ErrorCode.STORAGE_WRITE_FAILED,
                cause=e
            )

        logger.debug("Token pair stored")

    def read(self) -> Optional[TokenPair]:
        """
        Read the stored pair.

        Returns:
            The pair, or None if any field is missing, blank or unreadable
        """
        try:
            values = self._snapshot()
        except Exception as e:
            logger.error(f"Failed to retrieve tokens: {e}")
            return None

        if not any(values.values()):
            return None

        try:
            return TokenPair.from_storage(values)
        except ValueError as e:
            logger.warning(f"Ignoring incomplete stored credentials: {e}")
            return None

    def clear(self) -> None:
        """Remove all three keys."""
        self._generation += 1
        for key in TOKEN_KEYS:
            try:
                self.backend.delete(key)
            except Exception as e:
                logger.error(f"Failed to remove {key}: {e}")

    def _snapshot(self) -> Dict[str, Optional[str]]:
        return {key: self.backend.get(key) for key in TOKEN_KEYS}

    def _restore(self, snapshot: Optional[Dict[str, Optional[str]]]) -> None:
        if snapshot is None:
            self.clear()
            return

        try:
            for key, value in snapshot.items():
                if value is None:
                    self.backend.delete(key)
                else:
                    self.backend.set(key, value)
            logger.info("Previous credentials restored after failed write")
        except Exception as e:
            logger.error(f"Rollback failed, purging stored credentials: {e}")
            self.clear()
