"""
Secure credential storage for the IDaaS session client.

This module persists the credential bundle under a single namespace using the
system keyring when available, falling back to a Fernet-encrypted file. Saves
are partial: the given fields are merged into what is already stored, and a
field given as None is removed.
"""

import os
import json
import asyncio
import logging
import tempfile
from typing import Optional, Dict, Any
from pathlib import Path

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken

from idaas_client.config import default_storage_path
from idaas_shared.exceptions import StorageError, ErrorCode
from idaas_shared.interfaces import ISecureStore

logger = logging.getLogger(__name__)

def merge_bundle(current: Optional[Dict[str, Any]], values: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a partial update into a stored bundle; None values drop their key."""
    merged = dict(current or {})
    for key, value in values.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class InMemoryTokenStorage(ISecureStore):
    """
    Process-local store with the same merge semantics as SecureTokenStorage.

    Nothing survives a restart; useful for ephemeral sessions and tests.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._bundle: Optional[Dict[str, Any]] = json.loads(json.dumps(initial)) if initial else None

    async def load(self) -> Optional[Dict[str, Any]]:
        if self._bundle is None:
            return None
        return json.loads(json.dumps(self._bundle))

    async def save(self, values: Dict[str, Any]) -> None:
        merged = merge_bundle(self._bundle, json.loads(json.dumps(values)))
        self._bundle = merged or None

    async def clear(self) -> None:
        self._bundle = None


class SecureTokenStorage(ISecureStore):
    """
    Secure storage for the credential bundle.

    Uses the system keyring when available, falls back to an encrypted file.
    Blocking keyring and file access runs in a worker thread so callers on the
    event loop are only suspended, never blocked.
    """

    def __init__(
        self,
        service_name: str = "idaas-client",
        namespace: str = "idaas-credentials",
        storage_path: Optional[str] = None,
        backend: str = "auto"
    ):
        self.service_name = service_name
        self.namespace = namespace
        self.backend = backend

        if backend == "keyring":
            self.keyring_available = True
        elif backend == "file":
            self.keyring_available = False
        else:
            self.keyring_available = self._check_keyring_availability()

        self.storage_path = Path(storage_path) if storage_path else Path(default_storage_path())

        self._encryption_key: Optional[bytes] = None

        logger.info(f"Token storage initialized (keyring: {self.keyring_available})")

    @classmethod
    def from_config(cls, config) -> ISecureStore:
        """Build the store selected by a ClientConfiguration."""
        backend = config.get_storage_backend()
        if backend == "memory":
            return InMemoryTokenStorage()
        return cls(
            service_name=config.get_storage_service_name(),
            namespace=config.get_storage_namespace(),
            storage_path=config.get_storage_path(),
            backend=backend
        )

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    @property
    def key_path(self) -> Path:
        return self.storage_path.with_name(self.storage_path.name + '.key')

    def _get_encryption_key(self) -> bytes:
        """Get or create the Fernet key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            key = self.key_path.read_bytes().strip()
            try:
                Fernet(key)
                self._encryption_key = key
                return key
            except ValueError:
                logger.warning(f"Malformed encryption key in {self.key_path}; generating a new one")

        key = Fernet.generate_key()
        self._write_private_file(self.key_path, key)

        self._encryption_key = key
        return key

    def _write_private_file(self, path: Path, data: bytes) -> None:
        """Atomically replace a file, readable by the owner only."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _encrypt_data(self, data: str) -> bytes:
        return Fernet(self._get_encryption_key()).encrypt(data.encode())

    def _decrypt_data(self, encrypted_data: bytes) -> str:
        return Fernet(self._get_encryption_key()).decrypt(encrypted_data).decode()

    # Keyring backend

    def _load_keyring(self) -> Optional[Dict[str, Any]]:
        value = keyring.get_password(self.service_name, self.namespace)
        if value:
            return json.loads(value)
        return None

    def _save_keyring(self, bundle: Dict[str, Any]) -> None:
        keyring.set_password(self.service_name, self.namespace, json.dumps(bundle))

    def _clear_keyring(self) -> None:
        try:
            keyring.delete_password(self.service_name, self.namespace)
        except PasswordDeleteError:
            # Nothing stored
            pass

    # Encrypted file backend

    def _load_file(self) -> Optional[Dict[str, Any]]:
        if not self.storage_path.exists():
            return None
        return self._read_all_file().get(self.namespace)

    def _read_all_file(self) -> Dict[str, Any]:
        if not self.storage_path.exists():
            return {}
        return json.loads(self._decrypt_data(self.storage_path.read_bytes()))

    def _read_existing_file(self) -> Dict[str, Any]:
        """Read the file for rewriting; an unreadable file counts as empty."""
        try:
            return self._read_all_file()
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Discarding unreadable credential file {self.storage_path}: {e!r}")
            return {}

    def _save_file(self, values: Dict[str, Any]) -> None:
        all_bundles = self._read_existing_file()
        all_bundles[self.namespace] = merge_bundle(all_bundles.get(self.namespace), values)
        self._write_private_file(self.storage_path, self._encrypt_data(json.dumps(all_bundles)))

    def _clear_file(self) -> None:
        if not self.storage_path.exists():
            return

        all_bundles = self._read_existing_file()
        all_bundles.pop(self.namespace, None)

        if all_bundles:
            self._write_private_file(self.storage_path, self._encrypt_data(json.dumps(all_bundles)))
        else:
            self.storage_path.unlink()

    # Synchronous operations

    def load_sync(self) -> Optional[Dict[str, Any]]:
        """
        Load the stored bundle.

        Raises:
            StorageError: If the store cannot be read or decrypted
        """
        try:
            if self.keyring_available:
                return self._load_keyring()
            return self._load_file()
        except InvalidToken as e:
            raise StorageError(
                "Stored credentials could not be decrypted",
                error_code=ErrorCode.STORAGE_DECRYPTION_FAILED,
                cause=e
            )
        except (KeyringError, OSError, ValueError) as e:
            raise StorageError(
                f"Failed to load credentials: {e}",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )

    def save_sync(self, values: Dict[str, Any]) -> None:
        """
        Merge values into the stored bundle.

        Raises:
            StorageError: If the bundle cannot be written
        """
        try:
            if self.keyring_available:
                self._save_keyring(merge_bundle(self._load_keyring(), values))
            else:
                self._save_file(values)

            logger.debug(f"Stored credential fields: {sorted(values)}")
        except (KeyringError, OSError, ValueError, InvalidToken) as e:
            logger.error(f"Failed to store credentials: {e}")
            raise StorageError(
                f"Failed to store credentials: {e}",
                error_code=ErrorCode.STORAGE_WRITE_FAILED,
                cause=e
            )

    def clear_sync(self) -> None:
        """
        Remove the stored bundle.

        Raises:
            StorageError: If the bundle cannot be removed
        """
        try:
            if self.keyring_available:
                self._clear_keyring()
            else:
                self._clear_file()
            logger.info("Stored credentials cleared")
        except (KeyringError, OSError, ValueError, InvalidToken) as e:
            logger.error(f"Failed to clear credentials: {e}")
            raise StorageError(
                f"Failed to clear credentials: {e}",
                error_code=ErrorCode.STORAGE_CLEAR_FAILED,
                cause=e
            )

    # ISecureStore

    async def load(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.load_sync)

    async def save(self, values: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.save_sync, values)

    async def clear(self) -> None:
        await asyncio.to_thread(self.clear_sync)
