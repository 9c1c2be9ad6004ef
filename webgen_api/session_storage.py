"""
DiskStore-based credential vault with encryption.

Persists the single session record of this installation using py-key-value's
DiskStore behind a Fernet encryption wrapper. The Fernet key is derived from
stable machine material unless one is supplied explicitly.
"""

import os

from cryptography.fernet import Fernet
from key_value.aio.stores.disk import DiskStore
from key_value.aio.wrappers.encryption import FernetEncryptionWrapper
from pydantic import ValidationError

from .exceptions import StorageFailure
from .logger import logger
from .models import SCHEMA_VERSION, SessionRecord
from .utils import derive_fernet_key

ENCRYPTION_KEY_ENV = "WEBGEN_STORAGE_ENCRYPTION_KEY"


class CredentialVault:
    """Encrypted, durable storage for one SessionRecord."""

    RECORD_KEY = "session:active"

    def __init__(self, directory: str, encryption_key: str | None = None):
        """
        Initialize the vault.

        Args:
            directory: Directory for DiskStore
            encryption_key: Optional Fernet key (base64 encoded string).
                          If None, WEBGEN_STORAGE_ENCRYPTION_KEY is used, and
                          failing that a key is derived from machine material.
        """
        self._directory = directory

        key = encryption_key or os.getenv(ENCRYPTION_KEY_ENV)
        if key:
            fernet = Fernet(key.encode())
        else:
            fernet = Fernet(derive_fernet_key())
            logger.debug("Using machine-derived vault key")

        disk_store = DiskStore(directory=str(self._directory))
        self._store = FernetEncryptionWrapper(key_value=disk_store, fernet=fernet)

    @property
    def directory(self) -> str:
        return self._directory

    async def save(self, record: SessionRecord) -> None:
        """
        Encrypt and persist the record, replacing any prior one.

        Raises:
            StorageFailure: If the store cannot be written
        """
        data = record.to_storage()
        try:
            await self._store.put(self.RECORD_KEY, data)
        except Exception as e:
            raise StorageFailure(f"Could not persist session: {e}", record=record) from e
        logger.debug(f"Saved session for {record.identity_hint or 'unknown identity'}")

    async def load(self) -> SessionRecord | None:
        """
        Load and decrypt the stored record.

        Never raises: a missing, undecryptable, outdated or malformed entry is
        reported as None and corrupt entries are discarded.
        """
        try:
            value = await self._store.get(self.RECORD_KEY)
        except Exception as e:
            logger.warning(f"Stored session could not be decrypted, discarding it: {e}")
            await self._discard()
            return None

        if value is None:
            return None

        version = value.get("schema_version") if isinstance(value, dict) else None
        if version != SCHEMA_VERSION:
            logger.warning(f"Stored session has schema version {version!r}, discarding it")
            await self._discard()
            return None

        try:
            return SessionRecord.model_validate(value)
        except ValidationError as e:
            logger.warning(f"Stored session is malformed, discarding it: {e.error_count()} errors")
            await self._discard()
            return None

    async def clear(self) -> None:
        """
        Delete the stored record. Succeeds when nothing is stored.

        Raises:
            StorageFailure: If the store cannot be written
        """
        try:
            await self._store.delete(self.RECORD_KEY)
        except Exception as e:
            raise StorageFailure(f"Could not clear stored session: {e}") from e
        logger.debug("Cleared stored session")

    async def _discard(self) -> None:
        try:
            await self._store.delete(self.RECORD_KEY)
        except Exception as e:
            logger.debug(f"Could not discard corrupt session entry: {e}")
