"""
Encrypted Credential Vault for Prism
====================================
Provider API keys are stored only in encrypted form:

- A 256-bit key is derived from the user's passphrase with
  PBKDF2-HMAC-SHA256 (100,000 iterations by default) and a random salt.
- The JSON-encoded credential set is sealed with AES-256-GCM; a bad
  passphrase or any tampering fails tag verification.
- The persisted blob is ``base64(salt[16] || iv[12] || ciphertext+tag)``.
  Changing either length is a breaking format change.

While unlocked, the passphrase is cached in a SessionContext owned by the
vault so a reload within the same session can re-unlock silently. The
session cache is never written to durable storage; locking the vault
clears it together with the plaintext credentials.

NEVER logs credentials, passphrases or the reason a decryption failed.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from enum import Enum
from pathlib import Path

import keyring
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.errors import KeyringError, PasswordDeleteError

from .config import DEFAULT_KDF_ITERATIONS, ensure_config_dir
from .errors import CryptoError, StorageError

logger = logging.getLogger(__name__)

# Constants
SERVICE_NAME = "prism"
KEYRING_USERNAME = "vault"
BLOB_FILENAME = "credentials.enc"

SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
KDF_ITERATIONS = DEFAULT_KDF_ITERATIONS

INCORRECT_PASSPHRASE = "Incorrect passphrase"


def derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Stretch a passphrase into a 256-bit AES key. CPU-bound."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt(plaintext: str, passphrase: str, iterations: int = KDF_ITERATIONS) -> str:
    """Encrypt with a fresh salt and nonce; returns the base64 blob."""
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(passphrase, salt, iterations)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(salt + iv + ciphertext).decode("ascii")


def decrypt(blob: str, passphrase: str, iterations: int = KDF_ITERATIONS) -> str:
    """
    Decrypt a blob produced by ``encrypt``.

    Raises CryptoError for a wrong passphrase, a tampered or truncated
    blob, or anything that is not canonical base64. Never returns
    partially decrypted data.
    """
    encoded = blob.strip()
    try:
        combined = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError("Malformed vault blob") from e

    # Reject non-canonical encodings so every bit of the stored text matters
    if base64.b64encode(combined).decode("ascii") != encoded:
        raise CryptoError("Malformed vault blob")

    if len(combined) < SALT_LENGTH + IV_LENGTH + TAG_LENGTH:
        raise CryptoError("Vault blob is truncated")

    salt = combined[:SALT_LENGTH]
    iv = combined[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    ciphertext = combined[SALT_LENGTH + IV_LENGTH:]

    key = derive_key(passphrase, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise CryptoError("Authentication failed") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoError("Malformed vault payload") from e


class CredentialSet(Mapping[str, str]):
    """Read-only provider → secret mapping that never prints its secrets"""

    def __init__(self, data: Mapping[str, str] | None = None) -> None:
        self._data: dict[str, str] = {}
        for provider, secret in (data or {}).items():
            if not isinstance(provider, str) or not isinstance(secret, str):
                raise TypeError("Credentials must map provider names to strings")
            self._data[provider] = secret

    def __getitem__(self, provider: str) -> str:
        return self._data[provider]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return dict(self._data) == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        """Prevent accidental key exposure in logs"""
        masked = ", ".join(f"{p}=****" for p in sorted(self._data))
        return f"CredentialSet({masked})"

    __str__ = __repr__

    def to_json(self) -> str:
        return json.dumps(self._data, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> CredentialSet:
        try:
            data = json.loads(text)
        except ValueError as e:
            raise CryptoError("Malformed vault payload") from e
        if not isinstance(data, dict):
            raise CryptoError("Malformed vault payload")
        try:
            return cls(data)
        except TypeError as e:
            raise CryptoError("Malformed vault payload") from e


class BlobStore(ABC):
    """Durable home of the single encrypted credential blob"""

    @abstractmethod
    def get(self) -> str | None:
        """Return the stored blob, or None if nothing is stored.

        Raises StorageError when the backend cannot be read, so a failed
        read is never mistaken for an empty vault.
        """
        pass

    @abstractmethod
    def set(self, blob: str) -> bool:
        """Store the blob, replacing any previous one"""
        pass

    @abstractmethod
    def delete(self) -> bool:
        pass

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if this backend is available on the system"""
        pass


class FileBlobStore(BlobStore):
    """Blob in a 0600 file under the config directory"""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or ensure_config_dir() / BLOB_FILENAME

    @property
    def is_available(self) -> bool:
        return True

    def get(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            return self.path.read_text(encoding="ascii")
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read credential blob: {e}")
            raise StorageError("Failed to read credential blob") from e

    def set(self, blob: str) -> bool:
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            # Write atomically with restricted permissions
            temp_file = self.path.with_suffix(".tmp")
            with open(temp_file, "w", encoding="ascii") as f:
                f.write(blob)
            os.chmod(temp_file, 0o600)  # Owner read/write only
            os.replace(temp_file, self.path)
            return True
        except OSError as e:
            logger.error(f"Failed to save credential blob: {e}")
            return False

    def delete(self) -> bool:
        try:
            self.path.unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.warning(f"Failed to delete credential blob: {e}")
            return False


class KeyringBlobStore(BlobStore):
    """Blob in the OS keychain/keyring"""

    def __init__(self, service: str = SERVICE_NAME, username: str = KEYRING_USERNAME) -> None:
        self.service = service
        self.username = username

    @property
    def is_available(self) -> bool:
        try:
            # Test if keyring is functional
            keyring.get_password(self.service, "__test__")
            return True
        except Exception as e:
            # Backends fail in many ways (D-Bus, locked collections, ...)
            logger.debug(f"Keyring unavailable: {type(e).__name__}")
            return False

    def get(self) -> str | None:
        try:
            return keyring.get_password(self.service, self.username)
        except KeyringError as e:
            logger.warning(f"Keyring get failed: {e}")
            raise StorageError("Failed to read credential blob from keyring") from e

    def set(self, blob: str) -> bool:
        try:
            keyring.set_password(self.service, self.username, blob)
            logger.info("Stored credential blob in keyring")
            return True
        except KeyringError as e:
            logger.error(f"Keyring set failed: {e}")
            return False

    def delete(self) -> bool:
        try:
            keyring.delete_password(self.service, self.username)
            return True
        except PasswordDeleteError:
            # Nothing stored
            return True
        except KeyringError as e:
            logger.warning(f"Keyring delete failed: {e}")
            return False


class MemoryBlobStore(BlobStore):
    """Process-lifetime store; nothing survives a restart"""

    def __init__(self, blob: str | None = None) -> None:
        self.blob = blob

    @property
    def is_available(self) -> bool:
        return True

    def get(self) -> str | None:
        return self.blob

    def set(self, blob: str) -> bool:
        self.blob = blob
        return True

    def delete(self) -> bool:
        self.blob = None
        return True


def default_blob_store(backend: str = "file") -> BlobStore:
    """Keyring when requested and working, otherwise the encrypted file."""
    if backend == "keyring":
        store = KeyringBlobStore()
        if store.is_available:
            return store
        logger.warning("Keyring backend unavailable; falling back to encrypted file")
    return FileBlobStore()


class SessionContext:
    """
    Session-scoped passphrase cache.

    Lives only in memory and only for one session; ``end()`` (or leaving the
    ``with`` block) tears it down.
    """

    def __init__(self) -> None:
        self._passphrase: str | None = None
        self._unlocked = False

    def cache_passphrase(self, passphrase: str) -> None:
        self._passphrase = passphrase
        self._unlocked = True

    @property
    def cached_passphrase(self) -> str | None:
        return self._passphrase

    @property
    def is_unlocked(self) -> bool:
        return self._unlocked

    def clear(self) -> None:
        self._passphrase = None
        self._unlocked = False

    def end(self) -> None:
        self.clear()

    def __enter__(self) -> SessionContext:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.end()

    def __repr__(self) -> str:
        return f"SessionContext(unlocked={self._unlocked})"


class VaultState(Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class CredentialVault:
    """
    Passphrase-protected credential store.

    States: locked --unlock--> unlocked --lock--> locked; save always ends
    unlocked with the new credentials active.
    """

    def __init__(
        self,
        store: BlobStore | None = None,
        session: SessionContext | None = None,
        iterations: int = KDF_ITERATIONS,
    ) -> None:
        self._store = store if store is not None else default_blob_store()
        self._session = session if session is not None else SessionContext()
        self._iterations = iterations
        self._credentials: CredentialSet | None = None

    @property
    def state(self) -> VaultState:
        return VaultState.UNLOCKED if self._credentials is not None else VaultState.LOCKED

    @property
    def is_unlocked(self) -> bool:
        return self._credentials is not None

    @property
    def session(self) -> SessionContext:
        return self._session

    @property
    def has_stored_credentials(self) -> bool:
        try:
            return self._store.get() is not None
        except StorageError:
            # Unreadable is not the same as absent
            return True

    @property
    def credentials(self) -> CredentialSet | None:
        return self._credentials

    async def unlock(self, passphrase: str) -> bool:
        """
        Unlock with a passphrase. With nothing stored yet this creates the
        vault and accepts any passphrase. Returns False on any failure,
        including a store that cannot be read.
        """
        try:
            blob = self._store.get()
        except StorageError:
            logger.warning("Vault unlock failed: credential store unreadable")
            return False

        if blob is None:
            self._credentials = CredentialSet()
            self._session.cache_passphrase(passphrase)
            logger.info("Created new credential vault")
            return True

        try:
            # KDF is slow; keep the event loop free for running tasks
            plaintext = await asyncio.to_thread(decrypt, blob, passphrase, self._iterations)
            credentials = CredentialSet.from_json(plaintext)
        except CryptoError:
            logger.warning(f"Vault unlock failed: {INCORRECT_PASSPHRASE}")
            return False

        self._credentials = credentials
        self._session.cache_passphrase(passphrase)
        logger.info(f"Vault unlocked ({len(credentials)} provider(s) configured)")
        return True

    async def resume(self) -> bool:
        """Silently re-unlock from the session cache, if a passphrase is cached."""
        if self.is_unlocked:
            return True
        passphrase = self._session.cached_passphrase
        if passphrase is None:
            return False
        if await self.unlock(passphrase):
            return True
        # Stale cache (blob replaced elsewhere); drop it
        self._session.clear()
        return False

    async def save(self, credentials: Mapping[str, str], passphrase: str) -> None:
        """Re-encrypt with a fresh salt and nonce, persist, and stay unlocked."""
        credential_set = CredentialSet(credentials)
        blob = await asyncio.to_thread(
            encrypt, credential_set.to_json(), passphrase, self._iterations
        )
        if not self._store.set(blob):
            raise StorageError("Failed to persist encrypted credentials")

        self._credentials = credential_set
        self._session.cache_passphrase(passphrase)
        logger.info(f"Saved credentials for {len(credential_set)} provider(s)")

    def lock(self) -> None:
        """Drop plaintext credentials and the cached passphrase."""
        self._credentials = None
        self._session.clear()
        logger.info("Vault locked")

    def clear(self) -> None:
        """Delete the persisted blob and lock."""
        self._store.delete()
        self.lock()

    def get_credential(self, provider: str) -> str | None:
        if self._credentials is None:
            return None
        secret = self._credentials.get(provider)
        if secret is not None:
            return secret
        # Case-insensitive fallback; stored ids are never rewritten
        for stored, value in self._credentials.items():
            if stored.lower() == provider.lower():
                return value
        return None

    def configured_providers(self) -> list[str]:
        if self._credentials is None:
            return []
        return sorted(p for p, secret in self._credentials.items() if secret)
