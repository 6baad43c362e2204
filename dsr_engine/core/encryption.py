"""Field-level PII encryption with per-record data keys.

Each stored record (``customer/<uuid>``, ``review_request/<uuid>``) gets its
own AES-256-GCM data key. Data keys are wrapped with the master key before
they reach the key store, and every field ciphertext is bound to its field
reference through the GCM associated data.

Destroying a record's data key is what makes crypto-shredding irreversible:
the ciphertext may stay on disk but can never be decrypted again, and the
key store keeps a tombstone so the reference cannot silently receive a
fresh key later.

Field references have the form ``<entity_type>/<record_id>/<field>``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dsr_engine.config import Settings
from dsr_engine.store.base import KeyStore

log = structlog.get_logger(__name__)

_VERSION_PREFIX = "v1:"
_NONCE_BYTES = 12


class EncryptionError(Exception):
    """Base encryption error."""


class DecryptionError(EncryptionError):
    """Ciphertext could not be authenticated or decoded."""


class KeyNotFoundError(DecryptionError):
    """The data key for a record does not exist or has been destroyed."""

    def __init__(self, key_ref: str) -> None:
        super().__init__(f"No encryption key for {key_ref}")
        self.key_ref = key_ref


def record_key_ref(ref: str) -> str:
    """Return the record-level key reference for a field or record ref."""
    parts = ref.split("/")
    if len(parts) < 2 or not all(parts[:2]):
        raise EncryptionError(f"Malformed field reference: {ref!r}")
    return "/".join(parts[:2])


def field_ref(key_ref: str, field_name: str) -> str:
    return f"{key_ref}/{field_name}"


class FieldEncryptionService:
    """Envelope encryption for PII fields.

    Usage:
        ciphertext = await encryption.encrypt("customer/<id>/email", "a@b.com")
        email = await encryption.decrypt("customer/<id>/email", ciphertext)
        await encryption.destroy_key("customer/<id>")
    """

    def __init__(self, master_key: bytes, key_store: KeyStore) -> None:
        if len(master_key) != 32:
            raise ValueError("Master key must be 32 bytes")
        self._master = AESGCM(master_key)
        self._index_key = hmac.new(master_key, b"dsr-blind-index", hashlib.sha256).digest()
        self._key_store = key_store

    @classmethod
    def from_settings(cls, settings: Settings, key_store: KeyStore) -> FieldEncryptionService:
        return cls(settings.master_key_bytes(), key_store)

    @staticmethod
    def generate_master_key() -> str:
        """Generate a base64 master key suitable for ENCRYPTION_MASTER_KEY."""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()

    # ------------------------------------------------------------------ #
    # Field operations
    # ------------------------------------------------------------------ #

    async def encrypt(self, ref: str, plaintext: str) -> str:
        key_ref = record_key_ref(ref)
        data_key = await self._get_or_create_data_key(key_ref)
        nonce = secrets.token_bytes(_NONCE_BYTES)
        sealed = AESGCM(data_key).encrypt(nonce, plaintext.encode("utf-8"), ref.encode())
        return _VERSION_PREFIX + base64.b64encode(nonce + sealed).decode()

    async def decrypt(self, ref: str, ciphertext: str) -> str:
        key_ref = record_key_ref(ref)
        wrapped = await self._key_store.get(key_ref)
        if wrapped is None:
            raise KeyNotFoundError(key_ref)
        data_key = self._unwrap(key_ref, wrapped)

        if not ciphertext.startswith(_VERSION_PREFIX):
            raise DecryptionError(f"Unsupported ciphertext version for {ref}")
        try:
            raw = base64.b64decode(ciphertext[len(_VERSION_PREFIX):])
        except ValueError as exc:
            raise DecryptionError(f"Invalid ciphertext encoding for {ref}") from exc

        nonce, sealed = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
        try:
            return AESGCM(data_key).decrypt(nonce, sealed, ref.encode()).decode("utf-8")
        except InvalidTag as exc:
            raise DecryptionError(f"Ciphertext authentication failed for {ref}") from exc

    async def destroy_key(self, ref: str) -> bool:
        """Destroy the data key owning ``ref``. Returns False if none existed."""
        key_ref = record_key_ref(ref)
        destroyed = await self._key_store.destroy(key_ref)
        log.info("encryption.key_destroyed", key_ref=key_ref, existed=destroyed)
        return destroyed

    async def has_key(self, ref: str) -> bool:
        return await self._key_store.get(record_key_ref(ref)) is not None

    def blind_index(self, value: str) -> str:
        """Keyed digest of a normalized contact value for equality lookups."""
        normalized = value.strip().lower()
        return hmac.new(self._index_key, normalized.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------ #
    # Key wrapping
    # ------------------------------------------------------------------ #

    async def _get_or_create_data_key(self, key_ref: str) -> bytes:
        wrapped = await self._key_store.get(key_ref)
        if wrapped is None:
            candidate = self._wrap(key_ref, AESGCM.generate_key(bit_length=256))
            wrapped = await self._key_store.put_if_absent(key_ref, candidate)
            if wrapped is None:
                # Tombstoned: the record was shredded and must stay that way.
                raise KeyNotFoundError(key_ref)
        return self._unwrap(key_ref, wrapped)

    def _wrap(self, key_ref: str, data_key: bytes) -> bytes:
        nonce = secrets.token_bytes(_NONCE_BYTES)
        return nonce + self._master.encrypt(nonce, data_key, key_ref.encode())

    def _unwrap(self, key_ref: str, wrapped: bytes) -> bytes:
        try:
            return self._master.decrypt(wrapped[:_NONCE_BYTES], wrapped[_NONCE_BYTES:], key_ref.encode())
        except InvalidTag as exc:
            raise DecryptionError(f"Data key for {key_ref} cannot be unwrapped") from exc
