"""Authenticated encryption for credential blobs.

Envelopes are AES-256-GCM sealed with a key derived per call from the master
key through PBKDF2-HMAC-SHA256 and a fresh random salt. Every field is stored
hex encoded so the envelope survives any JSON column.
"""

from __future__ import annotations

import binascii
import hashlib
import json
import logging
import os
import secrets
import string
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from channelhub.core.config import EncryptionSettings
from channelhub.core.errors import EncryptionError

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
ENVELOPE_VERSION = "1.0"
KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
SALT_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
DEFAULT_ASSOCIATED_DATA = "channel-credentials"
MIN_MASTER_KEY_LENGTH = 32
MAX_MASTER_KEY_LENGTH = 128

_ENVELOPE_FIELDS = ("ciphertext", "iv", "auth_tag", "salt", "algorithm", "version")


@dataclass(slots=True, frozen=True)
class EncryptedEnvelope:
    """Sealed payload plus everything needed to open it, except the key."""

    ciphertext: str
    iv: str
    auth_tag: str
    salt: str
    algorithm: str = ALGORITHM
    version: str = ENVELOPE_VERSION

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> EncryptedEnvelope:
        if not isinstance(data, dict):
            raise EncryptionError("malformed envelope: expected an object")
        missing = [name for name in _ENVELOPE_FIELDS[:4] if not isinstance(data.get(name), str)]
        if missing:
            raise EncryptionError("malformed envelope", details={"missing": missing})
        return cls(
            ciphertext=data["ciphertext"],
            iv=data["iv"],
            auth_tag=data["auth_tag"],
            salt=data["salt"],
            algorithm=str(data.get("algorithm", ALGORITHM)),
            version=str(data.get("version", ENVELOPE_VERSION)),
        )


def validate_master_key(master_key: str | None) -> str:
    """Reject master keys that are too short, too long or lack character variety."""

    if not master_key:
        raise EncryptionError("encryption master key is not configured")
    if len(master_key) < MIN_MASTER_KEY_LENGTH:
        raise EncryptionError(
            f"master key must be at least {MIN_MASTER_KEY_LENGTH} characters long"
        )
    if len(master_key) > MAX_MASTER_KEY_LENGTH:
        raise EncryptionError(
            f"master key must be at most {MAX_MASTER_KEY_LENGTH} characters long"
        )

    has_digit = any(char.isdigit() for char in master_key)
    has_letter = any(char.isalpha() for char in master_key)
    has_symbol = any(not char.isalnum() for char in master_key)
    if not (has_digit and has_letter and has_symbol):
        raise EncryptionError("master key must mix letters, digits and symbols")
    return master_key


def generate_master_key(length: int = 64) -> str:
    """Produce a random master key that passes ``validate_master_key``."""

    if not MIN_MASTER_KEY_LENGTH <= length <= MAX_MASTER_KEY_LENGTH:
        raise EncryptionError("requested key length is outside the allowed range")

    alphabet = string.ascii_letters + string.digits + "!@#$%^&*()-_=+"
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        try:
            return validate_master_key(candidate)
        except EncryptionError:
            continue


def hash_key_for_logging(master_key: str) -> str:
    """Short fingerprint safe to put in logs."""

    return hashlib.sha256(master_key.encode("utf-8")).hexdigest()[:8]


def _derive_key(master_key: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_key.encode("utf-8"))


def _unhex(value: str, *, name: str, length: int | None = None) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except (ValueError, binascii.Error) as exc:
        raise EncryptionError(f"malformed envelope field: {name}") from exc
    if length is not None and len(raw) != length:
        raise EncryptionError(f"envelope field {name} has an invalid length")
    return raw


def encrypt(
    plaintext: str,
    master_key: str,
    *,
    associated_data: str = DEFAULT_ASSOCIATED_DATA,
    iterations: int = PBKDF2_ITERATIONS,
) -> EncryptedEnvelope:
    """Seal ``plaintext`` under a fresh salt and IV."""

    validate_master_key(master_key)
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _derive_key(master_key, salt, iterations)

    try:
        sealed = AESGCM(key).encrypt(
            iv, plaintext.encode("utf-8"), associated_data.encode("utf-8")
        )
    except Exception as exc:
        raise EncryptionError("failed to encrypt payload") from exc

    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return EncryptedEnvelope(
        ciphertext=ciphertext.hex(),
        iv=iv.hex(),
        auth_tag=tag.hex(),
        salt=salt.hex(),
    )


def decrypt(
    envelope: EncryptedEnvelope | dict[str, Any],
    master_key: str,
    *,
    associated_data: str = DEFAULT_ASSOCIATED_DATA,
    iterations: int = PBKDF2_ITERATIONS,
) -> str:
    """Open an envelope; any tampering or key mismatch raises ``EncryptionError``."""

    if not isinstance(envelope, EncryptedEnvelope):
        envelope = EncryptedEnvelope.from_dict(envelope)
    validate_master_key(master_key)

    if envelope.algorithm != ALGORITHM:
        raise EncryptionError(
            "unsupported envelope algorithm", details={"algorithm": envelope.algorithm}
        )

    salt = _unhex(envelope.salt, name="salt", length=SALT_LENGTH)
    iv = _unhex(envelope.iv, name="iv", length=IV_LENGTH)
    tag = _unhex(envelope.auth_tag, name="auth_tag", length=TAG_LENGTH)
    ciphertext = _unhex(envelope.ciphertext, name="ciphertext")

    key = _derive_key(master_key, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(
            iv, ciphertext + tag, associated_data.encode("utf-8")
        )
    except InvalidTag as exc:
        raise EncryptionError("envelope authentication failed") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EncryptionError("decrypted payload is not valid UTF-8") from exc


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def encrypt_object(obj: Any, master_key: str, **kwargs: Any) -> EncryptedEnvelope:
    """Serialize ``obj`` as JSON and seal it."""

    return encrypt(json.dumps(obj, default=_json_default), master_key, **kwargs)


def decrypt_object(
    envelope: EncryptedEnvelope | dict[str, Any], master_key: str, **kwargs: Any
) -> Any:
    """Open an envelope produced by ``encrypt_object``."""

    plaintext = decrypt(envelope, master_key, **kwargs)
    try:
        return json.loads(plaintext)
    except json.JSONDecodeError as exc:
        raise EncryptionError("decrypted payload is not valid JSON") from exc


def is_encrypted(value: Any) -> bool:
    """Structural check for something that looks like a stored envelope."""

    if isinstance(value, EncryptedEnvelope):
        return True
    return isinstance(value, dict) and all(
        isinstance(value.get(name), str) for name in _ENVELOPE_FIELDS
    )


def reseal(
    envelope: EncryptedEnvelope | dict[str, Any],
    old_key: str,
    new_key: str,
    **kwargs: Any,
) -> EncryptedEnvelope:
    """Decrypt with ``old_key`` and seal again with ``new_key`` entirely in memory."""

    validate_master_key(new_key)
    plaintext = decrypt(envelope, old_key, **kwargs)
    return encrypt(plaintext, new_key, **kwargs)


class CredentialCipher:
    """Binds a master key and derivation parameters to the envelope helpers."""

    def __init__(
        self,
        master_key: str,
        *,
        iterations: int = PBKDF2_ITERATIONS,
        associated_data: str = DEFAULT_ASSOCIATED_DATA,
    ) -> None:
        self._master_key = validate_master_key(master_key)
        self._iterations = iterations
        self._associated_data = associated_data

    @classmethod
    def from_settings(cls, settings: EncryptionSettings) -> CredentialCipher:
        cipher = cls(
            settings.master_key or "",
            iterations=settings.pbkdf2_iterations,
            associated_data=settings.associated_data,
        )
        logger.info(
            "credential cipher initialised",
            extra={"key_fingerprint": hash_key_for_logging(cipher._master_key)},
        )
        return cipher

    @property
    def fingerprint(self) -> str:
        return hash_key_for_logging(self._master_key)

    def with_key(self, master_key: str) -> CredentialCipher:
        """Same derivation parameters, different master key."""

        return CredentialCipher(
            master_key,
            iterations=self._iterations,
            associated_data=self._associated_data,
        )

    def seal(self, obj: Any) -> EncryptedEnvelope:
        return encrypt_object(
            obj,
            self._master_key,
            associated_data=self._associated_data,
            iterations=self._iterations,
        )

    def open(self, envelope: EncryptedEnvelope | dict[str, Any]) -> Any:
        return decrypt_object(
            envelope,
            self._master_key,
            associated_data=self._associated_data,
            iterations=self._iterations,
        )
