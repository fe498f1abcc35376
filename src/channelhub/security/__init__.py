"""Credential encryption and webhook signature verification."""

from .encryption import (
    CredentialCipher,
    EncryptedEnvelope,
    decrypt,
    decrypt_object,
    encrypt,
    encrypt_object,
    generate_master_key,
    hash_key_for_logging,
    is_encrypted,
    reseal,
    validate_master_key,
)
from .webhooks import extract_signature, validate_hmac_signature, verify_signature

__all__ = [
    "CredentialCipher",
    "EncryptedEnvelope",
    "decrypt",
    "decrypt_object",
    "encrypt",
    "encrypt_object",
    "generate_master_key",
    "hash_key_for_logging",
    "is_encrypted",
    "reseal",
    "validate_master_key",
    "extract_signature",
    "validate_hmac_signature",
    "verify_signature",
]
