"""Cryptographic primitives package for the private AI gateway."""

from .primitives import (
    ALGORITHM_ID,
    IntegrityOrFormatError,
    generate_key,
    generate_nonce,
    encrypt,
    decrypt,
    encrypt_with_fresh_nonce,
    encrypt_hex,
    decrypt_hex,
    sha256_hex,
    secure_compare,
)
from .envelopes import (
    SessionKey,
    EncryptedCredential,
    CredentialPayload,
    MalformedSessionKeyError,
    CredentialDecryptError,
    generate_session_key,
    seal_credential,
    open_credential,
    build_response_proof,
    verify_response_proof,
    decrypt_oracle_response,
)

__all__ = [
    "ALGORITHM_ID",
    "IntegrityOrFormatError",
    "generate_key",
    "generate_nonce",
    "encrypt",
    "decrypt",
    "encrypt_with_fresh_nonce",
    "encrypt_hex",
    "decrypt_hex",
    "sha256_hex",
    "secure_compare",
    "SessionKey",
    "EncryptedCredential",
    "CredentialPayload",
    "MalformedSessionKeyError",
    "CredentialDecryptError",
    "generate_session_key",
    "seal_credential",
    "open_credential",
    "build_response_proof",
    "verify_response_proof",
    "decrypt_oracle_response",
]
