"""
Cryptographic primitives for the private AI gateway.

Security Properties:
- All randomness from secrets module (CSPRNG)
- AES-256-GCM for authenticated encryption (16-byte nonces)
- SHA-256 only for non-secret fingerprints, never for key derivation

A session key is a (key, nonce) pair generated inside the key-manager TEE.
The nonce travels with the key and is consumed exactly once, to seal the
caller's credential. Every later encryption under the same key (oracle
responses) draws a fresh nonce and ships it next to the ciphertext.

Wire encoding:
- key / nonce: lowercase hex
- ciphertext: lowercase hex of ciphertext || 16-byte auth tag
"""

import hashlib
import hmac
import secrets
from typing import Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_LENGTH = 32
NONCE_LENGTH = 16
TAG_LENGTH = 16

ALGORITHM_ID = "aes-256-gcm"


class IntegrityOrFormatError(Exception):
    """Raised when ciphertext fails authentication or is malformed."""

    pass


# =============================================================================
# Random Generation
# =============================================================================


def generate_key() -> bytes:
    """Generate a random 256-bit symmetric key."""
    return secrets.token_bytes(KEY_LENGTH)


def generate_nonce() -> bytes:
    """Generate a random 128-bit nonce."""
    return secrets.token_bytes(NONCE_LENGTH)


# =============================================================================
# Symmetric Encryption (AES-256-GCM)
# =============================================================================


def _check_key_and_nonce(key: bytes, nonce: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise ValueError("Key must be 32 bytes")
    if len(nonce) != NONCE_LENGTH:
        raise ValueError("Nonce must be 16 bytes")


def encrypt(plaintext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    Encrypt data using AES-256-GCM with an explicit nonce.

    Args:
        plaintext: Data to encrypt
        key: 32-byte encryption key
        nonce: 16-byte nonce, never reused with the same key

    Returns:
        ciphertext || auth_tag

    Raises:
        ValueError: If key or nonce have the wrong length
    """
    _check_key_and_nonce(key, nonce)
    return AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    Decrypt data produced by encrypt().

    The auth tag is verified before any plaintext is returned, so a wrong
    key, a wrong nonce or a tampered ciphertext never yields garbage.

    Args:
        ciphertext: ciphertext || auth_tag
        key: 32-byte decryption key
        nonce: 16-byte nonce used at encryption time

    Returns:
        Decrypted plaintext

    Raises:
        ValueError: If key or nonce have the wrong length
        IntegrityOrFormatError: If the ciphertext is truncated or fails
            authentication
    """
    _check_key_and_nonce(key, nonce)
    if len(ciphertext) < TAG_LENGTH:
        raise IntegrityOrFormatError("Ciphertext is shorter than the auth tag")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise IntegrityOrFormatError("Ciphertext failed authentication") from e


def encrypt_with_fresh_nonce(plaintext: bytes, key: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt under a newly drawn nonce.

    Returns:
        Tuple of (nonce, ciphertext). The nonce MUST be stored alongside
        the ciphertext for decryption.
    """
    nonce = generate_nonce()
    return nonce, encrypt(plaintext, key, nonce)


def encrypt_hex(plaintext: str, key: bytes, nonce: bytes) -> str:
    """Encrypt a UTF-8 string and return the hex wire encoding."""
    return encrypt(plaintext.encode("utf-8"), key, nonce).hex()


def decrypt_hex(ciphertext_hex: str, key: bytes, nonce: bytes) -> str:
    """
    Decrypt a hex-encoded ciphertext back to a UTF-8 string.

    Raises:
        IntegrityOrFormatError: If the input is not hex, fails
            authentication, or does not decode as UTF-8
    """
    try:
        ciphertext = bytes.fromhex(ciphertext_hex)
    except (TypeError, ValueError) as e:
        raise IntegrityOrFormatError("Ciphertext is not valid hex") from e

    plaintext = decrypt(ciphertext, key, nonce)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise IntegrityOrFormatError("Plaintext is not valid UTF-8") from e


# =============================================================================
# Hashing
# =============================================================================


def sha256_hex(value: Union[str, bytes]) -> str:
    """
    SHA-256 digest as lowercase hex.

    Used for verification fingerprints (prompt/response hashes, key
    fingerprints). Never use this to derive keys.
    """
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def secure_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two values in constant time.

    Args:
        a: First value
        b: Second value

    Returns:
        True if equal, False otherwise
    """
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)
