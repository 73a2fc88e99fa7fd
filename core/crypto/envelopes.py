"""
Wire types that cross the TEE boundary.

- SessionKey: {"key": hex, "iv": hex, "createdAt": iso8601}
- EncryptedCredential: {"ciphertext": hex, "algorithm": "aes-256-gcm"}
- Credential payload (sealed by the key manager, opened by the oracle):
  {"credential": str, "sessionId": str, "expiresAt": iso8601}

The coordinator only ever handles these as opaque JSON strings. Parsing
them is the business of code running inside a TEE, or of the caller who
owns the session key.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .primitives import (
    ALGORITHM_ID,
    KEY_LENGTH,
    NONCE_LENGTH,
    IntegrityOrFormatError,
    decrypt_hex,
    encrypt_hex,
    generate_key,
    generate_nonce,
    secure_compare,
    sha256_hex,
)


class MalformedSessionKeyError(Exception):
    """Raised when a session key is absent or cannot be parsed."""

    pass


class CredentialDecryptError(Exception):
    """Raised when the sealed credential cannot be recovered."""

    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """Serialize a datetime as ISO-8601, assuming UTC for naive values."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (accepts a trailing 'Z')."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class SessionKey:
    """
    Per-session symmetric key material.

    Attributes:
        key: 32-byte AES key (KEEP SECRET)
        nonce: 16-byte nonce, consumed once to seal the credential
        created_at: When the key was generated inside the TEE
    """

    key: bytes
    nonce: bytes
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if len(self.key) != KEY_LENGTH:
            raise ValueError("Session key must be 32 bytes")
        if len(self.nonce) != NONCE_LENGTH:
            raise ValueError("Session nonce must be 16 bytes")

    @property
    def fingerprint(self) -> str:
        """Non-secret fingerprint of the key, safe to log or return."""
        return sha256_hex(self.key)

    def to_dict(self) -> Dict[str, str]:
        return {
            "key": self.key.hex(),
            "iv": self.nonce.hex(),
            "createdAt": isoformat(self.created_at),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "SessionKey":
        """
        Build a SessionKey from its wire dict.

        Raises:
            MalformedSessionKeyError: If fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise MalformedSessionKeyError("Session key must be a JSON object")
        try:
            key = bytes.fromhex(data["key"])
            nonce = bytes.fromhex(data["iv"])
            created_raw = data.get("createdAt")
            created_at = parse_timestamp(created_raw) if created_raw else utc_now()
            return cls(key=key, nonce=nonce, created_at=created_at)
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedSessionKeyError(f"Invalid session key: {e}") from e

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "SessionKey":
        """
        Parse the JSON form of a session key.

        Raises:
            MalformedSessionKeyError: If absent, not JSON, or invalid
        """
        if not raw:
            raise MalformedSessionKeyError("Session key not provided")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedSessionKeyError(f"Session key is not valid JSON: {e}") from e
        return cls.from_dict(data)


@dataclass(frozen=True)
class EncryptedCredential:
    """A caller credential sealed under a session key."""

    ciphertext: str  # hex
    algorithm: str = ALGORITHM_ID

    def to_dict(self) -> Dict[str, str]:
        return {"ciphertext": self.ciphertext, "algorithm": self.algorithm}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "EncryptedCredential":
        if not isinstance(data, dict) or not isinstance(data.get("ciphertext"), str):
            raise CredentialDecryptError("Encrypted credential is malformed")
        return cls(
            ciphertext=data["ciphertext"],
            algorithm=data.get("algorithm", ALGORITHM_ID),
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "EncryptedCredential":
        """
        Parse the JSON form of an encrypted credential.

        Raises:
            CredentialDecryptError: If absent or malformed
        """
        if not raw:
            raise CredentialDecryptError("Encrypted credential not provided")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CredentialDecryptError(f"Encrypted credential is not valid JSON: {e}") from e
        return cls.from_dict(data)


def generate_session_key() -> SessionKey:
    """
    Generate a fresh session key.

    Both values come from the CSPRNG: 32 bytes of key, 16 bytes of nonce.
    """
    return SessionKey(key=generate_key(), nonce=generate_nonce())


# =============================================================================
# Credential Sealing
# =============================================================================


@dataclass(frozen=True)
class CredentialPayload:
    """Plaintext content of an EncryptedCredential."""

    credential: str
    session_id: str
    expires_at: datetime


def seal_credential(
    credential: str,
    session_id: str,
    expires_at: datetime,
    session_key: SessionKey,
) -> EncryptedCredential:
    """
    Encrypt the canonical credential payload under the session key.

    The payload is always the full object, never the bare credential, so
    the oracle has a single shape to decode.
    """
    payload = json.dumps(
        {
            "credential": credential,
            "sessionId": session_id,
            "expiresAt": isoformat(expires_at),
        }
    )
    ciphertext = encrypt_hex(payload, session_key.key, session_key.nonce)
    return EncryptedCredential(ciphertext=ciphertext)


def open_credential(
    encrypted: EncryptedCredential,
    session_key: SessionKey,
) -> CredentialPayload:
    """
    Decrypt and decode a sealed credential.

    Raises:
        CredentialDecryptError: On any decryption or decoding failure
    """
    if encrypted.algorithm != ALGORITHM_ID:
        raise CredentialDecryptError(f"Unsupported algorithm: {encrypted.algorithm}")

    try:
        plaintext = decrypt_hex(encrypted.ciphertext, session_key.key, session_key.nonce)
    except IntegrityOrFormatError as e:
        raise CredentialDecryptError(f"Failed to decrypt credential: {e}") from e

    try:
        data = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise CredentialDecryptError("Decrypted credential is not valid JSON") from e

    if not isinstance(data, dict):
        raise CredentialDecryptError("Decrypted credential has an unexpected shape")

    credential = data.get("credential")
    if not isinstance(credential, str) or not credential:
        raise CredentialDecryptError("Decrypted credential is missing the credential field")

    try:
        expires_at = parse_timestamp(data["expiresAt"])
    except (KeyError, TypeError, ValueError) as e:
        raise CredentialDecryptError("Decrypted credential has no valid expiresAt") from e

    return CredentialPayload(
        credential=credential,
        session_id=str(data.get("sessionId", "")),
        expires_at=expires_at,
    )


# =============================================================================
# Oracle Responses (caller side)
# =============================================================================


def build_response_proof(prompt: str, content: str, timestamp: Optional[str] = None) -> Dict[str, str]:
    """
    Fingerprint a prompt/response pair.

    The caller recomputes these hashes after local decryption to confirm
    the content matches what was hashed inside the TEE.
    """
    timestamp = timestamp or isoformat(utc_now())
    prompt_hash = sha256_hex(prompt)
    response_hash = sha256_hex(content)
    return {
        "promptHash": prompt_hash,
        "responseHash": response_hash,
        "timestamp": timestamp,
        "proofHash": sha256_hex(f"{prompt_hash}{response_hash}{timestamp}"),
    }


def verify_response_proof(content: str, proof: Dict[str, str], prompt: Optional[str] = None) -> bool:
    """
    Check decrypted content (and optionally the prompt) against a proof.

    Returns:
        True if every supplied value matches its recorded hash
    """
    if not secure_compare(sha256_hex(content), proof.get("responseHash", "")):
        return False
    if prompt is not None and not secure_compare(sha256_hex(prompt), proof.get("promptHash", "")):
        return False
    expected = sha256_hex(
        f"{proof.get('promptHash', '')}{proof.get('responseHash', '')}{proof.get('timestamp', '')}"
    )
    proof_hash = proof.get("proofHash")
    return proof_hash is None or secure_compare(expected, proof_hash)


def decrypt_oracle_response(encrypted_response: str, iv: str, session_key: SessionKey) -> Dict[str, Any]:
    """
    Decrypt an oracle response with the caller's session key.

    Args:
        encrypted_response: Hex ciphertext from the oracle output record
        iv: Hex nonce from the same record
        session_key: The caller's session key

    Returns:
        {"content": str, "modelUsed": str, "usage": dict}

    Raises:
        IntegrityOrFormatError: If decryption or decoding fails
    """
    try:
        nonce = bytes.fromhex(iv)
    except (TypeError, ValueError) as e:
        raise IntegrityOrFormatError("Response nonce is not valid hex") from e
    if len(nonce) != NONCE_LENGTH:
        raise IntegrityOrFormatError("Response nonce must be 16 bytes")

    plaintext = decrypt_hex(encrypted_response, session_key.key, nonce)
    try:
        data = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise IntegrityOrFormatError("Decrypted response is not valid JSON") from e
    if not isinstance(data, dict) or "content" not in data:
        raise IntegrityOrFormatError("Decrypted response has an unexpected shape")
    return data
