#!/usr/bin/env python3
"""
Key Manager - first TEE phase
=============================

Generates a per-session key inside the TEE and seals the caller's
long-lived credential under it.

Inputs:
- argv: generate-session <sessionId> <expiresAt>
- IEXEC_REQUESTER_SECRET_1: the caller's credential

Output record (result.json):
    {
        "success": true,
        "action": "generate-session",
        "sessionId": ...,
        "sessionKey": {"key": hex, "iv": hex, "createdAt": iso},
        "keyFingerprint": sha256(key),
        "encryptedCredential": {"ciphertext": hex, "algorithm": "aes-256-gcm"},
        "expiresAt": iso,
        "createdAt": iso
    }

The session key goes back to the coordinator in plaintext (it belongs to
the caller's session). The credential only ever leaves the TEE sealed.
"""

import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional, Sequence

from core.crypto import generate_session_key, seal_credential
from core.crypto.envelopes import isoformat, parse_timestamp

from .task_io import failure_record, read_requester_secrets, write_task_output

logger = logging.getLogger(__name__)

ACTION_GENERATE_SESSION = "generate-session"
DEFAULT_SESSION_LIFETIME = timedelta(hours=1)


class MissingCredentialError(Exception):
    """Raised when no credential was bound to the task."""

    pass


def generate_session(
    credential: Optional[str],
    session_id: str,
    expires_at: datetime,
) -> dict:
    """
    Generate a session key and seal the credential under it.

    Raises:
        MissingCredentialError: If the credential is absent or blank
    """
    if not credential or not credential.strip():
        raise MissingCredentialError("No credential provided (IEXEC_REQUESTER_SECRET_1 is required)")

    logger.info(f"Credential received ({len(credential)} chars)")

    session_key = generate_session_key()
    encrypted = seal_credential(credential, session_id, expires_at, session_key)
    logger.info("Session key generated and credential sealed")

    return {
        "success": True,
        "action": ACTION_GENERATE_SESSION,
        "sessionId": session_id,
        "sessionKey": session_key.to_dict(),
        "keyFingerprint": session_key.fingerprint,
        "encryptedCredential": encrypted.to_dict(),
        "expiresAt": isoformat(expires_at),
        "createdAt": isoformat(session_key.created_at),
    }


def run_key_manager(args: Sequence[str], secrets: Mapping[int, str]) -> dict:
    """
    Run the key manager and always return a well-formed output record.

    Args:
        args: [action, sessionId, expiresAt]
        secrets: Requester secrets by index (1 = credential)
    """
    try:
        action = args[0] if len(args) > 0 and args[0] else ACTION_GENERATE_SESSION
        now = datetime.now(timezone.utc)
        session_id = args[1] if len(args) > 1 and args[1] else f"session-{int(now.timestamp() * 1000)}"
        expires_at = parse_timestamp(args[2]) if len(args) > 2 and args[2] else now + DEFAULT_SESSION_LIFETIME

        logger.info(f"Action: {action}, session: {session_id}, expires: {isoformat(expires_at)}")

        if action != ACTION_GENERATE_SESSION:
            raise ValueError(f"Unknown action: {action}")

        return generate_session(secrets.get(1), session_id, expires_at)

    except Exception as e:
        logger.error(f"Key manager failed: {e}")
        return failure_record(str(e))


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    record = run_key_manager(list(argv if argv is not None else sys.argv[1:]), read_requester_secrets(1))
    write_task_output(record)
    return 0


if __name__ == "__main__":
    sys.exit(main())
