#!/usr/bin/env python3
"""
Oracle - second TEE phase
=========================

Recovers the caller's credential, calls the upstream AI provider and
re-encrypts the response under the session key.

Inputs:
- argv: <provider> <model> <maxTokens> [temperature] [sessionId]
- IEXEC_REQUESTER_SECRET_1: the prompt
- IEXEC_REQUESTER_SECRET_2: session key JSON {"key", "iv", "createdAt"}
- IEXEC_REQUESTER_SECRET_3: encrypted credential JSON {"ciphertext", "algorithm"}

Output record (result.json):
    {
        "success": true,
        "provider": ...,
        "model": ...,
        "encryptedResponse": hex,
        "iv": hex,                 # fresh nonce, never the session nonce
        "algorithm": "aes-256-gcm",
        "usage": {...},            # token counts only, for accounting
        "proof": {"promptHash", "responseHash", "timestamp", "proofHash"}
    }

Decryption failures are a hard stop: they mean corruption or a key and
ciphertext that do not belong together, so there is nothing to retry.
"""

import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Mapping, Optional, Sequence

from core.crypto import (
    ALGORITHM_ID,
    CredentialDecryptError,
    EncryptedCredential,
    SessionKey,
    build_response_proof,
    encrypt_with_fresh_nonce,
    open_credential,
    sha256_hex,
)

from .providers import DEFAULT_TIMEOUT, ProviderClient, get_provider_client
from .task_io import failure_record, read_requester_secrets, write_task_output

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024


class CredentialExpiredError(Exception):
    """Raised when the sealed credential is past its session expiry."""

    pass


def _parse_max_tokens(raw: Optional[str]) -> int:
    try:
        value = int(raw) if raw else DEFAULT_MAX_TOKENS
    except ValueError:
        return DEFAULT_MAX_TOKENS
    return value if value > 0 else DEFAULT_MAX_TOKENS


def _parse_temperature(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


async def execute_oracle(
    prompt: Optional[str],
    session_key_json: Optional[str],
    encrypted_credential_json: Optional[str],
    provider: str,
    model: Optional[str] = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    temperature: Optional[float] = None,
    session_id: Optional[str] = None,
    provider_client: Optional[ProviderClient] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Run the oracle algorithm.

    Raises:
        ValueError: If no prompt was bound
        MalformedSessionKeyError: If the session key is absent or unparsable
        CredentialDecryptError: If the credential cannot be recovered
        CredentialExpiredError: If the session behind the credential expired
        ProviderAPIError: If the upstream call fails
    """
    if not prompt:
        raise ValueError("No prompt provided (IEXEC_REQUESTER_SECRET_1 is required)")
    logger.info(f"Prompt received ({len(prompt)} chars, hash {sha256_hex(prompt)[:16]}...)")

    # 1. Session key
    session_key = SessionKey.from_json(session_key_json)

    # 2. Credential
    encrypted = EncryptedCredential.from_json(encrypted_credential_json)
    payload = open_credential(encrypted, session_key)
    if session_id and payload.session_id and payload.session_id != session_id:
        raise CredentialDecryptError("Credential was sealed for a different session")
    if payload.expires_at < (now or datetime.now(timezone.utc)):
        raise CredentialExpiredError("Session expired")
    logger.info("Credential decrypted")

    # 3. Upstream call
    client = provider_client or get_provider_client(provider)
    logger.info(f"Calling {provider} ({model or 'default model'}, max_tokens={max_tokens})")
    response = await client.complete(payload.credential, prompt, model, max_tokens, temperature)
    logger.info(f"Response received ({len(response.content)} chars, model {response.model_used})")

    # 4. Re-encrypt under a fresh nonce
    body = json.dumps(
        {
            "content": response.content,
            "modelUsed": response.model_used,
            "usage": response.usage,
        }
    )
    nonce, ciphertext = encrypt_with_fresh_nonce(body.encode("utf-8"), session_key.key)

    # 5. Output record
    return {
        "success": True,
        "provider": provider,
        "model": response.model_used,
        "encryptedResponse": ciphertext.hex(),
        "iv": nonce.hex(),
        "algorithm": ALGORITHM_ID,
        "usage": response.usage,
        "proof": build_response_proof(prompt, response.content),
    }


async def run_oracle(
    args: Sequence[str],
    secrets: Mapping[int, str],
    provider_client: Optional[ProviderClient] = None,
    provider_mode: str = "real",
    custom_endpoint: str = "",
    timeout: float = DEFAULT_TIMEOUT,
) -> dict:
    """
    Run the oracle and always return a well-formed output record.

    Args:
        args: [provider, model, maxTokens, temperature, sessionId]
        secrets: Requester secrets by index (1 = prompt, 2 = session key, 3 = credential)
        provider_client: Override for the upstream client (tests, simulation)
        provider_mode: "real" or "simulated", used when no client is given
        custom_endpoint: Endpoint for the "custom" provider
        timeout: Upstream request timeout in seconds
    """
    try:
        provider = args[0] if len(args) > 0 and args[0] else "openai"
        model = args[1] if len(args) > 1 and args[1] else None
        max_tokens = _parse_max_tokens(args[2] if len(args) > 2 else None)
        temperature = _parse_temperature(args[3] if len(args) > 3 else None)
        session_id = args[4] if len(args) > 4 and args[4] else None

        if provider_client is None:
            provider_client = get_provider_client(
                provider,
                mode=provider_mode,
                timeout=timeout,
                custom_endpoint=custom_endpoint,
            )

        return await execute_oracle(
            prompt=secrets.get(1),
            session_key_json=secrets.get(2),
            encrypted_credential_json=secrets.get(3),
            provider=provider,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            session_id=session_id,
            provider_client=provider_client,
        )

    except Exception as e:
        logger.error(f"Oracle failed: {e}")
        return failure_record(str(e))


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    record = asyncio.run(
        run_oracle(
            list(argv if argv is not None else sys.argv[1:]),
            read_requester_secrets(3),
            provider_mode=os.getenv("ORACLE_PROVIDER_MODE", "real"),
            custom_endpoint=os.getenv("CUSTOM_PROVIDER_URL", ""),
        )
    )
    write_task_output(record)
    return 0


if __name__ == "__main__":
    sys.exit(main())
