"""Tests for the key manager TEE application."""
import json
from datetime import datetime, timedelta, timezone

import pytest

from core.crypto import EncryptedCredential, SessionKey, open_credential, sha256_hex
from core.crypto.envelopes import parse_timestamp
from enclave.key_manager import (
    ACTION_GENERATE_SESSION,
    MissingCredentialError,
    generate_session,
    main,
    run_key_manager,
)


EXPIRES = datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# generate_session
# =============================================================================

class TestGenerateSession:
    """Tests for the session generation algorithm."""

    def test_output_fields(self):
        record = generate_session("sk-test-ABC", "session-1", EXPIRES)

        assert record["success"] is True
        assert record["action"] == ACTION_GENERATE_SESSION
        assert record["sessionId"] == "session-1"
        assert set(record["sessionKey"]) == {"key", "iv", "createdAt"}
        assert set(record["encryptedCredential"]) == {"ciphertext", "algorithm"}
        assert parse_timestamp(record["expiresAt"]) == EXPIRES
        assert "createdAt" in record

    def test_credential_recoverable_with_session_key(self):
        """The sealed credential opens with the emitted session key."""
        record = generate_session("sk-test-ABC", "session-1", EXPIRES)

        session_key = SessionKey.from_dict(record["sessionKey"])
        payload = open_credential(EncryptedCredential.from_dict(record["encryptedCredential"]), session_key)

        assert payload.credential == "sk-test-ABC"
        assert payload.session_id == "session-1"
        assert payload.expires_at == EXPIRES

    def test_credential_never_in_plaintext(self):
        record = generate_session("sk-test-ABC", "session-1", EXPIRES)
        assert "sk-test-ABC" not in json.dumps(record)

    def test_fingerprint(self):
        record = generate_session("sk-test-ABC", "session-1", EXPIRES)
        assert record["keyFingerprint"] == sha256_hex(bytes.fromhex(record["sessionKey"]["key"]))

    def test_fresh_key_per_session(self):
        a = generate_session("sk", "s-1", EXPIRES)
        b = generate_session("sk", "s-1", EXPIRES)
        assert a["sessionKey"]["key"] != b["sessionKey"]["key"]
        assert a["sessionKey"]["iv"] != b["sessionKey"]["iv"]

    @pytest.mark.parametrize("credential", [None, "", "   "])
    def test_missing_credential(self, credential):
        with pytest.raises(MissingCredentialError):
            generate_session(credential, "session-1", EXPIRES)


# =============================================================================
# run_key_manager (always emits a record)
# =============================================================================

class TestRunKeyManager:
    """Tests for the structured-output wrapper."""

    def test_success(self):
        record = run_key_manager(
            [ACTION_GENERATE_SESSION, "session-9", "2030-06-01T12:00:00Z"],
            {1: "sk-test-ABC"},
        )
        assert record["success"] is True
        assert record["sessionId"] == "session-9"

    def test_missing_credential_becomes_failure_record(self):
        record = run_key_manager([ACTION_GENERATE_SESSION, "session-9"], {})
        assert record["success"] is False
        assert "No credential provided" in record["error"]

    def test_unknown_action(self):
        record = run_key_manager(["rotate-key", "session-9"], {1: "sk"})
        assert record["success"] is False
        assert "Unknown action" in record["error"]

    def test_bad_expiry_becomes_failure_record(self):
        record = run_key_manager([ACTION_GENERATE_SESSION, "s", "not-a-date"], {1: "sk"})
        assert record["success"] is False

    def test_defaults(self):
        """Without arguments a session id and a one-hour expiry are generated."""
        before = datetime.now(timezone.utc)
        record = run_key_manager([], {1: "sk"})

        assert record["success"] is True
        assert record["sessionId"].startswith("session-")
        expires = parse_timestamp(record["expiresAt"])
        assert before + timedelta(minutes=59) < expires <= datetime.now(timezone.utc) + timedelta(hours=1)


class TestMain:
    """Tests for the container entry point."""

    def test_writes_output(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IEXEC_OUT", str(tmp_path))
        monkeypatch.setenv("IEXEC_REQUESTER_SECRET_1", "sk-test-ABC")

        assert main([ACTION_GENERATE_SESSION, "session-1", "2030-06-01T12:00:00Z"]) == 0

        record = json.loads((tmp_path / "result.json").read_text())
        assert record["success"] is True
        assert (tmp_path / "computed.json").exists()

    def test_writes_failure_output(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IEXEC_OUT", str(tmp_path))
        monkeypatch.delenv("IEXEC_REQUESTER_SECRET_1", raising=False)

        assert main([ACTION_GENERATE_SESSION]) == 0

        record = json.loads((tmp_path / "result.json").read_text())
        assert record["success"] is False
