"""Tests for gateway request and response schemas."""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from core.storage import AIProvider, PromptRecord, PromptStatus, SessionRecord, SessionStats, SessionStatus
from schemas.gateway import (
    CreateSessionRequest,
    PromptResponse,
    SessionResponse,
    SessionStatsResponse,
    SubmitPromptRequest,
    TaskNotification,
)

OWNER = "0x" + "ab" * 20
NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)
SESSION_KEY = {"key": "a" * 64, "iv": "b" * 32, "createdAt": "2030-01-01T00:00:00.000Z"}


# =============================================================================
# Requests
# =============================================================================

class TestCreateSessionRequest:
    """Tests for CreateSessionRequest validation."""

    def test_defaults(self):
        request = CreateSessionRequest(owner_address=OWNER, provider="openai", credential="sk-test")
        assert request.provider == AIProvider.OPENAI
        assert request.duration_seconds == 3600

    @pytest.mark.parametrize("owner", ["abc", "0x123", "0x" + "g" * 40])
    def test_rejects_bad_address(self, owner):
        with pytest.raises(ValidationError):
            CreateSessionRequest(owner_address=owner, provider="openai", credential="sk")

    def test_rejects_unknown_provider(self):
        with pytest.raises(ValidationError):
            CreateSessionRequest(owner_address=OWNER, provider="cohere", credential="sk")

    @pytest.mark.parametrize("credential", ["", "   "])
    def test_rejects_blank_credential(self, credential):
        with pytest.raises(ValidationError):
            CreateSessionRequest(owner_address=OWNER, provider="openai", credential=credential)

    @pytest.mark.parametrize("duration", [299, 86401])
    def test_rejects_duration_out_of_range(self, duration):
        with pytest.raises(ValidationError):
            CreateSessionRequest(owner_address=OWNER, provider="openai", credential="sk", duration_seconds=duration)


class TestSubmitPromptRequest:
    """Tests for SubmitPromptRequest validation."""

    def test_defaults(self):
        request = SubmitPromptRequest(session_id="s1", prompt="ping")
        assert request.max_tokens == 1024
        assert request.temperature is None
        assert request.session_key is None

    @pytest.mark.parametrize(
        "field,value",
        [("prompt", ""), ("max_tokens", 0), ("max_tokens", 5000), ("temperature", -0.1), ("temperature", 2.5)],
    )
    def test_rejects_out_of_range(self, field, value):
        data = {"session_id": "s1", "prompt": "ping", field: value}
        with pytest.raises(ValidationError):
            SubmitPromptRequest(**data)

    def test_session_key_shape(self):
        request = SubmitPromptRequest(session_id="s1", prompt="ping", session_key=SESSION_KEY)
        assert request.session_key.key == "a" * 64

        with pytest.raises(ValidationError):
            SubmitPromptRequest(session_id="s1", prompt="ping", session_key={**SESSION_KEY, "key": "short"})


# =============================================================================
# Responses
# =============================================================================

class TestResponses:
    """Responses are built from store records."""

    def test_session_response_ignores_stored_key_blob(self):
        record = SessionRecord(
            id="s1",
            owner_address=OWNER,
            provider=AIProvider.OPENAI,
            created_at=NOW,
            expires_at=NOW + timedelta(hours=1),
            status=SessionStatus.ACTIVE,
            session_key='{"key": "stored"}',
            encrypted_credential='{"ciphertext": "00"}',
        )

        without_key = SessionResponse.from_record(record)
        with_key = SessionResponse.from_record(record, SESSION_KEY)

        assert without_key.session_key is None
        assert with_key.session_key.iv == "b" * 32
        assert "encrypted_credential" not in with_key.model_dump()

    def test_prompt_response(self):
        record = PromptRecord(
            id="p1",
            session_id="s1",
            created_at=NOW,
            status=PromptStatus.COMPLETED,
            encrypted_response="00ff",
            response_iv="11" * 16,
            usage={"total_tokens": 5},
            proof={"promptHash": "a", "responseHash": "b", "timestamp": "t", "proofHash": "c"},
        )

        response = PromptResponse.model_validate(record)

        assert response.status == PromptStatus.COMPLETED
        assert response.proof.responseHash == "b"
        assert response.max_tokens == 1024

    def test_stats_response(self):
        stats = SessionStats(total_prompts=3, completed=2, failed=1, total_tokens=40)
        response = SessionStatsResponse.model_validate(stats)
        assert response.total_tokens == 40
        assert response.pending == 0

    def test_task_notification(self):
        assert TaskNotification(task_id="0xabc").result is None
        with pytest.raises(ValidationError):
            TaskNotification(task_id="")
