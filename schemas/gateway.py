"""
Pydantic schemas for the gateway's caller-facing payloads.

Security Note:
- Responses carry ciphertext only; the caller decrypts with its session key
- The credential appears in CreateSessionRequest and nowhere else
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from core.storage import AIProvider, PromptStatus, SessionStatus


class SessionKeySchema(BaseModel):
    """Session key as emitted by the key manager."""

    key: str = Field(..., min_length=64, max_length=64, description="AES-256 key (32 bytes hex)")
    iv: str = Field(..., min_length=32, max_length=32, description="Session nonce (16 bytes hex)")
    createdAt: str = Field(..., description="ISO-8601 creation time")


class CreateSessionRequest(BaseModel):
    """Request to create a session for an upstream provider."""

    owner_address: str = Field(..., pattern=r"^0x[0-9a-fA-F]{40}$", description="Caller's address")
    provider: AIProvider = Field(..., description="Upstream AI provider")
    credential: str = Field(..., min_length=1, description="Provider API key, only ever forwarded to the TEE")
    duration_seconds: int = Field(3600, ge=300, le=86400, description="Session lifetime")

    @field_validator("credential")
    @classmethod
    def credential_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("credential must not be blank")
        return v


class SessionResponse(BaseModel):
    """Session state. session_key is only present once the session is active."""

    id: str
    owner_address: str
    provider: AIProvider
    status: SessionStatus
    created_at: datetime
    expires_at: datetime
    key_fingerprint: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None
    session_key: Optional[SessionKeySchema] = None

    @classmethod
    def from_record(cls, session, session_key: Optional[dict] = None) -> "SessionResponse":
        """Build from a SessionRecord; the stored key blob is never read."""
        fields = {name: getattr(session, name) for name in cls.model_fields if name != "session_key"}
        return cls(**fields, session_key=session_key)


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    total: int


class SubmitPromptRequest(BaseModel):
    """Request to run a prompt under an active session."""

    session_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1, description="Plaintext prompt, only ever forwarded to the TEE")
    model: Optional[str] = Field(None, description="Provider model; provider default when omitted")
    max_tokens: int = Field(1024, ge=1, le=4096)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    session_key: Optional[SessionKeySchema] = Field(
        None, description="Required when the gateway does not retain session keys"
    )


class ResponseProofSchema(BaseModel):
    """Hashes computed inside the TEE; verify after local decryption."""

    promptHash: str
    responseHash: str
    timestamp: str
    proofHash: Optional[str] = None


class PromptResponse(BaseModel):
    """Prompt state. encrypted_response is AES-256-GCM ciphertext under the session key."""

    id: str
    session_id: str
    status: PromptStatus
    model: Optional[str] = None
    model_used: Optional[str] = None
    max_tokens: int
    temperature: Optional[float] = None
    task_id: Optional[str] = None
    encrypted_response: Optional[str] = None
    response_iv: Optional[str] = None
    usage: Optional[dict] = None
    proof: Optional[ResponseProofSchema] = None
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SessionStatsResponse(BaseModel):
    """Prompt counters for a session."""

    total_prompts: int
    completed: int
    failed: int
    pending: int
    total_tokens: int

    model_config = {"from_attributes": True}


class TaskNotification(BaseModel):
    """Task completion pushed by the platform."""

    task_id: str = Field(..., min_length=1)
    result: Optional[dict] = Field(None, description="Output record, fetched when omitted")
