"""
Session and prompt records owned by the coordinator.

Records are plain dataclasses so the state machine can run unchanged
against the in-memory store and the SQL store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class AIProvider(str, Enum):
    """Upstream AI providers the oracle can call."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    MISTRAL = "mistral"
    CUSTOM = "custom"


class SessionStatus(str, Enum):
    """Session lifecycle."""

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SESSION_STATUSES


class PromptStatus(str, Enum):
    """Prompt lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PromptStatus.COMPLETED, PromptStatus.FAILED)


TERMINAL_SESSION_STATUSES: FrozenSet[SessionStatus] = frozenset(
    {SessionStatus.EXPIRED, SessionStatus.REVOKED, SessionStatus.FAILED}
)


@dataclass
class SessionRecord:
    """
    A caller session.

    session_key and encrypted_credential hold the JSON documents emitted by
    the key manager, verbatim. They are only present while the session is
    active.
    """

    id: str
    owner_address: str
    provider: AIProvider
    created_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.PENDING
    session_key: Optional[str] = None
    encrypted_credential: Optional[str] = None
    key_fingerprint: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None
    updated_at: Optional[datetime] = None

    def is_expired_at(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class PromptRecord:
    """A prompt executed under a session. Only ciphertext is kept."""

    id: str
    session_id: str
    created_at: datetime
    model: Optional[str] = None
    max_tokens: int = 1024
    temperature: Optional[float] = None
    status: PromptStatus = PromptStatus.PENDING
    task_id: Optional[str] = None
    encrypted_response: Optional[str] = None
    response_iv: Optional[str] = None
    model_used: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    proof: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None


@dataclass
class SessionStats:
    """Prompt counters for one session."""

    total_prompts: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    total_tokens: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
