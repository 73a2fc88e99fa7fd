"""Pydantic schemas for request/response validation."""

from .gateway import (
    SessionKeySchema,
    CreateSessionRequest,
    SessionResponse,
    SessionListResponse,
    SubmitPromptRequest,
    ResponseProofSchema,
    PromptResponse,
    SessionStatsResponse,
    TaskNotification,
)

__all__ = [
    "SessionKeySchema",
    "CreateSessionRequest",
    "SessionResponse",
    "SessionListResponse",
    "SubmitPromptRequest",
    "ResponseProofSchema",
    "PromptResponse",
    "SessionStatsResponse",
    "TaskNotification",
]
