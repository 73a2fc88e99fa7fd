"""
Core services for the private AI gateway.

Services own the session and prompt state machines and coordinate the
two TEE phases. They hold secrets only as opaque blobs.
"""

from .session_service import (
    SessionService,
    GatewayServiceError,
    InvalidRequestError,
    SessionNotFoundError,
    SessionNotActiveError,
    SessionExpiredError,
)
from .prompt_service import PromptService, PromptNotFoundError
from .gateway_service import GatewayService, SessionResult
from .expiry_sweeper import SessionExpirySweeper

__all__ = [
    # Session Service
    "SessionService",
    "GatewayServiceError",
    "InvalidRequestError",
    "SessionNotFoundError",
    "SessionNotActiveError",
    "SessionExpiredError",
    # Prompt Service
    "PromptService",
    "PromptNotFoundError",
    # Gateway Service
    "GatewayService",
    "SessionResult",
    # Background
    "SessionExpirySweeper",
]
