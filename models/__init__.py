"""Database models for the private AI gateway."""

from .base import Base
from .gateway_session import GatewaySession
from .prompt_request import PromptRequest

__all__ = [
    "Base",
    "GatewaySession",
    "PromptRequest",
]
