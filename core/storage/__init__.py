"""
Storage package for session and prompt records.

- InMemoryGatewayStore: process-local (STORAGE_MODE=memory)
- SqlGatewayStore: SQLAlchemy async (STORAGE_MODE=database)
"""

import logging
from typing import Union

from .base import GatewayStore, RecordExistsError, StoreError
from .memory_store import InMemoryGatewayStore
from .records import (
    TERMINAL_SESSION_STATUSES,
    AIProvider,
    PromptRecord,
    PromptStatus,
    SessionRecord,
    SessionStats,
    SessionStatus,
)

logger = logging.getLogger(__name__)

_store_instance: Union[GatewayStore, None] = None


def get_store() -> GatewayStore:
    """
    Get the store based on STORAGE_MODE config.

    Returns:
        GatewayStore implementation
    """
    global _store_instance

    if _store_instance is None:
        from core.config import settings

        if settings.STORAGE_MODE == "database":
            from core.database import async_session_factory

            from .sql_store import SqlGatewayStore

            _store_instance = SqlGatewayStore(async_session_factory)
            logger.info("Using SqlGatewayStore")
        else:
            _store_instance = InMemoryGatewayStore()
            logger.info("Using InMemoryGatewayStore (development mode)")

    return _store_instance


def reset_store() -> None:
    """Reset the store singleton (for testing only)."""
    global _store_instance
    _store_instance = None


__all__ = [
    "TERMINAL_SESSION_STATUSES",
    "AIProvider",
    "GatewayStore",
    "InMemoryGatewayStore",
    "PromptRecord",
    "PromptStatus",
    "RecordExistsError",
    "SessionRecord",
    "SessionStats",
    "SessionStatus",
    "StoreError",
    "get_store",
    "reset_store",
]
