"""
Storage abstraction for session and prompt records.

Every status transition goes through compare_and_set_*: the change is
applied only if the record's current status is one of the expected
statuses, atomically with respect to other writers. This is what keeps the
expiry sweep from clobbering a concurrent revoke, and a late task result
from resurrecting a revoked session.
"""

from abc import ABC, abstractmethod
from typing import Any, Collection, Dict, List, Optional

from .records import PromptRecord, PromptStatus, SessionRecord, SessionStatus


class StoreError(Exception):
    """Base exception for storage errors."""

    pass


class RecordExistsError(StoreError):
    """Raised when adding a record whose id is already taken."""

    pass


class GatewayStore(ABC):
    """Abstract store for session and prompt records."""

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_session(self, record: SessionRecord) -> SessionRecord:
        """
        Insert a new session.

        Raises:
            RecordExistsError: If the id is already taken
        """
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Snapshot of a session, or None."""
        pass

    @abstractmethod
    async def list_sessions(
        self,
        owner_address: Optional[str] = None,
        statuses: Optional[Collection[SessionStatus]] = None,
    ) -> List[SessionRecord]:
        """Snapshots of sessions, newest first, optionally filtered."""
        pass

    @abstractmethod
    async def compare_and_set_session(
        self,
        session_id: str,
        expected: Collection[SessionStatus],
        changes: Dict[str, Any],
    ) -> Optional[SessionRecord]:
        """
        Apply `changes` only if the session's status is in `expected`.

        Returns:
            The updated record, or None if the session is missing or its
            status did not match
        """
        pass

    @abstractmethod
    async def update_session(self, session_id: str, changes: Dict[str, Any]) -> Optional[SessionRecord]:
        """Apply non-status changes unconditionally."""
        pass

    @abstractmethod
    async def take_session_key(self, session_id: str) -> Optional[str]:
        """
        Atomically read and clear the stored key of an active session.

        At most one caller ever receives a given key.

        Returns:
            The stored key blob, or None if the session is missing, not
            active, or its key was already taken
        """
        pass

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_prompt(self, record: PromptRecord) -> PromptRecord:
        pass

    @abstractmethod
    async def get_prompt(self, prompt_id: str) -> Optional[PromptRecord]:
        pass

    @abstractmethod
    async def list_prompts_for_session(self, session_id: str) -> List[PromptRecord]:
        """Prompts of a session, newest first."""
        pass

    @abstractmethod
    async def compare_and_set_prompt(
        self,
        prompt_id: str,
        expected: Collection[PromptStatus],
        changes: Dict[str, Any],
    ) -> Optional[PromptRecord]:
        pass

    @abstractmethod
    async def update_prompt(self, prompt_id: str, changes: Dict[str, Any]) -> Optional[PromptRecord]:
        pass

    @abstractmethod
    async def find_by_task_id(self, task_id: str):
        """
        Find the session or prompt a task was dispatched for.

        Returns:
            SessionRecord, PromptRecord or None
        """
        pass

    async def close(self) -> None:
        pass
