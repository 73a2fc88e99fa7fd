"""
In-memory store for development and tests.

A single asyncio lock guards both collections. Callers always receive
copies, so a snapshot can never change under them; they must re-read (or
compare-and-set) before acting on a status.
"""

import asyncio
import dataclasses
from typing import Any, Collection, Dict, List, Optional

from .base import GatewayStore, RecordExistsError
from .records import PromptRecord, PromptStatus, SessionRecord, SessionStatus


class InMemoryGatewayStore(GatewayStore):
    """Process-local store. Nothing survives a restart."""

    def __init__(self):
        self._sessions: Dict[str, SessionRecord] = {}
        self._prompts: Dict[str, PromptRecord] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _apply(record, changes: Dict[str, Any]):
        return dataclasses.replace(record, **changes)

    # Sessions

    async def add_session(self, record: SessionRecord) -> SessionRecord:
        async with self._lock:
            if record.id in self._sessions:
                raise RecordExistsError(f"Session {record.id} already exists")
            self._sessions[record.id] = dataclasses.replace(record)
        return dataclasses.replace(record)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        record = self._sessions.get(session_id)
        return dataclasses.replace(record) if record else None

    async def list_sessions(
        self,
        owner_address: Optional[str] = None,
        statuses: Optional[Collection[SessionStatus]] = None,
    ) -> List[SessionRecord]:
        records = [
            dataclasses.replace(r)
            for r in self._sessions.values()
            if (owner_address is None or r.owner_address.lower() == owner_address.lower())
            and (statuses is None or r.status in statuses)
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def compare_and_set_session(
        self,
        session_id: str,
        expected: Collection[SessionStatus],
        changes: Dict[str, Any],
    ) -> Optional[SessionRecord]:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None or current.status not in expected:
                return None
            updated = self._apply(current, changes)
            self._sessions[session_id] = updated
            return dataclasses.replace(updated)

    async def update_session(self, session_id: str, changes: Dict[str, Any]) -> Optional[SessionRecord]:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return None
            updated = self._apply(current, changes)
            self._sessions[session_id] = updated
            return dataclasses.replace(updated)

    async def take_session_key(self, session_id: str) -> Optional[str]:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None or current.status != SessionStatus.ACTIVE or not current.session_key:
                return None
            self._sessions[session_id] = self._apply(current, {"session_key": None})
            return current.session_key

    # Prompts

    async def add_prompt(self, record: PromptRecord) -> PromptRecord:
        async with self._lock:
            if record.id in self._prompts:
                raise RecordExistsError(f"Prompt {record.id} already exists")
            self._prompts[record.id] = dataclasses.replace(record)
        return dataclasses.replace(record)

    async def get_prompt(self, prompt_id: str) -> Optional[PromptRecord]:
        record = self._prompts.get(prompt_id)
        return dataclasses.replace(record) if record else None

    async def list_prompts_for_session(self, session_id: str) -> List[PromptRecord]:
        records = [dataclasses.replace(r) for r in self._prompts.values() if r.session_id == session_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def compare_and_set_prompt(
        self,
        prompt_id: str,
        expected: Collection[PromptStatus],
        changes: Dict[str, Any],
    ) -> Optional[PromptRecord]:
        async with self._lock:
            current = self._prompts.get(prompt_id)
            if current is None or current.status not in expected:
                return None
            updated = self._apply(current, changes)
            self._prompts[prompt_id] = updated
            return dataclasses.replace(updated)

    async def update_prompt(self, prompt_id: str, changes: Dict[str, Any]) -> Optional[PromptRecord]:
        async with self._lock:
            current = self._prompts.get(prompt_id)
            if current is None:
                return None
            updated = self._apply(current, changes)
            self._prompts[prompt_id] = updated
            return dataclasses.replace(updated)

    async def find_by_task_id(self, task_id: str):
        for session in self._sessions.values():
            if session.task_id == task_id:
                return dataclasses.replace(session)
        for prompt in self._prompts.values():
            if prompt.task_id == task_id:
                return dataclasses.replace(prompt)
        return None
