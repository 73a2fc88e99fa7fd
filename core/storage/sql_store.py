"""
Durable store backed by SQLAlchemy (async, asyncpg in production).

Compare-and-set is a single `UPDATE ... WHERE id = :id AND status IN (...)`
statement, so concurrent writers (including other coordinator processes)
serialize on the row and only one transition wins.
"""

import logging
from enum import Enum
from typing import Any, Collection, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.gateway_session import GatewaySession
from models.prompt_request import PromptRequest

from .base import GatewayStore, RecordExistsError
from .records import AIProvider, PromptRecord, PromptStatus, SessionRecord, SessionStatus

logger = logging.getLogger(__name__)

_SESSION_FIELDS = (
    "id",
    "owner_address",
    "provider",
    "status",
    "session_key",
    "encrypted_credential",
    "key_fingerprint",
    "task_id",
    "error",
    "created_at",
    "expires_at",
    "updated_at",
)

_PROMPT_FIELDS = (
    "id",
    "session_id",
    "model",
    "max_tokens",
    "temperature",
    "status",
    "task_id",
    "encrypted_response",
    "response_iv",
    "model_used",
    "usage",
    "proof",
    "error",
    "created_at",
    "completed_at",
)


def _to_column_values(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in changes.items()}


def _session_from_row(row: GatewaySession) -> SessionRecord:
    values = {name: getattr(row, name) for name in _SESSION_FIELDS}
    values["provider"] = AIProvider(values["provider"])
    values["status"] = SessionStatus(values["status"])
    return SessionRecord(**values)


def _prompt_from_row(row: PromptRequest) -> PromptRecord:
    values = {name: getattr(row, name) for name in _PROMPT_FIELDS}
    values["status"] = PromptStatus(values["status"])
    return PromptRecord(**values)


class SqlGatewayStore(GatewayStore):
    """Store backed by the gateway_sessions and prompt_requests tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # Sessions

    async def add_session(self, record: SessionRecord) -> SessionRecord:
        values = _to_column_values({name: getattr(record, name) for name in _SESSION_FIELDS})
        async with self._session_factory() as db:
            db.add(GatewaySession(**values))
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise RecordExistsError(f"Session {record.id} already exists") from e
        return record

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        async with self._session_factory() as db:
            row = await db.get(GatewaySession, session_id)
            return _session_from_row(row) if row else None

    async def list_sessions(
        self,
        owner_address: Optional[str] = None,
        statuses: Optional[Collection[SessionStatus]] = None,
    ) -> List[SessionRecord]:
        query = select(GatewaySession).order_by(GatewaySession.created_at.desc())
        if owner_address is not None:
            query = query.where(GatewaySession.owner_address.ilike(owner_address))
        if statuses is not None:
            query = query.where(GatewaySession.status.in_([s.value for s in statuses]))

        async with self._session_factory() as db:
            result = await db.execute(query)
            return [_session_from_row(row) for row in result.scalars().all()]

    async def compare_and_set_session(
        self,
        session_id: str,
        expected: Collection[SessionStatus],
        changes: Dict[str, Any],
    ) -> Optional[SessionRecord]:
        statement = (
            update(GatewaySession)
            .where(GatewaySession.id == session_id)
            .where(GatewaySession.status.in_([s.value for s in expected]))
            .values(**_to_column_values(changes))
        )
        async with self._session_factory() as db:
            result = await db.execute(statement)
            await db.commit()
            if result.rowcount == 0:
                return None
        return await self.get_session(session_id)

    async def update_session(self, session_id: str, changes: Dict[str, Any]) -> Optional[SessionRecord]:
        statement = (
            update(GatewaySession)
            .where(GatewaySession.id == session_id)
            .values(**_to_column_values(changes))
        )
        async with self._session_factory() as db:
            result = await db.execute(statement)
            await db.commit()
            if result.rowcount == 0:
                return None
        return await self.get_session(session_id)

    async def take_session_key(self, session_id: str) -> Optional[str]:
        # Clearing is conditioned on the value just read, so of two
        # concurrent takers only the one whose UPDATE matches gets the key
        current = await self.get_session(session_id)
        if current is None or current.status != SessionStatus.ACTIVE or not current.session_key:
            return None
        statement = (
            update(GatewaySession)
            .where(GatewaySession.id == session_id)
            .where(GatewaySession.status == SessionStatus.ACTIVE.value)
            .where(GatewaySession.session_key == current.session_key)
            .values(session_key=None)
        )
        async with self._session_factory() as db:
            result = await db.execute(statement)
            await db.commit()
            if result.rowcount == 0:
                return None
        return current.session_key

    # Prompts

    async def add_prompt(self, record: PromptRecord) -> PromptRecord:
        values = _to_column_values({name: getattr(record, name) for name in _PROMPT_FIELDS})
        async with self._session_factory() as db:
            db.add(PromptRequest(**values))
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise RecordExistsError(f"Prompt {record.id} already exists") from e
        return record

    async def get_prompt(self, prompt_id: str) -> Optional[PromptRecord]:
        async with self._session_factory() as db:
            row = await db.get(PromptRequest, prompt_id)
            return _prompt_from_row(row) if row else None

    async def list_prompts_for_session(self, session_id: str) -> List[PromptRecord]:
        query = (
            select(PromptRequest)
            .where(PromptRequest.session_id == session_id)
            .order_by(PromptRequest.created_at.desc())
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [_prompt_from_row(row) for row in result.scalars().all()]

    async def compare_and_set_prompt(
        self,
        prompt_id: str,
        expected: Collection[PromptStatus],
        changes: Dict[str, Any],
    ) -> Optional[PromptRecord]:
        statement = (
            update(PromptRequest)
            .where(PromptRequest.id == prompt_id)
            .where(PromptRequest.status.in_([s.value for s in expected]))
            .values(**_to_column_values(changes))
        )
        async with self._session_factory() as db:
            result = await db.execute(statement)
            await db.commit()
            if result.rowcount == 0:
                return None
        return await self.get_prompt(prompt_id)

    async def update_prompt(self, prompt_id: str, changes: Dict[str, Any]) -> Optional[PromptRecord]:
        statement = update(PromptRequest).where(PromptRequest.id == prompt_id).values(**_to_column_values(changes))
        async with self._session_factory() as db:
            result = await db.execute(statement)
            await db.commit()
            if result.rowcount == 0:
                return None
        return await self.get_prompt(prompt_id)

    async def find_by_task_id(self, task_id: str):
        async with self._session_factory() as db:
            row = (await db.execute(select(GatewaySession).where(GatewaySession.task_id == task_id))).scalars().first()
            if row is not None:
                return _session_from_row(row)
            row = (await db.execute(select(PromptRequest).where(PromptRequest.task_id == task_id))).scalars().first()
            return _prompt_from_row(row) if row is not None else None
