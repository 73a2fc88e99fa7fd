"""
Prompt Service - the prompt state machine.

    pending -> processing -> completed | failed

Only ciphertext and its metadata are recorded.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from core.crypto.envelopes import utc_now
from core.storage import GatewayStore, PromptRecord, PromptStatus, SessionStats

from .session_service import GatewayServiceError

logger = logging.getLogger(__name__)


class PromptNotFoundError(GatewayServiceError):
    """No prompt with this id."""

    pass


class PromptService:
    """State transitions for prompts."""

    def __init__(self, store: GatewayStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def create(
        self,
        session_id: str,
        model: Optional[str],
        max_tokens: int,
        temperature: Optional[float],
        prompt_id: Optional[str] = None,
    ) -> PromptRecord:
        record = PromptRecord(
            id=prompt_id or str(uuid.uuid4()),
            session_id=session_id,
            created_at=self.clock(),
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        await self.store.add_prompt(record)
        return record

    async def get(self, prompt_id: str) -> PromptRecord:
        """
        Raises:
            PromptNotFoundError: If the prompt does not exist
        """
        prompt = await self.store.get_prompt(prompt_id)
        if prompt is None:
            raise PromptNotFoundError(f"Prompt {prompt_id} not found")
        return prompt

    async def list_for_session(self, session_id: str) -> List[PromptRecord]:
        return await self.store.list_prompts_for_session(session_id)

    async def mark_processing(self, prompt_id: str, task_id: str) -> Optional[PromptRecord]:
        return await self.store.compare_and_set_prompt(
            prompt_id,
            [PromptStatus.PENDING],
            {"status": PromptStatus.PROCESSING, "task_id": task_id},
        )

    async def complete(self, prompt_id: str, record: dict) -> Optional[PromptRecord]:
        """processing -> completed from a successful oracle output record."""
        updated = await self.store.compare_and_set_prompt(
            prompt_id,
            [PromptStatus.PROCESSING],
            {
                "status": PromptStatus.COMPLETED,
                "encrypted_response": record.get("encryptedResponse"),
                "response_iv": record.get("iv"),
                "model_used": record.get("model"),
                "usage": record.get("usage"),
                "proof": record.get("proof"),
                "error": None,
                "completed_at": self.clock(),
            },
        )
        if updated:
            logger.info(f"Prompt {prompt_id} completed")
        return updated

    async def fail(self, prompt_id: str, error: str) -> Optional[PromptRecord]:
        """pending | processing -> failed."""
        updated = await self.store.compare_and_set_prompt(
            prompt_id,
            [PromptStatus.PENDING, PromptStatus.PROCESSING],
            {"status": PromptStatus.FAILED, "error": error, "completed_at": self.clock()},
        )
        if updated:
            logger.warning(f"Prompt {prompt_id} failed: {error}")
        return updated

    async def stats(self, session_id: str) -> SessionStats:
        prompts = await self.store.list_prompts_for_session(session_id)
        stats = SessionStats(total_prompts=len(prompts))
        for prompt in prompts:
            stats.by_status[prompt.status.value] = stats.by_status.get(prompt.status.value, 0) + 1
            if prompt.status == PromptStatus.COMPLETED:
                stats.completed += 1
                stats.total_tokens += int((prompt.usage or {}).get("total_tokens", 0))
            elif prompt.status == PromptStatus.FAILED:
                stats.failed += 1
            else:
                stats.pending += 1
        return stats
