"""
Gateway Service - coordinates the two TEE phases.

Flow:
1. create_session: push the credential to the relay, dispatch the key
   manager, wait for {sessionKey, encryptedCredential}, activate
2. submit_prompt: re-validate the session, push prompt, session key and
   encrypted credential to the relay, dispatch the oracle, wait for the
   encrypted response
3. The caller decrypts the response locally with the session key

Security Note:
- Secret values only travel through the relay; task arguments carry
  nothing but provider, model and limits
- Session keys and encrypted credentials are opaque strings here

Usage:
    service = GatewayService(store=get_store(), platform=get_task_platform(), relay=get_secret_relay())
    created = await service.create_session("0xabc...", AIProvider.OPENAI, "sk-...", 3600)
    prompt = await service.submit_prompt(created.session.id, "ping")
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Union

from core.crypto.envelopes import isoformat, utc_now
from core.enclave import (
    SecretRelayError,
    SecretRelayInterface,
    TaskFailedError,
    TaskPlatformError,
    TaskPlatformInterface,
    TaskStatus,
    push_unique_secret,
)
from core.storage import (
    AIProvider,
    GatewayStore,
    PromptRecord,
    PromptStatus,
    SessionRecord,
    SessionStats,
    SessionStatus,
)

from .prompt_service import PromptService
from .session_service import InvalidRequestError, SessionNotActiveError, SessionService

logger = logging.getLogger(__name__)

KEY_MANAGER_ACTION = "generate-session"


@dataclass
class SessionResult:
    """
    A session snapshot plus the caller's session key when available.

    session_key is the key manager's {"key", "iv", "createdAt"} document.
    It is only set once the session is active. When keys are not retained
    server-side it is handed out exactly once, by whichever read first sees
    the session active, and cleared from the store in the same step.
    """

    session: SessionRecord
    session_key: Optional[Dict[str, Any]] = None


class GatewayService:
    """
    Coordinator for sessions and prompts.

    All collaborators are injected, so the same logic runs against the
    in-process platform and memory store in tests and the remote platform
    and SQL store in production.
    """

    def __init__(
        self,
        store: GatewayStore,
        platform: TaskPlatformInterface,
        relay: SecretRelayInterface,
        key_manager_app: str = "key-manager",
        oracle_app: str = "oracle",
        session_key_timeout: float = 300.0,
        oracle_timeout: float = 300.0,
        poll_interval: float = 5.0,
        default_duration: int = 3600,
        min_duration: int = 300,
        max_duration: int = 86400,
        retain_session_key: bool = True,
        clock=utc_now,
    ):
        self.store = store
        self.platform = platform
        self.relay = relay
        self.key_manager_app = key_manager_app
        self.oracle_app = oracle_app
        self.session_key_timeout = session_key_timeout
        self.oracle_timeout = oracle_timeout
        self.poll_interval = poll_interval
        self.default_duration = default_duration
        self.min_duration = min_duration
        self.max_duration = max_duration
        self.retain_session_key = retain_session_key
        self.clock = clock
        self.sessions = SessionService(store, clock)
        self.prompts = PromptService(store, clock)

    @classmethod
    def from_settings(cls, store: GatewayStore, platform: TaskPlatformInterface, relay: SecretRelayInterface):
        """Build a service configured from core.config.settings."""
        from core.config import settings

        return cls(
            store=store,
            platform=platform,
            relay=relay,
            key_manager_app=settings.KEY_MANAGER_APP,
            oracle_app=settings.ORACLE_APP,
            session_key_timeout=settings.SESSION_KEY_TIMEOUT_SECONDS,
            oracle_timeout=settings.ORACLE_TIMEOUT_SECONDS,
            poll_interval=settings.TASK_POLL_INTERVAL_SECONDS,
            default_duration=settings.DEFAULT_SESSION_DURATION,
            min_duration=settings.MIN_SESSION_DURATION,
            max_duration=settings.MAX_SESSION_DURATION,
            retain_session_key=settings.RETAIN_SESSION_KEY_SERVER_SIDE,
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        owner_address: str,
        provider: Union[AIProvider, str],
        credential: str,
        duration_seconds: Optional[int] = None,
        wait: bool = True,
    ) -> SessionResult:
        """
        Create a session and run the key manager for it.

        Args:
            owner_address: Caller's address
            provider: Upstream provider the credential belongs to
            credential: Caller's long-lived API key (only ever sent to the relay)
            duration_seconds: Session lifetime (default DEFAULT_SESSION_DURATION)
            wait: Block until the key manager finishes

        Returns:
            SessionResult; the session is pending if wait=False, otherwise
            active (with session_key) or failed (with error)

        Raises:
            InvalidRequestError: If a field is missing or out of range
            TaskTimeoutError: If the key manager does not finish in time;
                the session stays pending and can be refreshed later
        """
        if not owner_address:
            raise InvalidRequestError("owner_address is required")
        if not credential or not credential.strip():
            raise InvalidRequestError("credential is required")
        try:
            provider = AIProvider(provider)
        except ValueError:
            raise InvalidRequestError(f"Unsupported provider: {provider}") from None

        duration = duration_seconds if duration_seconds is not None else self.default_duration
        if not self.min_duration <= duration <= self.max_duration:
            raise InvalidRequestError(
                f"duration_seconds must be between {self.min_duration} and {self.max_duration}"
            )

        session = await self.sessions.create_pending(owner_address, provider, duration)

        try:
            secret_name = await push_unique_secret(
                self.relay,
                f"km_{session.id}_{int(time.time() * 1000)}",
                credential,
            )
            handle = await self.platform.dispatch(
                self.key_manager_app,
                [KEY_MANAGER_ACTION, session.id, isoformat(session.expires_at)],
                {1: secret_name},
            )
        except (SecretRelayError, TaskPlatformError) as e:
            logger.error(f"Key manager dispatch failed for session {session.id}: {e}")
            failed = await self.sessions.fail(session.id, str(e))
            return SessionResult(session=failed or session)

        session = await self.sessions.set_task(session.id, handle.task_id) or session
        logger.info(f"Key manager task {handle.task_id} dispatched for session {session.id}")

        if not wait:
            return SessionResult(session=session)
        return await self.wait_for_session(session.id)

    async def wait_for_session(self, session_id: str, timeout: Optional[float] = None) -> SessionResult:
        """
        Block until the key manager task for a pending session finishes.

        Raises:
            SessionNotFoundError: If the session does not exist
            TaskTimeoutError: If the task is still running after the timeout
        """
        session = await self.sessions.get(session_id)
        if session.status != SessionStatus.PENDING or not session.task_id:
            return await self._session_result(session)

        try:
            record = await self.platform.await_result(
                session.task_id,
                timeout=timeout if timeout is not None else self.session_key_timeout,
                poll_interval=self.poll_interval,
            )
        except TaskFailedError as e:
            failed = await self.sessions.fail(session_id, str(e))
            return await self._session_result(failed or await self.sessions.get(session_id))

        return await self._session_result(await self._apply_key_manager_result(session_id, record))

    async def refresh_session(self, session_id: str) -> SessionResult:
        """Non-blocking status check that picks up a late key manager result."""
        session = await self.sessions.get(session_id)
        if session.status != SessionStatus.PENDING or not session.task_id:
            return await self._session_result(session)

        status = await self.platform.get_status(session.task_id)
        if status == TaskStatus.COMPLETED:
            record = await self.platform.fetch_result(session.task_id)
            return await self._session_result(await self._apply_key_manager_result(session_id, record))
        if status == TaskStatus.FAILED:
            failed = await self.sessions.fail(session_id, f"Task {session.task_id} failed")
            return await self._session_result(failed or await self.sessions.get(session_id))
        return SessionResult(session=session)

    async def _apply_key_manager_result(self, session_id: str, record: dict) -> SessionRecord:
        """Resolve a pending session from key manager output. The key is stored, not delivered."""
        if not record.get("success"):
            error = record.get("error") or "Key manager failed"
            return await self.sessions.fail(session_id, error) or await self.sessions.get(session_id)

        session_key = record.get("sessionKey")
        encrypted_credential = record.get("encryptedCredential")
        if not session_key or not encrypted_credential:
            failed = await self.sessions.fail(session_id, "Key manager output is missing session material")
            return failed or await self.sessions.get(session_id)

        activated = await self.sessions.activate(
            session_id,
            session_key=json.dumps(session_key),
            encrypted_credential=json.dumps(encrypted_credential),
            key_fingerprint=record.get("keyFingerprint"),
        )
        # None: already resolved by another waiter or a notification
        return activated or await self.sessions.get(session_id)

    async def _session_result(self, session: SessionRecord) -> SessionResult:
        if session.status != SessionStatus.ACTIVE:
            return SessionResult(session=session)

        if self.retain_session_key:
            key_blob = session.session_key
        else:
            key_blob = await self.sessions.take_session_key(session.id)
            session = replace(session, session_key=None)
        return SessionResult(session=session, session_key=json.loads(key_blob) if key_blob else None)

    async def get_session(self, session_id: str) -> SessionRecord:
        return await self.sessions.get(session_id)

    async def list_sessions(self, owner_address: Optional[str] = None) -> List[SessionRecord]:
        return await self.sessions.list(owner_address)

    async def revoke_session(self, session_id: str) -> SessionRecord:
        """
        Raises:
            SessionNotFoundError: If the session does not exist
            SessionNotActiveError: If the session is not active
        """
        return await self.sessions.revoke(session_id)

    async def expire_sessions(self) -> int:
        """Expire every active session past its expiry. Safe to run concurrently."""
        count = await self.sessions.expire_due()
        if count:
            logger.info(f"Expired {count} session(s)")
        return count

    # =========================================================================
    # Prompts
    # =========================================================================

    async def submit_prompt(
        self,
        session_id: str,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: Optional[float] = None,
        session_key: Optional[Union[str, Dict[str, Any]]] = None,
        wait: bool = True,
    ) -> PromptRecord:
        """
        Run a prompt through the oracle under an active session.

        The session is validated before anything is created or dispatched,
        and again right before the prompt record is created.

        Args:
            session_key: Required when session keys are not retained server-side

        Returns:
            PromptRecord; processing if wait=False, otherwise completed or failed

        Raises:
            InvalidRequestError: If a field is missing or out of range
            SessionNotFoundError: If the session does not exist
            SessionNotActiveError: If the session is pending, revoked or failed
            SessionExpiredError: If the session is past its expiry
            TaskTimeoutError: If the oracle does not finish in time; the prompt
                stays processing and can be refreshed later
        """
        if not prompt:
            raise InvalidRequestError("prompt is required")
        if max_tokens <= 0:
            raise InvalidRequestError("max_tokens must be positive")

        session = await self.sessions.require_active(session_id)

        if self.retain_session_key:
            key_blob = session.session_key
        elif isinstance(session_key, dict):
            key_blob = json.dumps(session_key)
        else:
            key_blob = session_key
        if not key_blob:
            raise InvalidRequestError("session_key is required")
        if not session.encrypted_credential:
            raise SessionNotActiveError(f"Session {session_id} has no credential")

        prompt_id = str(uuid.uuid4())
        bindings = {
            1: await push_unique_secret(self.relay, f"prompt_{prompt_id}", prompt),
            2: await push_unique_secret(self.relay, f"sessionkey_{prompt_id}", key_blob),
            3: await push_unique_secret(self.relay, f"encapikey_{prompt_id}", session.encrypted_credential),
        }

        # Re-validate: the sweep or a revoke may have run while secrets were staged
        session = await self.sessions.require_active(session_id)

        record = await self.prompts.create(session_id, model, max_tokens, temperature, prompt_id=prompt_id)
        args = [
            session.provider.value,
            model or "",
            str(max_tokens),
            "" if temperature is None else str(temperature),
            session_id,
        ]
        try:
            handle = await self.platform.dispatch(self.oracle_app, args, bindings)
        except TaskPlatformError as e:
            logger.error(f"Oracle dispatch failed for prompt {prompt_id}: {e}")
            return await self.prompts.fail(prompt_id, str(e)) or record

        record = await self.prompts.mark_processing(prompt_id, handle.task_id) or record
        logger.info(f"Oracle task {handle.task_id} dispatched for prompt {prompt_id}")

        if not wait:
            return record
        return await self.wait_for_prompt(prompt_id)

    async def wait_for_prompt(self, prompt_id: str, timeout: Optional[float] = None) -> PromptRecord:
        """
        Block until the oracle task for a processing prompt finishes.

        Raises:
            PromptNotFoundError: If the prompt does not exist
            TaskTimeoutError: If the task is still running after the timeout
        """
        prompt = await self.prompts.get(prompt_id)
        if prompt.status != PromptStatus.PROCESSING or not prompt.task_id:
            return prompt

        try:
            record = await self.platform.await_result(
                prompt.task_id,
                timeout=timeout if timeout is not None else self.oracle_timeout,
                poll_interval=self.poll_interval,
            )
        except TaskFailedError as e:
            return await self.prompts.fail(prompt_id, str(e)) or await self.prompts.get(prompt_id)

        return await self._apply_oracle_result(prompt_id, record)

    async def refresh_prompt(self, prompt_id: str) -> PromptRecord:
        """Non-blocking status check that picks up a late oracle result."""
        prompt = await self.prompts.get(prompt_id)
        if prompt.status != PromptStatus.PROCESSING or not prompt.task_id:
            return prompt

        status = await self.platform.get_status(prompt.task_id)
        if status == TaskStatus.COMPLETED:
            record = await self.platform.fetch_result(prompt.task_id)
            return await self._apply_oracle_result(prompt_id, record)
        if status == TaskStatus.FAILED:
            return await self.prompts.fail(prompt_id, f"Task {prompt.task_id} failed") or prompt
        return prompt

    async def _apply_oracle_result(self, prompt_id: str, record: dict) -> PromptRecord:
        if record.get("success") and record.get("encryptedResponse"):
            updated = await self.prompts.complete(prompt_id, record)
        else:
            updated = await self.prompts.fail(prompt_id, record.get("error") or "Oracle returned no response")
        return updated or await self.prompts.get(prompt_id)

    async def get_prompt(self, prompt_id: str) -> PromptRecord:
        return await self.prompts.get(prompt_id)

    async def list_prompts(self, session_id: str) -> List[PromptRecord]:
        await self.sessions.get(session_id)
        return await self.prompts.list_for_session(session_id)

    async def session_stats(self, session_id: str) -> SessionStats:
        await self.sessions.get(session_id)
        return await self.prompts.stats(session_id)

    # =========================================================================
    # Task notifications
    # =========================================================================

    async def handle_task_notification(
        self,
        task_id: str,
        record: Optional[dict] = None,
    ) -> Optional[Union[SessionRecord, PromptRecord]]:
        """
        Apply a pushed task completion, correlated by task id.

        Args:
            task_id: Task the notification is about
            record: Output record if the notification carries it; otherwise
                it is fetched from the platform

        Returns:
            The updated session or prompt, or None for an unknown task
        """
        target = await self.store.find_by_task_id(task_id)
        if target is None:
            logger.warning(f"Notification for unknown task {task_id}")
            return None

        if record is None:
            record = await self.platform.fetch_result(task_id)

        if isinstance(target, SessionRecord):
            if target.status != SessionStatus.PENDING:
                return target
            return await self._apply_key_manager_result(target.id, record)

        if target.status != PromptStatus.PROCESSING:
            return target
        return await self._apply_oracle_result(target.id, record)

    async def shutdown(self) -> None:
        """Release the store."""
        await self.store.close()
        logger.info("Gateway service shut down")
