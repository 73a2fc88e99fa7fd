"""
Session Service - the session state machine.

    (none) --create--> pending
    pending --key manager success--> active
    pending --key manager failure--> failed
    active --revoke--> revoked
    active --now > expires_at--> expired
    failed, expired, revoked: terminal

Security Note:
- The session key and encrypted credential are stored exactly as the key
  manager emitted them and are never parsed here
- Both are cleared whenever a session leaves the active state
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from core.crypto.envelopes import utc_now
from core.storage import AIProvider, GatewayStore, SessionRecord, SessionStatus

logger = logging.getLogger(__name__)

_CLEARED_SECRETS = {"session_key": None, "encrypted_credential": None}


class GatewayServiceError(Exception):
    """Base exception for gateway service errors."""

    pass


class InvalidRequestError(GatewayServiceError):
    """Request is missing a field or has an out-of-range value."""

    pass


class SessionNotFoundError(GatewayServiceError):
    """No session with this id."""

    pass


class SessionNotActiveError(GatewayServiceError):
    """Session is not in the active state."""

    pass


class SessionExpiredError(SessionNotActiveError):
    """Session is past its expiry."""

    pass


class SessionService:
    """
    State transitions for sessions.

    Every transition is a compare-and-set on status, so the expiry sweep,
    a revoke and a late key manager result can race without losing one
    another's effect.
    """

    def __init__(self, store: GatewayStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def create_pending(
        self,
        owner_address: str,
        provider: AIProvider,
        duration_seconds: int,
    ) -> SessionRecord:
        """Insert a new pending session."""
        now = self.clock()
        record = SessionRecord(
            id=str(uuid.uuid4()),
            owner_address=owner_address,
            provider=provider,
            created_at=now,
            expires_at=now + timedelta(seconds=duration_seconds),
            updated_at=now,
        )
        await self.store.add_session(record)
        logger.info(f"Session {record.id} created for {owner_address} ({provider.value}, {duration_seconds}s)")
        return record

    async def get(self, session_id: str) -> SessionRecord:
        """
        Get a session, expiring it first if it is active and past expiry.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        if session.status == SessionStatus.ACTIVE and session.is_expired_at(self.clock()):
            return await self.expire(session_id) or await self.store.get_session(session_id)
        return session

    async def list(self, owner_address: Optional[str] = None) -> List[SessionRecord]:
        return await self.store.list_sessions(owner_address=owner_address)

    async def set_task(self, session_id: str, task_id: str) -> Optional[SessionRecord]:
        return await self.store.update_session(session_id, {"task_id": task_id, "updated_at": self.clock()})

    async def activate(
        self,
        session_id: str,
        session_key: Optional[str],
        encrypted_credential: str,
        key_fingerprint: Optional[str] = None,
    ) -> Optional[SessionRecord]:
        """pending -> active. Returns None if the session was not pending."""
        updated = await self.store.compare_and_set_session(
            session_id,
            [SessionStatus.PENDING],
            {
                "status": SessionStatus.ACTIVE,
                "session_key": session_key,
                "encrypted_credential": encrypted_credential,
                "key_fingerprint": key_fingerprint,
                "error": None,
                "updated_at": self.clock(),
            },
        )
        if updated:
            logger.info(f"Session {session_id} activated")
        return updated

    async def take_session_key(self, session_id: str) -> Optional[str]:
        """Hand out a caller-held session key once, clearing it from the store."""
        key_blob = await self.store.take_session_key(session_id)
        if key_blob:
            logger.info(f"Session key for {session_id} delivered and cleared")
        return key_blob

    async def fail(self, session_id: str, error: str) -> Optional[SessionRecord]:
        """pending -> failed, keeping the error for the caller."""
        updated = await self.store.compare_and_set_session(
            session_id,
            [SessionStatus.PENDING],
            {"status": SessionStatus.FAILED, "error": error, "updated_at": self.clock(), **_CLEARED_SECRETS},
        )
        if updated:
            logger.warning(f"Session {session_id} failed: {error}")
        return updated

    async def revoke(self, session_id: str) -> SessionRecord:
        """
        active -> revoked.

        Raises:
            SessionNotFoundError: If the session does not exist
            SessionNotActiveError: If the session is not active
        """
        updated = await self.store.compare_and_set_session(
            session_id,
            [SessionStatus.ACTIVE],
            {"status": SessionStatus.REVOKED, "updated_at": self.clock(), **_CLEARED_SECRETS},
        )
        if updated is None:
            session = await self.store.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            raise SessionNotActiveError(f"Session {session_id} is {session.status.value}")

        logger.info(f"Session {session_id} revoked")
        return updated

    async def expire(self, session_id: str) -> Optional[SessionRecord]:
        """active -> expired. Returns None if the session was not active."""
        updated = await self.store.compare_and_set_session(
            session_id,
            [SessionStatus.ACTIVE],
            {"status": SessionStatus.EXPIRED, "updated_at": self.clock(), **_CLEARED_SECRETS},
        )
        if updated:
            logger.info(f"Session {session_id} expired")
        return updated

    async def expire_due(self) -> int:
        """
        Expire every active session past its expiry.

        Returns:
            Number of sessions this call moved to expired
        """
        now = self.clock()
        expired = 0
        for session in await self.store.list_sessions(statuses=[SessionStatus.ACTIVE]):
            if session.is_expired_at(now) and await self.expire(session.id):
                expired += 1
        return expired

    async def require_active(self, session_id: str) -> SessionRecord:
        """
        Fresh read of a session that must be usable right now.

        Raises:
            SessionNotFoundError: If the session does not exist
            SessionExpiredError: If the session is expired (or just became so)
            SessionNotActiveError: If the session is pending, revoked or failed
        """
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        if session.status == SessionStatus.EXPIRED:
            raise SessionExpiredError(f"Session {session_id} has expired")
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActiveError(f"Session {session_id} is {session.status.value}")
        if session.is_expired_at(self.clock()):
            await self.expire(session_id)
            raise SessionExpiredError(f"Session {session_id} has expired")

        return session
