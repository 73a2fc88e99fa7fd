"""
Gateway session model.

Security Note:
- session_key and encrypted_credential are opaque blobs produced inside
  the TEE; the coordinator stores and re-supplies them but never parses them
- Both are cleared when the session leaves the active state
"""

from sqlalchemy import Column, DateTime, Index, String, Text

from .base import Base


class GatewaySession(Base):
    """
    Two-phase TEE session.

    Lifecycle: pending -> active | failed, active -> revoked | expired.
    """

    __tablename__ = "gateway_sessions"

    id = Column(String, primary_key=True)
    owner_address = Column(String(42), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="pending")

    # Opaque TEE output (JSON strings)
    session_key = Column(Text, nullable=True)
    encrypted_credential = Column(Text, nullable=True)
    key_fingerprint = Column(String(64), nullable=True)

    task_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    # The expiry sweep scans active sessions by expiry
    __table_args__ = (Index("ix_gateway_sessions_status_expires", "status", "expires_at"),)
