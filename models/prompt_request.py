"""
Prompt request model.

Only ciphertext is stored: the encrypted response, its nonce and the
proof hashes. Usage is plaintext token counts, kept for accounting.
"""

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text

from .base import Base


class PromptRequest(Base):
    """Single prompt executed by the oracle under a gateway session."""

    __tablename__ = "prompt_requests"

    id = Column(String, primary_key=True)
    session_id = Column(
        String,
        ForeignKey("gateway_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    model = Column(String, nullable=True)
    max_tokens = Column(Integer, nullable=False, default=1024)
    temperature = Column(Float, nullable=True)
    status = Column(String(16), nullable=False, default="pending")

    task_id = Column(String, nullable=True)

    encrypted_response = Column(Text, nullable=True)
    response_iv = Column(String(32), nullable=True)
    model_used = Column(String, nullable=True)
    usage = Column(JSON, nullable=True)
    proof = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
