"""Connection registry model: one row per client attachment."""

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index

from livequiz.database import Base


class TransportKind(str, enum.Enum):
    PUSH = "push"
    POLL = "poll"
    API = "api"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SessionConnection(Base):
    __tablename__ = "session_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("live_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    connection_id = Column(String(100), unique=True, index=True, nullable=False)

    transport = Column(String(10), nullable=False, default=TransportKind.POLL.value)
    status = Column(String(20), nullable=False, default=ConnectionStatus.CONNECTED.value)
    current_question_answered = Column(Boolean, default=False, nullable=False)

    last_heartbeat_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_session_connections_session_status", "session_id", "status"),
        Index("ix_session_connections_session_user", "session_id", "user_id"),
    )
