"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from smsbridge.storage import Base
from smsbridge.utils import utc_now_iso


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    A conversation participant, human or agent.

    Table: users
    phone_number is unique so SMS senders resolve to exactly one user.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    display_name = Column(String, nullable=False)
    phone_number = Column(String, unique=True, nullable=True, index=True)
    is_agent = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False, default=utc_now_iso)


class Conversation(Base):
    """
    Table: conversations
    mode is one of direct, assisted, anonymous (see visibility.ConversationMode).
    """
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_new_id)
    mode = Column(String, nullable=False, default="direct")
    title = Column(String, nullable=True)
    created_at = Column(String, nullable=False, default=utc_now_iso)

    participants = relationship("ConversationParticipant", back_populates="conversation")


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"
    __table_args__ = (UniqueConstraint("conversation_id", "user_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    role = Column(String, nullable=False, default="member")

    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User")


class Message(Base):
    """
    SQLAlchemy model for conversation messages.

    Table: messages
    content_raw is exactly what the sender typed; content_processed is filled
    later by the intermediary. provider_sid is unique so a redelivered
    inbound SMS is stored at most once.
    """
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    content_raw = Column(Text, nullable=False)
    content_processed = Column(Text, nullable=True)
    is_from_agent = Column(Boolean, nullable=False, default=False)
    raw_visible_to = Column(JSON, nullable=True)  # list of user ids
    source = Column(String, nullable=False, default="app")
    provider_sid = Column(String, unique=True, nullable=True)
    created_at = Column(String, nullable=False, default=utc_now_iso, index=True)  # ISO-8601 UTC

    sender = relationship("User")


class NotificationPreference(Base):
    """
    Table: notification_preferences
    quiet_hours_start/end are HH:MM wall-clock strings; start > end spans midnight.
    """
    __tablename__ = "notification_preferences"

    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    sms_enabled = Column(Boolean, nullable=False, default=True)
    phone_number = Column(String, nullable=True)
    rate_limit_seconds = Column(Integer, nullable=False, default=60)
    quiet_hours_start = Column(String(5), nullable=True)
    quiet_hours_end = Column(String(5), nullable=True)
    timezone = Column(String, nullable=True)


class NotificationLog(Base):
    """
    Append-only record of successful sends. Read only to find the last send time.

    Table: notification_log
    """
    __tablename__ = "notification_log"
    __table_args__ = (Index("idx_notification_log_user_sent", "user_id", "sent_at"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    channel = Column(String, nullable=False, default="sms")
    sent_at = Column(String, nullable=False, default=utc_now_iso)
    message_preview = Column(Text, nullable=True)
    phone_number = Column(String, nullable=True)
