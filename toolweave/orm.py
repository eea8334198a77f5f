import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Identity,
    Integer,
    String,
    Text,
    Unicode,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _uuid() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Visibility(str, enum.Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class DocumentKind(str, enum.Enum):
    TEXT = "text"
    CODE = "code"
    SHEET = "sheet"


class Conversation(Base):
    __tablename__ = "conversation"

    conversation_id = Column(String(64), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(Unicode(255), nullable=False, default="Untitled")
    visibility = Column(
        Enum(Visibility, values_callable=lambda e: [v.value for v in e], native_enum=False),
        nullable=False,
        default=Visibility.PRIVATE,
    )
    usage = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


class ConversationMessage(Base):
    __tablename__ = "conversation_message"

    conversation_id = Column(String(64), primary_key=True)
    message_id = Column(String(64), primary_key=True)
    role = Column(String(16), nullable=False)
    parts = Column(JSON, nullable=False)
    attachments = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False, index=True)


class ConversationStream(Base):
    __tablename__ = "conversation_stream"

    stream_id = Column(String(64), primary_key=True)
    conversation_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)


class Document(Base):
    """Every save is a new row; the newest row per ``document_id`` is the current version."""

    __tablename__ = "document"

    id = Column(Integer, Identity(), primary_key=True)
    document_id = Column(String(64), nullable=False, index=True)
    title = Column(Unicode(255), nullable=False)
    kind = Column(
        Enum(DocumentKind, values_callable=lambda e: [v.value for v in e], native_enum=False),
        nullable=False,
        default=DocumentKind.TEXT,
    )
    content = Column(Text, nullable=True)
    user_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
