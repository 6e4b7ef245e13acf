"""SQLAlchemy ORM database models."""
from datetime import datetime
from sqlalchemy import Column, String, Integer, BigInteger, Text, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship

Base = declarative_base()


class Conversation(Base):
    """Conversation table - one tutoring thread."""
    __tablename__ = "conversations"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_active_at = Column(DateTime, default=datetime.utcnow)

    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_conversation_last_active", "last_active_at"),
    )


class Message(Base):
    """Message table - append-only transcript of a conversation."""
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    role = Column(String, nullable=False)  # 'user', 'assistant'
    content = Column(Text, nullable=False)
    created_at_ms = Column(BigInteger, nullable=False)  # store-assigned append time, strictly increasing per conversation
    image_ref = Column(String, nullable=True)
    structured_context_json = Column(Text, nullable=True)  # JSON: StructuredContext
    practice_session_id = Column(String, ForeignKey("practice_sessions.id"), nullable=True)
    is_voice = Column(Boolean, default=False, nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
    practice_session = relationship("PracticeSession")

    __table_args__ = (
        Index("idx_message_conversation_created", "conversation_id", "created_at_ms"),
    )


class PracticeSession(Base):
    """Practice session table - a generated quiz and the student's answers."""
    __tablename__ = "practice_sessions"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    topic = Column(String, nullable=False)
    difficulty = Column(String, nullable=False)  # 'easy', 'medium', 'hard'
    problems_json = Column(Text, nullable=False)  # JSON: list of PracticeProblem
    total_problems = Column(Integer, nullable=False)
    current_problem_index = Column(Integer, default=0, nullable=False)
    score = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_practice_conversation", "conversation_id"),
    )


class WhiteboardState(Base):
    """Whiteboard state table - latest canvas snapshot, one row per conversation."""
    __tablename__ = "whiteboard_states"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), unique=True, nullable=False)
    snapshot_json = Column(Text, nullable=False)
    content_hash = Column(String, nullable=False)
    thumbnail_ref = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
