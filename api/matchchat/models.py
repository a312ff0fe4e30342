from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .database import Base


class UserAccount(Base):
    """Owned by the profile subsystem. Read-only from this service."""

    __tablename__ = "user_account"

    id = Column(Integer, primary_key=True)
    first_name = Column(String, nullable=True)
    level2_questions_completed = Column(Boolean, nullable=False, default=False)
    level3_questions_completed = Column(Boolean, nullable=False, default=False)
    profile = Column(JSON, nullable=True)


class Conversation(Base):
    __tablename__ = "conversation"

    id = Column(Integer, primary_key=True, autoincrement=True)
    participant_a_id = Column(Integer, ForeignKey("user_account.id"), nullable=False)
    participant_b_id = Column(Integer, ForeignKey("user_account.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    match_created_at = Column(DateTime(timezone=True), nullable=True)
    match_expires_at = Column(DateTime(timezone=True), nullable=True)
    match_expired = Column(Boolean, nullable=False, default=False)
    first_message_at = Column(DateTime(timezone=True), nullable=True)
    first_message_sender_id = Column(Integer, nullable=True)
    reply_at = Column(DateTime(timezone=True), nullable=True)
    hidden_by_a = Column(Boolean, nullable=False, default=False)
    hidden_by_b = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("participant_a_id", "participant_b_id", name="uq_conversation_pair"),
        Index("idx_conversation_participant_a", "participant_a_id"),
        Index("idx_conversation_participant_b", "participant_b_id"),
        Index("idx_conversation_expiry", "match_expired", "match_expires_at"),
    )


class ChatMessage(Base):
    __tablename__ = "chat_message"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversation.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(Integer, nullable=False)
    message_type = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    voice_duration = Column(Integer, nullable=True)
    reply_to_message_id = Column(Integer, ForeignKey("chat_message.id"), nullable=True)
    status = Column(String, nullable=False, default="SENT")
    created_at = Column(DateTime(timezone=True), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    deleted_for_sender = Column(Boolean, nullable=False, default=False)
    deleted_for_recipient = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_chat_message_conversation_id", "conversation_id", "id"),
    )


class DisclosureState(Base):
    __tablename__ = "disclosure_state"

    conversation_id = Column(Integer, ForeignKey("conversation.id", ondelete="CASCADE"), primary_key=True)
    total_message_count = Column(Integer, nullable=False, default=0)
    current_level = Column(Integer, nullable=False, default=1)


class DisclosureParticipant(Base):
    __tablename__ = "disclosure_participant"

    conversation_id = Column(Integer, ForeignKey("conversation.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, primary_key=True)
    message_count = Column(Integer, nullable=False, default=0)


class DisclosureConsent(Base):
    __tablename__ = "disclosure_consent"

    conversation_id = Column(Integer, ForeignKey("conversation.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, primary_key=True)
    level = Column(Integer, primary_key=True)
    state = Column(String, nullable=False, default="NONE")
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ConversationEvent(Base):
    __tablename__ = "conversation_event"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, nullable=True)
    user_id = Column(Integer, nullable=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_conversation_event_conversation_id", "conversation_id"),
    )


class UserBlock(Base):
    __tablename__ = "user_block"

    id = Column(Integer, primary_key=True, autoincrement=True)
    blocker_id = Column(Integer, ForeignKey("user_account.id"), nullable=False)
    blocked_id = Column(Integer, ForeignKey("user_account.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("blocker_id", "blocked_id", name="uq_user_block_pair"),
        Index("idx_user_block_blocked", "blocked_id"),
    )
