import uuid
from datetime import datetime, timezone
from sqlalchemy.sql import func
from sqlalchemy import Column, String, DateTime, Boolean, Text, Integer, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from app.db.database import Base
from app.models.profiles import Profile


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), unique=True, nullable=False)
    trip_id = Column(String, nullable=False, index=True)  # Reference to trips (no FK constraint)
    sender_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    message = Column(Text, nullable=False)  # Ciphertext when encrypted is set
    encrypted = Column(Boolean, nullable=False, default=False)
    read_by = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now(), nullable=False, index=True)
    edited_at = Column(DateTime(timezone=True), nullable=True)

    sender = relationship(Profile, lazy="joined")
    attachments = relationship(
        "ChatAttachment",
        cascade="all, delete-orphan",
        order_by="ChatAttachment.created_at",
        lazy="selectin",
    )
    reactions = relationship(
        "MessageReaction",
        cascade="all, delete-orphan",
        order_by="MessageReaction.created_at",
        lazy="selectin",
    )


class ChatAttachment(Base):
    __tablename__ = "chat_attachments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), unique=True, nullable=False)
    message_id = Column(String, ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    file_url = Column(String, nullable=False)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(100), nullable=True)  # MIME type
    file_size = Column(Integer, nullable=True)
    uploaded_by = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now(), nullable=False)


class MessageReaction(Base):
    __tablename__ = "message_reactions"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_reactions_message_user"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), unique=True, nullable=False)
    message_id = Column(String, ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    emoji = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now(), nullable=False)

    user = relationship(Profile, lazy="joined")
