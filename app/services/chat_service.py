import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.chat import ChatAttachment, ChatMessage, MessageReaction
from app.schemas.chat_schema import AttachmentCreate, MessageOut, ReactionOut
from app.services.encryption_service import decrypt_message, encrypt_message

logger = logging.getLogger(__name__)


def _to_message_out(message: ChatMessage) -> MessageOut:
    """Serialize a stored message with its text decrypted"""
    out = MessageOut.model_validate(message)
    if message.encrypted:
        out.message = decrypt_message(message.message, message.trip_id)
    return out


def get_message(db: Session, message_id: str) -> Optional[ChatMessage]:
    """Get a message by ID"""
    return db.query(ChatMessage).filter(ChatMessage.id == message_id).first()


def get_messages(db: Session, trip_id: str, limit: Optional[int] = 50, offset: int = 0) -> List[MessageOut]:
    """Get trip messages oldest first, with sender, attachments and reactions. limit=None returns all."""
    messages = (
        db.query(ChatMessage)
        .filter(ChatMessage.trip_id == trip_id)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [_to_message_out(message) for message in messages]


def create_message(
    db: Session,
    trip_id: str,
    sender_id: str,
    text: str,
    attachments: Optional[List[AttachmentCreate]] = None
) -> MessageOut:
    """Store an encrypted message; the sender has read it already"""
    message = ChatMessage(
        trip_id=trip_id,
        sender_id=sender_id,
        message=encrypt_message(text, trip_id),
        encrypted=True,
        read_by=[sender_id]
    )
    for attachment in attachments or []:
        message.attachments.append(ChatAttachment(
            file_url=attachment.file_url,
            file_name=attachment.file_name,
            file_type=attachment.file_type,
            file_size=attachment.file_size,
            uploaded_by=sender_id
        ))

    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(f"Message {message.id} stored for trip {trip_id}")
    return _to_message_out(message)


def update_message(db: Session, message_id: str, sender_id: str, text: str) -> Optional[MessageOut]:
    """
    Replace the text of a message owned by sender_id.

    Returns None when no message matches both id and sender, which covers
    edits of someone else's message.
    """
    message = (
        db.query(ChatMessage)
        .filter(ChatMessage.id == message_id, ChatMessage.sender_id == sender_id)
        .first()
    )
    if not message:
        return None

    message.message = encrypt_message(text, message.trip_id)
    message.encrypted = True
    message.edited_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(message)
    return _to_message_out(message)


def delete_message(db: Session, message_id: str, sender_id: str) -> bool:
    """Delete a message owned by sender_id along with its attachments and reactions"""
    message = (
        db.query(ChatMessage)
        .filter(ChatMessage.id == message_id, ChatMessage.sender_id == sender_id)
        .first()
    )
    if not message:
        return False

    db.delete(message)
    db.commit()
    logger.info(f"Message {message_id} deleted by {sender_id}")
    return True


def add_reaction(db: Session, message_id: str, user_id: str, emoji: str) -> Optional[ReactionOut]:
    """Set the user's reaction on a message, replacing any earlier one"""
    if not get_message(db, message_id):
        return None

    db.query(MessageReaction).filter(
        MessageReaction.message_id == message_id,
        MessageReaction.user_id == user_id
    ).delete(synchronize_session=False)

    reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji)
    db.add(reaction)
    db.commit()
    db.refresh(reaction)
    return ReactionOut.model_validate(reaction)


def remove_reaction(db: Session, message_id: str, user_id: str, emoji: Optional[str] = None) -> int:
    """Remove the user's reaction, optionally only if it is the given emoji. Returns rows deleted."""
    query = db.query(MessageReaction).filter(
        MessageReaction.message_id == message_id,
        MessageReaction.user_id == user_id
    )
    if emoji is not None:
        query = query.filter(MessageReaction.emoji == emoji)

    deleted = query.delete(synchronize_session=False)
    db.commit()
    return deleted


def mark_as_read(db: Session, message_id: str, user_id: str) -> Optional[List[str]]:
    """Add user_id to read_by if absent. Returns the read_by list, or None if the message is missing."""
    message = get_message(db, message_id)
    if not message:
        return None

    read_by = list(message.read_by or [])
    if user_id not in read_by:
        read_by.append(user_id)
        # New list so the JSON column is flagged dirty
        message.read_by = read_by
        db.commit()
    return read_by
