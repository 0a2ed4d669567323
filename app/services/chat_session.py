"""
Per-client chat session for one trip.

A ChatSession holds the visible message list for one user in one trip. Local
writes go to the store first (or optimistically, for edits, deletes and
reactions, with rollback on failure) and are then broadcast on the trip
channel. Inbound broadcasts are normalised and merged: messages are
de-duplicated by id, and reaction, edit and delete events sent by this user
are skipped because they were already applied locally.

    session = ChatSession.open(trip_id, access_token=token)
    try:
        session.send_message("Landing at 6pm")
    finally:
        session.close()
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.db.database import SessionLocal
from app.realtime.config import RealtimeSettings, realtime_settings
from app.realtime.connection_manager import (
    ChannelFactory,
    ConnectionManager,
    ConnectionStatus,
    default_channel_factory,
)
from app.realtime.events import EventType, normalize_event
from app.schemas.chat_schema import (
    AttachmentCreate,
    MessageDeleteEvent,
    MessageEditEvent,
    MessageOut,
    ReactionEvent,
    ReactionOut,
)
from app.services import chat_service
from app.services.auth.jwt_handler import get_current_user
from app.services.exceptions import AuthenticationError, PersistenceError, ValidationError
from app.utils.optimistic import OptimisticMutation

logger = logging.getLogger(__name__)


def _sort_key(message: MessageOut):
    created_at = message.created_at
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
    return created_at, message.id


class ChatSession:

    def __init__(
        self,
        trip_id: str,
        user_id: str,
        session_factory=SessionLocal,
        channel_factory: Optional[ChannelFactory] = None,
        settings: Optional[RealtimeSettings] = None,
        timer_factory=threading.Timer
    ):
        self.trip_id = trip_id
        self.user_id = user_id
        self.session_factory = session_factory
        self.settings = settings or realtime_settings
        self.timer_factory = timer_factory

        self.connection = ConnectionManager(
            channel_factory or default_channel_factory(self.settings),
            settings=self.settings,
            timer_factory=timer_factory
        )

        self._messages: List[MessageOut] = []
        self._lock = threading.RLock()
        # Bumped on every local change. While a history fetch is in flight,
        # _touched maps each changed message id to the generation of its change.
        self._generation = 0
        self._fetches_in_flight = 0
        self._touched: Dict[str, int] = {}
        self._typing_timer = None
        self._has_connected = False
        self._closed = False

    @classmethod
    def open(
        cls,
        trip_id: str,
        access_token: Optional[str] = None,
        user_id: Optional[str] = None,
        **kwargs
    ) -> "ChatSession":
        """Resolve the user, load history and subscribe to the trip channel"""
        user_id = user_id or get_current_user(access_token)
        if not user_id:
            raise AuthenticationError("User not authenticated")

        session = cls(trip_id, user_id, **kwargs)
        session.start()
        return session

    def start(self) -> None:
        self.connection.on_event(EventType.MESSAGE, self._on_message)
        self.connection.on_event(EventType.REACTION, self._on_reaction)
        self.connection.on_event(EventType.MESSAGE_EDIT, self._on_message_edit)
        self.connection.on_event(EventType.MESSAGE_DELETE, self._on_message_delete)
        self.connection.on_event(EventType.CONNECTION, self._on_connection)

        self.load_history()
        self.connection.initialize(self.trip_id, self.user_id)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._typing_timer is not None:
                self._typing_timer.cancel()
                self._typing_timer = None
        self.connection.disconnect()
        logger.info(f"Chat session for trip {self.trip_id} closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def messages(self) -> List[MessageOut]:
        with self._lock:
            return list(self._messages)

    def get_typing_users(self) -> List[str]:
        return self.connection.get_typing_users()

    @contextmanager
    def _db(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _persist(self, description: str, operation: Callable[[Any], Any]) -> Any:
        with self._db() as db:
            try:
                return operation(db)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to {description}: {e}")
                raise PersistenceError(f"Failed to {description}") from e

    # Local state

    def _find(self, message_id: str) -> Optional[MessageOut]:
        with self._lock:
            for message in self._messages:
                if message.id == message_id:
                    return message
        return None

    def _require(self, message_id: str) -> MessageOut:
        message = self._find(message_id)
        if message is None:
            raise ValidationError(f"Message {message_id} not found")
        return message

    def _touch(self, message_id: str) -> None:
        # Caller holds _lock
        self._generation += 1
        if self._fetches_in_flight:
            self._touched[message_id] = self._generation

    def _insert_message(self, message: MessageOut) -> bool:
        """Insert in created_at order unless a message with the same id is already listed"""
        with self._lock:
            if any(existing.id == message.id for existing in self._messages):
                return False
            self._messages.append(message)
            self._messages.sort(key=_sort_key)
            self._touch(message.id)
        return True

    def _replace_message(self, message: MessageOut) -> bool:
        with self._lock:
            for index, existing in enumerate(self._messages):
                if existing.id == message.id:
                    self._messages[index] = message
                    self._touch(message.id)
                    return True
        return False

    def _update_message(self, message_id: str, **changes) -> bool:
        with self._lock:
            message = self._find(message_id)
            if message is None:
                return False
            return self._replace_message(message.model_copy(update=changes))

    def _remove_message(self, message_id: str) -> Optional[MessageOut]:
        with self._lock:
            for index, existing in enumerate(self._messages):
                if existing.id == message_id:
                    self._touch(message_id)
                    return self._messages.pop(index)
        return None

    def _broadcast(self, event: str, payload: Any, reconnect: bool = False) -> bool:
        if self.connection.send(event, payload):
            return True

        status = self.connection.get_status()
        logger.warning(f"{event} saved but not broadcasted (connection {status.value})")
        if reconnect and status not in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
            logger.info("Attempting to reconnect chat channel")
            self.connection.reconnect()
        return False

    # History

    def get_messages(self, limit: Optional[int] = None, offset: int = 0) -> List[MessageOut]:
        """Read history straight from the store without touching local state"""
        return self._persist(
            "load messages",
            lambda db: chat_service.get_messages(db, self.trip_id, limit=limit, offset=offset)
        )

    def load_history(self) -> List[MessageOut]:
        """
        Fetch the full trip history from the store and replace the local list.

        Messages changed locally while the fetch was running keep their local
        state, since the fetched snapshot may predate the change.
        """
        with self._lock:
            self._fetches_in_flight += 1
            started = self._generation
        try:
            fetched = {message.id: message for message in self.get_messages()}
            with self._lock:
                local = {message.id: message for message in self._messages}
                kept = 0
                for message_id, generation in self._touched.items():
                    if generation <= started:
                        continue
                    kept += 1
                    if message_id in local:
                        fetched[message_id] = local[message_id]
                    else:
                        fetched.pop(message_id, None)
                self._messages = sorted(fetched.values(), key=_sort_key)
                count = len(self._messages)
        finally:
            with self._lock:
                self._fetches_in_flight -= 1
                if not self._fetches_in_flight:
                    self._touched.clear()

        if kept:
            logger.info(f"Kept local state for {kept} messages changed during history fetch")
        logger.info(f"Loaded {count} messages for trip {self.trip_id}")
        return self.messages

    def refresh(self) -> List[MessageOut]:
        return self.load_history()

    # Outbound operations

    def send_message(self, text: str, attachments: Optional[List[AttachmentCreate]] = None) -> Optional[MessageOut]:
        """Store, show and broadcast a message. Blank text is ignored."""
        if not text or not text.strip():
            return None

        message = self._persist(
            "send message",
            lambda db: chat_service.create_message(db, self.trip_id, self.user_id, text.strip(), attachments)
        )
        self._insert_message(message)
        self._broadcast(EventType.MESSAGE, message, reconnect=True)
        return message

    def edit_message(self, message_id: str, new_text: str) -> MessageOut:
        text = (new_text or "").strip()
        if not text:
            raise ValidationError("Message text cannot be empty")
        self._require(message_id)

        def commit():
            updated = self._persist(
                "edit message",
                lambda db: chat_service.update_message(db, message_id, self.user_id, text)
            )
            if updated is None:
                raise PersistenceError("Message not found or not sent by you")
            return updated

        updated = OptimisticMutation(
            capture=lambda: self._find(message_id),
            apply=lambda: self._update_message(message_id, message=text, edited_at=datetime.now(timezone.utc)),
            commit=commit,
            restore=self._replace_message,
            description=f"Edit of message {message_id}"
        ).run()

        self._replace_message(updated)
        self._broadcast(EventType.MESSAGE_EDIT, updated)
        return updated

    def delete_message(self, message_id: str, confirm: Optional[Callable[[MessageOut], bool]] = None) -> bool:
        """
        Delete one of the user's messages, unless confirm(message) returns False.

        Returns False when the deletion was not confirmed. On a store failure the
        message goes back into its chronological position and the error is raised.
        """
        message = self._require(message_id)
        if confirm is not None and not confirm(message):
            logger.info(f"Deletion of message {message_id} cancelled")
            return False

        def commit():
            deleted = self._persist(
                "delete message",
                lambda db: chat_service.delete_message(db, message_id, self.user_id)
            )
            if not deleted:
                raise PersistenceError("Message not found or not sent by you")

        OptimisticMutation(
            capture=lambda: self._find(message_id),
            apply=lambda: self._remove_message(message_id),
            commit=commit,
            restore=self._insert_message,
            description=f"Delete of message {message_id}"
        ).run()

        self._broadcast(EventType.MESSAGE_DELETE, {"id": message_id, "sender_id": self.user_id})
        return True

    def _set_reactions(self, message_id: str, reactions: List[ReactionOut]) -> None:
        self._update_message(message_id, reactions=reactions)

    def _reaction_mutation(self, message_id: str, apply_reactions, commit, description: str):
        return OptimisticMutation(
            capture=lambda: list(self._require(message_id).reactions),
            apply=lambda: self._set_reactions(message_id, apply_reactions(self._require(message_id).reactions)),
            commit=commit,
            restore=lambda previous: self._set_reactions(message_id, previous),
            description=description
        ).run()

    def add_reaction(self, message_id: str, emoji: str) -> ReactionOut:
        """Set this user's reaction, replacing any earlier emoji they used on the message"""
        if not emoji:
            raise ValidationError("Emoji is required")
        self._require(message_id)

        pending = ReactionOut(id=f"pending-{uuid.uuid4()}", message_id=message_id, user_id=self.user_id, emoji=emoji)

        def apply(reactions):
            return [r for r in reactions if r.user_id != self.user_id] + [pending]

        def commit():
            stored = self._persist(
                "add reaction",
                lambda db: chat_service.add_reaction(db, message_id, self.user_id, emoji)
            )
            if stored is None:
                raise PersistenceError(f"Message {message_id} no longer exists")
            return stored

        stored = self._reaction_mutation(message_id, apply, commit, f"Reaction on message {message_id}")

        message = self._find(message_id)
        if message is not None:
            self._set_reactions(
                message_id,
                [stored if r.id == pending.id else r for r in message.reactions]
            )

        self._broadcast(EventType.REACTION, ReactionEvent(
            id=stored.id,
            message_id=message_id,
            user_id=self.user_id,
            emoji=emoji,
            action="added",
            sender_id=self.user_id,
            user=stored.user
        ))
        return stored

    def remove_reaction(self, message_id: str, emoji: Optional[str] = None) -> int:
        self._require(message_id)

        def apply(reactions):
            return [
                r for r in reactions
                if not (r.user_id == self.user_id and (emoji is None or r.emoji == emoji))
            ]

        def commit():
            return self._persist(
                "remove reaction",
                lambda db: chat_service.remove_reaction(db, message_id, self.user_id, emoji)
            )

        removed = self._reaction_mutation(message_id, apply, commit, f"Reaction removal on message {message_id}")
        self._broadcast(EventType.REACTION, ReactionEvent(
            message_id=message_id,
            user_id=self.user_id,
            emoji=emoji,
            action="removed",
            sender_id=self.user_id
        ))
        return removed

    def send_typing_indicator(self, is_typing: bool) -> bool:
        """
        Broadcast typing state. Never stored.

        Each is_typing=True call re-arms a local timer that sends is_typing=False
        after typing_timeout_seconds without another call.
        """
        with self._lock:
            if self._typing_timer is not None:
                self._typing_timer.cancel()
                self._typing_timer = None
            if is_typing and not self._closed:
                timer = self.timer_factory(
                    self.settings.typing_timeout_seconds,
                    self.send_typing_indicator,
                    args=(False,)
                )
                timer.daemon = True
                self._typing_timer = timer
                timer.start()

        return self.connection.send(EventType.TYPING, {
            "user_id": self.user_id,
            "is_typing": is_typing,
            "trip_id": self.trip_id
        })

    def mark_as_read(self, message_id: str, user_id: Optional[str] = None) -> List[str]:
        user_id = user_id or self.user_id
        message = self._require(message_id)
        if user_id in message.read_by:
            return list(message.read_by)

        read_by = self._persist(
            "mark message as read",
            lambda db: chat_service.mark_as_read(db, message_id, user_id)
        )
        if read_by is None:
            raise PersistenceError(f"Message {message_id} no longer exists")
        self._update_message(message_id, read_by=read_by)
        return read_by

    # Inbound events

    def _on_message(self, payload: Dict[str, Any]) -> None:
        message = normalize_event(payload, MessageOut)
        if message is None:
            return
        if not self._insert_message(message):
            logger.debug(f"Message {message.id} already listed, skipping duplicate")
            return

        if message.sender_id != self.user_id and self.user_id not in message.read_by:
            try:
                self.mark_as_read(message.id)
            except PersistenceError as e:
                logger.warning(f"Could not mark message {message.id} as read: {e}")

    def _on_reaction(self, payload: Dict[str, Any]) -> None:
        event = normalize_event(payload, ReactionEvent)
        if event is None:
            return
        if self.user_id in (event.sender_id, event.user_id):
            logger.debug("Skipping own reaction event, already applied locally")
            return

        message = self._find(event.message_id)
        if message is None:
            return

        reactions = [r for r in message.reactions if r.user_id != event.user_id]
        if event.action == "removed":
            if event.emoji is not None:
                reactions = [
                    r for r in message.reactions
                    if not (r.user_id == event.user_id and r.emoji == event.emoji)
                ]
        elif event.emoji:
            reactions.append(ReactionOut(
                id=event.id or str(uuid.uuid4()),
                message_id=event.message_id,
                user_id=event.user_id,
                emoji=event.emoji,
                user=event.user
            ))
        else:
            logger.warning(f"Dropping reaction event without emoji for message {event.message_id}")
            return
        self._set_reactions(event.message_id, reactions)

    def _on_message_edit(self, payload: Dict[str, Any]) -> None:
        event = normalize_event(payload, MessageEditEvent)
        if event is None:
            return
        if event.sender_id == self.user_id:
            logger.debug("Skipping own edit event, already applied locally")
            return

        changes = {"message": event.message, "edited_at": event.edited_at or datetime.now(timezone.utc)}
        if not self._update_message(event.id, **changes):
            logger.debug(f"Edited message {event.id} is not listed locally")

    def _on_message_delete(self, payload: Dict[str, Any]) -> None:
        event = normalize_event(payload, MessageDeleteEvent)
        if event is None:
            return
        if event.sender_id == self.user_id:
            logger.debug("Skipping own delete event, already applied locally")
            return
        self._remove_message(event.id)

    def _on_connection(self, data: Dict[str, Any]) -> None:
        if data.get("status") != ConnectionStatus.CONNECTED:
            return
        if not self._has_connected:
            self._has_connected = True
            return

        # Events missed while disconnected are only in the store
        logger.info(f"Reconnected to trip {self.trip_id} chat, refreshing history")
        try:
            self.refresh()
        except PersistenceError as e:
            logger.error(f"History refresh after reconnect failed: {e}")
