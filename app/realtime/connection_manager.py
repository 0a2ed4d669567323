import enum
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from app.realtime.channel import BroadcastChannel, ChannelStatus, channel_name
from app.realtime.config import RealtimeSettings, realtime_settings
from app.realtime.local_channel import local_broker
from app.realtime.rabbitmq_channel import rabbitmq_channel_factory
from app.realtime.events import (
    BROADCAST,
    ROUTED_EVENTS,
    EventType,
    build_envelope,
    normalize_event,
)
from app.schemas.chat_schema import TypingEvent
from app.services.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[str, bool], BroadcastChannel]
EventHandler = Callable[[Dict[str, Any]], None]


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    FAILED = "failed"  # Gave up after max reconnect attempts


class ConnectionManager:
    """
    Owns one trip chat channel subscription.

    Status moves disconnected -> connecting -> connected, and back to error or
    disconnected when the transport reports a failure. Every non-connected state
    schedules a reconnect with exponential backoff until max_reconnect_attempts
    is reached, after which the manager sits in failed until reconnect() is
    called. Handlers are always invoked outside the internal lock and their
    exceptions are logged, never raised into the channel machinery.
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        settings: Optional[RealtimeSettings] = None,
        timer_factory=threading.Timer
    ):
        self.channel_factory = channel_factory
        self.settings = settings or realtime_settings
        self.timer_factory = timer_factory

        self.trip_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.channel: Optional[BroadcastChannel] = None
        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0

        self._lock = threading.RLock()
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._typing_timers: Dict[str, Any] = {}
        self._reconnect_timer = None
        self._closed = False

    def initialize(self, trip_id: str, user_id: Optional[str]) -> None:
        """Open the trip channel. Returns once subscribe has been issued."""
        if not user_id:
            raise AuthenticationError("User not authenticated")

        with self._lock:
            self.trip_id = trip_id
            self.user_id = user_id
            self.reconnect_attempts = 0
            self._closed = False

        logger.info(f"Initializing chat channel for trip {trip_id} as user {user_id}")
        self._connect()

    def _connect(self) -> None:
        with self._lock:
            previous = self.channel
            self.channel = None
        if previous is not None:
            previous.close()

        self._set_status(ConnectionStatus.CONNECTING)
        try:
            channel = self.channel_factory(channel_name(self.trip_id), True)
        except Exception as e:
            logger.error(f"Could not create channel for trip {self.trip_id}: {e}")
            self._set_status(ConnectionStatus.ERROR)
            self.schedule_reconnect()
            return

        with self._lock:
            closed = self._closed
            if not closed:
                self.channel = channel
        if closed:
            channel.close()
            return

        channel.on_broadcast(lambda envelope: self._on_broadcast(channel, envelope))
        channel.subscribe(lambda status, error=None: self._on_channel_status(channel, status, error))

    def _on_channel_status(self, channel: BroadcastChannel, status: ChannelStatus, error: Optional[Exception] = None) -> None:
        if channel is not self.channel:
            logger.debug(f"Ignoring {status} from a replaced channel")
            return

        if status == ChannelStatus.SUBSCRIBED:
            with self._lock:
                self.reconnect_attempts = 0
            logger.info(f"Chat channel for trip {self.trip_id} connected")
            self._set_status(ConnectionStatus.CONNECTED)
            self._health_check()
        elif status == ChannelStatus.SUBSCRIBING:
            self._set_status(ConnectionStatus.CONNECTING)
        elif status == ChannelStatus.CHANNEL_ERROR:
            logger.error(f"Chat channel error for trip {self.trip_id}: {error}")
            self._set_status(ConnectionStatus.ERROR)
            self.schedule_reconnect()
        elif status in (ChannelStatus.CLOSED, ChannelStatus.TIMED_OUT):
            logger.warning(f"Chat channel for trip {self.trip_id} {status.value.lower()}, attempting reconnection")
            self._set_status(ConnectionStatus.DISCONNECTED)
            self.schedule_reconnect()
        else:
            logger.warning(f"Unknown channel status {status}")

    def schedule_reconnect(self) -> None:
        """Schedule one reconnect attempt after base_delay * 2^(attempt - 1)"""
        with self._lock:
            if self._closed or self.trip_id is None:
                return
            if self._reconnect_timer is not None:
                return
            gave_up = self.reconnect_attempts >= self.settings.max_reconnect_attempts
            if not gave_up:
                self.reconnect_attempts += 1
                delay = self.settings.reconnect_base_delay_ms * (2 ** (self.reconnect_attempts - 1)) / 1000
                timer = self.timer_factory(delay, self._attempt_reconnect)
                timer.daemon = True
                self._reconnect_timer = timer

        if gave_up:
            logger.error(f"Max reconnection attempts reached for trip {self.trip_id}, giving up")
            self._set_status(ConnectionStatus.FAILED)
            return

        logger.info(f"Scheduling reconnection attempt {self.reconnect_attempts} in {delay:.1f}s")
        timer.start()

    def _attempt_reconnect(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._closed:
                return
            should_connect = self.status in (ConnectionStatus.DISCONNECTED, ConnectionStatus.ERROR)
        if should_connect:
            logger.info(f"Attempting reconnection for trip {self.trip_id}")
            self._connect()

    def reconnect(self) -> None:
        """Manual reconnect: resets the attempt counter, keeps registered handlers"""
        with self._lock:
            if self.trip_id is None or self.user_id is None:
                logger.warning("reconnect() called before initialize()")
                return
            if self._reconnect_timer is not None:
                self._reconnect_timer.cancel()
                self._reconnect_timer = None
            self._closed = False
            self.reconnect_attempts = 0
        self._connect()

    def send(self, event: str, payload: Any) -> bool:
        """
        Publish an event on the trip channel.

        Returns False without raising when the channel is not connected or the
        transport rejects the send. Nothing is queued for later.
        """
        with self._lock:
            channel = self.channel
            connected = self.status == ConnectionStatus.CONNECTED
        if channel is None or not connected:
            logger.warning(f"Channel not connected ({self.status.value}), {event} not sent")
            return False

        try:
            channel.send(build_envelope(event, payload, self.user_id))
        except Exception as e:
            logger.error(f"Error sending {event} on trip {self.trip_id}: {e}")
            self._set_status(ConnectionStatus.ERROR)
            self.schedule_reconnect()
            return False
        return True

    def _on_broadcast(self, channel: BroadcastChannel, envelope: Any) -> None:
        if channel is not self.channel:
            return
        if not isinstance(envelope, dict) or envelope.get("type", BROADCAST) != BROADCAST:
            logger.warning(f"Dropping non-broadcast frame: {envelope!r}")
            return

        event = envelope.get("event")
        payload = envelope.get("payload")

        if event == EventType.PING:
            logger.debug(f"Ping received on trip {self.trip_id}")
        elif event == EventType.TYPING:
            self._handle_typing(payload)
        elif event in ROUTED_EVENTS:
            self._notify(event, payload)
        else:
            logger.debug(f"Ignoring unknown event {event}")

    def _handle_typing(self, payload: Any) -> None:
        typing = normalize_event(payload, TypingEvent, require_identity=False)
        if typing is None or typing.user_id == self.user_id:
            return

        with self._lock:
            timer = self._typing_timers.pop(typing.user_id, None)
            if timer is not None:
                timer.cancel()
            if typing.is_typing:
                timer = self.timer_factory(
                    self.settings.typing_timeout_seconds,
                    self._expire_typing,
                    args=(typing.user_id,)
                )
                timer.daemon = True
                self._typing_timers[typing.user_id] = timer
                timer.start()

        self._notify(EventType.TYPING, {"user_id": typing.user_id, "is_typing": typing.is_typing})

    def _expire_typing(self, user_id: str) -> None:
        with self._lock:
            if self._typing_timers.pop(user_id, None) is None:
                return
        logger.debug(f"Typing indicator for {user_id} expired")
        self._notify(EventType.TYPING, {"user_id": user_id, "is_typing": False})

    def get_typing_users(self) -> List[str]:
        with self._lock:
            return list(self._typing_timers)

    def on_event(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers[event].append(handler)

    def off_event(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def _notify(self, event: str, data: Dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(data)
            except Exception as e:
                logger.error(f"Error in {event} handler: {e}", exc_info=True)

    def _set_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            if self.status == status:
                return
            previous = self.status
            self.status = status
        logger.debug(f"Connection status {previous.value} -> {status.value}")
        self._notify(EventType.CONNECTION, {"status": status, "previous": previous})

    def get_status(self) -> ConnectionStatus:
        return self.status

    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def _health_check(self) -> None:
        """One liveness ping per successful connect"""
        if self.send(EventType.PING, {"user_id": self.user_id}):
            logger.info(f"Connection health check for trip {self.trip_id} - ping sent")

    def disconnect(self) -> None:
        """Close the channel and drop handlers, timers and typing state. Safe to call twice."""
        with self._lock:
            if self._closed and self.channel is None:
                return
            self._closed = True
            channel = self.channel
            self.channel = None
            if self._reconnect_timer is not None:
                self._reconnect_timer.cancel()
                self._reconnect_timer = None
            for timer in self._typing_timers.values():
                timer.cancel()
            self._typing_timers.clear()

        if channel is not None:
            channel.close()
        self._set_status(ConnectionStatus.DISCONNECTED)

        with self._lock:
            self._handlers.clear()
            self.reconnect_attempts = 0
        logger.info(f"Disconnected from trip {self.trip_id} chat")


def default_channel_factory(settings: Optional[RealtimeSettings] = None) -> ChannelFactory:
    """Pick the broadcast transport configured by REALTIME_TRANSPORT"""
    settings = settings or realtime_settings
    if settings.transport == "local":
        return local_broker.channel
    return rabbitmq_channel_factory(settings)
