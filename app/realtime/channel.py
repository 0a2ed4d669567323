import enum
from typing import Any, Callable, Dict, Optional


class ChannelStatus(str, enum.Enum):
    """Subscription statuses reported by a broadcast transport"""
    SUBSCRIBING = "SUBSCRIBING"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    CLOSED = "CLOSED"
    TIMED_OUT = "TIMED_OUT"


StatusCallback = Callable[..., None]
BroadcastListener = Callable[[Dict[str, Any]], None]


def channel_name(trip_id: str) -> str:
    """One chat channel per trip"""
    return f"trip-{trip_id}-chat"


class BroadcastChannel:
    """
    A named fan-out channel.

    Every envelope passed to send() is delivered to every subscriber of the same
    channel name, including the sender when self_echo is set. Transports report
    subscription progress through the status callback given to subscribe() as
    status_callback(status, error=None).
    """

    def __init__(self, name: str, self_echo: bool = True):
        self.name = name
        self.self_echo = self_echo
        self._listener: Optional[BroadcastListener] = None
        self._status_callback: Optional[StatusCallback] = None

    def on_broadcast(self, listener: BroadcastListener) -> None:
        self._listener = listener

    def _deliver(self, envelope: Dict[str, Any]) -> None:
        if self._listener:
            self._listener(envelope)

    def _report(self, status: str, error: Optional[Exception] = None) -> None:
        if self._status_callback:
            self._status_callback(status, error)

    def subscribe(self, status_callback: StatusCallback) -> None:
        raise NotImplementedError

    def send(self, envelope: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError
