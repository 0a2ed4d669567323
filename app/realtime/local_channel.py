import copy
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List

from app.realtime.channel import BroadcastChannel, ChannelStatus
from app.services.exceptions import ChannelError

logger = logging.getLogger(__name__)


class LocalBroker:
    """
    In-process fan-out hub.

    Channels created from the same broker with the same name share one room.
    Delivery is synchronous on the sender's thread. Used for single-process
    deployments and tests.
    """

    def __init__(self):
        self._rooms: Dict[str, List["LocalChannel"]] = defaultdict(list)
        self._lock = threading.RLock()
        self.available = True

    def channel(self, name: str, self_echo: bool = True) -> "LocalChannel":
        return LocalChannel(self, name, self_echo)

    def _join(self, channel: "LocalChannel") -> None:
        with self._lock:
            if channel not in self._rooms[channel.name]:
                self._rooms[channel.name].append(channel)

    def _leave(self, channel: "LocalChannel") -> None:
        with self._lock:
            members = self._rooms.get(channel.name, [])
            if channel in members:
                members.remove(channel)

    def publish(self, sender: "LocalChannel", envelope: Dict[str, Any]) -> None:
        with self._lock:
            members = list(self._rooms.get(sender.name, []))

        for member in members:
            if member is sender and not member.self_echo:
                continue
            member._deliver(copy.deepcopy(envelope))

    def subscriber_count(self, name: str) -> int:
        with self._lock:
            return len(self._rooms.get(name, []))

    def drop(self, name: str, status: ChannelStatus = ChannelStatus.CLOSED) -> None:
        """Cut every subscriber of a room, as a lost server connection would"""
        with self._lock:
            members = self._rooms.pop(name, [])
        logger.info(f"Dropping {len(members)} subscribers from {name}")
        for member in members:
            member._lost(status)


class LocalChannel(BroadcastChannel):

    def __init__(self, broker: LocalBroker, name: str, self_echo: bool = True):
        super().__init__(name, self_echo)
        self.broker = broker
        self.joined = False

    def subscribe(self, status_callback) -> None:
        self._status_callback = status_callback
        self._report(ChannelStatus.SUBSCRIBING)
        if not self.broker.available:
            self._report(ChannelStatus.CHANNEL_ERROR, ChannelError("Broker unavailable"))
            return
        self.broker._join(self)
        self.joined = True
        self._report(ChannelStatus.SUBSCRIBED)

    def send(self, envelope: Dict[str, Any]) -> None:
        if not self.joined:
            raise ChannelError(f"Channel {self.name} is not subscribed")
        self.broker.publish(self, envelope)

    def close(self) -> None:
        self.broker._leave(self)
        self.joined = False
        self._status_callback = None

    def _lost(self, status: ChannelStatus) -> None:
        self.joined = False
        self._report(status)


# Shared broker for single-process deployments (REALTIME_TRANSPORT=local)
local_broker = LocalBroker()
