import json
import logging
import threading
import uuid
from typing import Any, Dict, Optional

import pika
import pika.exceptions

from app.realtime.channel import BroadcastChannel, ChannelStatus
from app.realtime.config import RealtimeSettings, realtime_settings

logger = logging.getLogger(__name__)


class RabbitMQChannel(BroadcastChannel):
    """
    Broadcast channel backed by a RabbitMQ fanout exchange.

    Each subscriber binds its own exclusive queue to the trip exchange, so every
    published envelope reaches every subscriber including the publisher. When
    self_echo is off the consumer drops envelopes stamped with its own app_id.

    Consuming runs on a background thread with its own BlockingConnection;
    publishing uses a second connection guarded by a lock since pika
    connections are not thread-safe.
    """

    def __init__(self, name: str, self_echo: bool = True, settings: Optional[RealtimeSettings] = None):
        super().__init__(name, self_echo)
        self.settings = settings or realtime_settings
        self.exchange = f"{self.settings.exchange_prefix}.{name}"
        self.client_id = str(uuid.uuid4())

        self.consumer_connection: Optional[pika.BlockingConnection] = None
        self.consumer_channel = None
        self.consumer_thread: Optional[threading.Thread] = None

        self.publisher_connection: Optional[pika.BlockingConnection] = None
        self.publisher_channel = None
        self._publish_lock = threading.Lock()

        self._closing = False

    def _connection_parameters(self) -> pika.URLParameters:
        params = pika.URLParameters(self.settings.rabbitmq_url)
        params.heartbeat = self.settings.heartbeat_seconds
        params.socket_timeout = self.settings.connection_timeout_seconds
        params.blocked_connection_timeout = self.settings.connection_timeout_seconds
        return params

    def _declare_exchange(self, channel) -> None:
        channel.exchange_declare(exchange=self.exchange, exchange_type="fanout", auto_delete=True)

    def subscribe(self, status_callback) -> None:
        """Start consuming in a background thread; status arrives through the callback"""
        self._status_callback = status_callback
        self._closing = False
        self.consumer_thread = threading.Thread(
            target=self._run_consumer,
            daemon=True,
            name=f"Broadcast-{self.name}"
        )
        self.consumer_thread.start()

    def _run_consumer(self) -> None:
        subscribed = False
        self._report(ChannelStatus.SUBSCRIBING)
        try:
            self.consumer_connection = pika.BlockingConnection(self._connection_parameters())
            channel = self.consumer_connection.channel()
            self._declare_exchange(channel)

            result = channel.queue_declare(queue="", exclusive=True, auto_delete=True)
            queue_name = result.method.queue
            channel.queue_bind(exchange=self.exchange, queue=queue_name)
            channel.basic_consume(queue=queue_name, on_message_callback=self._on_message, auto_ack=True)
            self.consumer_channel = channel

            subscribed = True
            logger.info(f"Subscribed to {self.exchange} with queue {queue_name}")
            self._report(ChannelStatus.SUBSCRIBED)

            channel.start_consuming()

            if not self._closing:
                logger.warning(f"Consumer for {self.exchange} stopped unexpectedly")
                self._report(ChannelStatus.CLOSED)
        except pika.exceptions.AMQPChannelError as e:
            if not self._closing:
                logger.error(f"Channel error on {self.exchange}: {e}")
                self._report(ChannelStatus.CHANNEL_ERROR, e)
        except pika.exceptions.AMQPConnectionError as e:
            if not self._closing:
                if subscribed:
                    logger.warning(f"Connection to {self.exchange} lost: {e!r}")
                    self._report(ChannelStatus.CLOSED, e)
                else:
                    logger.error(f"Failed to connect consumer for {self.exchange}: {e!r}")
                    self._report(ChannelStatus.TIMED_OUT, e)
        except Exception as e:
            if not self._closing:
                logger.error(f"Unexpected error in consumer for {self.exchange}: {e}")
                self._report(ChannelStatus.CHANNEL_ERROR, e)
        finally:
            if self.consumer_connection and self.consumer_connection.is_open:
                try:
                    self.consumer_connection.close()
                except pika.exceptions.AMQPError as e:
                    logger.debug(f"Error closing consumer connection: {e!r}")
            self.consumer_channel = None
            logger.info(f"Consumer thread for {self.exchange} finished")

    def _on_message(self, channel, method, properties, body) -> None:
        if not self.self_echo and properties.app_id == self.client_id:
            return
        try:
            envelope = json.loads(body)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping undecodable broadcast on {self.exchange}: {e}")
            return
        self._deliver(envelope)

    def _ensure_publisher(self) -> None:
        if self.publisher_connection is None or self.publisher_connection.is_closed:
            self.publisher_connection = pika.BlockingConnection(self._connection_parameters())
            self.publisher_channel = self.publisher_connection.channel()
            self._declare_exchange(self.publisher_channel)
            logger.info(f"Publisher connected to {self.exchange}")

    def send(self, envelope: Dict[str, Any]) -> None:
        with self._publish_lock:
            self._ensure_publisher()
            self.publisher_channel.basic_publish(
                exchange=self.exchange,
                routing_key="",
                body=json.dumps(envelope),
                properties=pika.BasicProperties(
                    content_type="application/json",
                    app_id=self.client_id,
                    delivery_mode=1  # Transient, the store is the durable copy
                )
            )

    def close(self) -> None:
        self._closing = True
        self._status_callback = None

        connection = self.consumer_connection
        channel = self.consumer_channel
        if connection and connection.is_open and channel is not None:
            try:
                connection.add_callback_threadsafe(channel.stop_consuming)
            except pika.exceptions.AMQPError as e:
                logger.debug(f"Error stopping consumer: {e!r}")

        thread = self.consumer_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=5)
            if thread.is_alive():
                logger.warning(f"Consumer thread for {self.exchange} did not stop gracefully")

        with self._publish_lock:
            if self.publisher_connection and self.publisher_connection.is_open:
                try:
                    self.publisher_connection.close()
                except pika.exceptions.AMQPError as e:
                    logger.debug(f"Error closing publisher connection: {e!r}")
            self.publisher_connection = None
            self.publisher_channel = None

        logger.info(f"Broadcast channel {self.exchange} closed")


def rabbitmq_channel_factory(settings: Optional[RealtimeSettings] = None):
    """Channel factory for ConnectionManager"""
    def factory(name: str, self_echo: bool = True) -> RabbitMQChannel:
        return RabbitMQChannel(name, self_echo=self_echo, settings=settings)
    return factory
