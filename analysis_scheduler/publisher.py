"""
Publishes execution triggers to the dispatcher's AMQP queue.

The queue is declared durable on every publish (declaration is idempotent)
and messages are sent as persistent JSON. The broker connection is opened
lazily and reused across ticks; a failed publish drops it so the next
publish reconnects.
"""

import logging
from typing import Optional

from kombu import Connection, Exchange, Queue
from kombu.exceptions import KombuError

from analysis_scheduler.config import AmqpConfig
from analysis_scheduler.errors import DispatchError
from analysis_scheduler.models import ExecutionTrigger

logger = logging.getLogger(__name__)

# Publish through the AMQP default exchange, routed by queue name
DEFAULT_EXCHANGE = Exchange('')


class DispatchPublisher:
    """Sends ExecutionTrigger messages to a durable queue"""

    def __init__(self, config: Optional[AmqpConfig] = None, url: Optional[str] = None):
        """
        Initialize the publisher.

        Args:
            config: Broker and queue settings
            url: Broker URL overriding the one built from config
                (e.g. ``memory://`` in tests)
        """
        self.config = config or AmqpConfig()
        self.url = url or self.config.url
        self.queue_name = self.config.queue
        self.queue = Queue(
            self.queue_name,
            DEFAULT_EXCHANGE,
            routing_key=self.queue_name,
            durable=True,
        )
        self.connection: Optional[Connection] = None

    def _new_connection(self) -> Connection:
        # Without socket timeouts a broker that stops answering after the
        # handshake blocks the tick forever
        return Connection(
            self.url,
            connect_timeout=self.config.connect_timeout,
            transport_options={
                'read_timeout': self.config.io_timeout,
                'write_timeout': self.config.io_timeout,
            },
        )

    def _connect(self) -> Connection:
        if self.connection is None:
            self.connection = self._new_connection()
        self.connection.ensure_connection(max_retries=1, interval_start=0)
        return self.connection

    def publish(self, message: ExecutionTrigger, message_id: Optional[str] = None):
        """
        Publish a trigger message.

        Args:
            message: The trigger to send
            message_id: Optional AMQP message id (the idempotency key of
                the due occurrence)

        Raises:
            DispatchError: If the broker is unreachable or rejects the publish
        """
        try:
            connection = self._connect()
            errors = (KombuError, OSError) + connection.connection_errors + connection.channel_errors
        except (KombuError, OSError) as e:
            self._reset()
            raise DispatchError(f"Failed to connect to broker: {e}") from e

        properties = {}
        if message_id:
            properties['message_id'] = message_id

        try:
            # The json serializer sets content-type application/json
            producer = connection.Producer(serializer='json')
            producer.publish(
                message.to_message(),
                exchange=DEFAULT_EXCHANGE,
                routing_key=self.queue_name,
                declare=[self.queue],
                delivery_mode=2,
                retry=False,
                **properties
            )
        except errors as e:
            self._reset()
            raise DispatchError(f"Failed to publish to queue '{self.queue_name}': {e}") from e

        logger.debug(f"Published trigger for execution {message.analysis_id} to '{self.queue_name}'")

    def _reset(self):
        if self.connection is not None:
            try:
                self.connection.release()
            except (KombuError, OSError) as e:
                logger.debug(f"Ignoring error while closing broker connection: {e}")
            self.connection = None

    def close(self):
        self._reset()
