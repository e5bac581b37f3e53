# dashcore/infra/servicebus_consumer.py
"""
Cross-process change relay over Azure Service Bus.

Writers publish a small change message after every store write;
every process runs a consumer that wakes its local subscriptions for the
path named in the message. Delivery is at-least-once, so subscription
handlers must be idempotent (they are: they receive full snapshots).
"""
import asyncio
import logging
from typing import Optional

from azure.servicebus import ServiceBusMessage, TransportType
from azure.servicebus.aio import ServiceBusClient

from dashcore.infra.store import StoreAdapter
from dashcore.models.change_message import ChangeMessage

logger = logging.getLogger(__name__)


class ServiceBusChangePublisher:
    def __init__(self, connection_string: str, queue_name: str):
        self._conn_str = connection_string
        self._queue_name = queue_name
        self._client: Optional[ServiceBusClient] = None
        self._sender = None

    async def open(self):
        # AMQP over WebSocket (443) so it works behind App Service
        self._client = ServiceBusClient.from_connection_string(
            self._conn_str,
            transport_type=TransportType.AmqpOverWebsocket,
        )
        self._sender = self._client.get_queue_sender(queue_name=self._queue_name)

    async def publish(self, message: ChangeMessage):
        if self._sender is None:
            return
        await self._sender.send_messages(ServiceBusMessage(message.model_dump_json()))

    async def close(self):
        if self._sender is not None:
            await self._sender.close()
            self._sender = None
        if self._client is not None:
            await self._client.close()
            self._client = None


async def consume_changes(
    store: StoreAdapter,
    connection_string: Optional[str],
    queue_name: str,
    backoff: float = 5,
    max_backoff: float = 60,
):
    """
    Reads change messages and wakes local subscriptions.
    Completes a message only once handled; reconnects with backoff.
    """
    if not connection_string:
        logger.warning("AZURE_SERVICE_BUS_CONNECTION_STRING not set, change relay disabled")
        return

    delay = backoff
    while True:
        try:
            logger.info("Connecting to Service Bus queue %s", queue_name)
            async with ServiceBusClient.from_connection_string(
                connection_string,
                transport_type=TransportType.AmqpOverWebsocket,
            ) as sb_client:
                receiver = sb_client.get_queue_receiver(queue_name=queue_name, max_wait_time=20)
                async with receiver:
                    logger.info("Listening on queue %s", queue_name)
                    delay = backoff
                    while True:
                        messages = await receiver.receive_messages(max_message_count=10, max_wait_time=10)
                        if not messages:
                            await asyncio.sleep(0.5)
                            continue
                        for msg in messages:
                            try:
                                body = b"".join(part for part in msg.body)
                                change = ChangeMessage.model_validate_json(body)
                            except ValueError as e:
                                logger.error("Dropping malformed change message: %s", e)
                                await receiver.dead_letter_message(msg, reason="malformed")
                                continue
                            store.notify_change(change.path)
                            await receiver.complete_message(msg)

            await asyncio.sleep(1)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Service Bus connection error, retrying in %ss: %s", delay, e)
            await asyncio.sleep(delay)
            delay = min(max_backoff, delay * 2)
