"""
CRM Bridge - XML Publisher
Fire-and-forget publishing of JSON documents as XML on a dedicated channel.

Used by the heartbeat producer and the control-room log publisher. Publish
failures are logged and reported as False; nothing is retried.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange
from aio_pika.exceptions import AMQPError

from ..core.errors import MalformedInputError, NotInitializedError
from ..core.events import EventConstants
from .broker import BrokerConnection
from .translator import json_to_xml

logger = logging.getLogger("crm_bridge.publisher")

PUBLISH_ERRORS = (AMQPError, OSError, asyncio.TimeoutError, NotInitializedError)


class XmlPublisher:
    """
    Owns one channel and one exchange. Publishes are serialized by a lock so
    concurrent callers never interleave on the channel.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        exchange_name: str,
        exchange_type: aio_pika.ExchangeType = aio_pika.ExchangeType.TOPIC,
        durable: bool = True,
    ):
        self.connection = connection
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.durable = durable
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._exchange is not None and self._channel is not None and not self._channel.is_closed

    async def open(self):
        """Open the channel and declare the exchange (idempotent)"""
        if self.is_open:
            return
        self._channel = await self.connection.open_channel()
        self._exchange = await self._channel.declare_exchange(
            self.exchange_name,
            self.exchange_type,
            durable=self.durable,
        )

    async def publish(self, routing_key: str, document: Dict[str, Any]) -> bool:
        """
        Render the document as XML and publish it.

        Returns:
            True if the broker accepted the publish, False if it was skipped
        """
        try:
            body = json_to_xml(document)
        except MalformedInputError as e:
            logger.error(f"Not publishing to {routing_key}: {e}")
            return False

        async with self._lock:
            try:
                if not self.is_open:
                    raise NotInitializedError(f"publisher for '{self.exchange_name}' is not open")
                await self._exchange.publish(
                    aio_pika.Message(body=body, content_type=EventConstants.CONTENT_TYPE_XML),
                    routing_key=routing_key,
                )
            except PUBLISH_ERRORS as e:
                logger.error(f"Publish to {self.exchange_name}/{routing_key} failed: {e}")
                return False

        logger.debug(f"Sent '{routing_key}' to {self.exchange_name}")
        return True

    async def close(self):
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
        self._exchange = None
