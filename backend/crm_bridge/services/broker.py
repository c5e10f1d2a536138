"""
CRM Bridge - Broker Connection Manager
One long-lived RabbitMQ connection shared by every consumer and producer.

Startup:
- configuration is validated first; gaps fail immediately with ConfigurationError
- connect + channel + exchange declare are retried a fixed number of times
  with a fixed delay between attempts
- once the retries are spent the manager stays FAILED until the process restarts

Each caller gets its own channel from open_channel(); channels are never shared.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.exceptions import AMQPError

from ..config import Settings
from ..core.errors import BrokerConnectionError, ConfigurationError, NotInitializedError

logger = logging.getLogger("crm_bridge.broker")

# Errors worth another connection attempt
TRANSIENT_ERRORS = (AMQPError, OSError, asyncio.TimeoutError)


class ConnectionState(str, Enum):
    NEW = "new"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class BrokerConnection:
    """
    Explicit connection value, built once at startup with connect() and
    passed to everything that needs a channel.
    """

    def __init__(
        self,
        settings: Settings,
        connect_fn: Callable[..., Awaitable[AbstractRobustConnection]] = aio_pika.connect_robust,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self._connect_fn = connect_fn
        self._sleep = sleep
        self._connection: Optional[AbstractRobustConnection] = None
        self.state = ConnectionState.NEW
        self.attempts = 0

    @classmethod
    async def connect(cls, settings: Settings, **kwargs) -> "BrokerConnection":
        """
        Build and open a connection.

        Raises:
            ConfigurationError: host/port/username/password/exchange incomplete
            BrokerConnectionError: every attempt failed
        """
        manager = cls(settings, **kwargs)
        await manager.open()
        return manager

    @property
    def is_connected(self) -> bool:
        return (
            self.state == ConnectionState.CONNECTED
            and self._connection is not None
            and not self._connection.is_closed
        )

    async def open(self):
        """Run the bounded retry loop"""
        if self.state != ConnectionState.NEW:
            raise NotInitializedError(f"broker connection already {self.state.value}")

        missing = self.settings.missing_broker_settings()
        if missing:
            raise ConfigurationError(f"RabbitMQ settings missing: {', '.join(missing)}")

        retries = max(1, self.settings.RABBITMQ_CONNECT_RETRIES)
        delay = self.settings.RABBITMQ_RETRY_DELAY
        last_error: Optional[BaseException] = None

        for attempt in range(1, retries + 1):
            self.attempts = attempt
            try:
                await self._bootstrap()
                self.state = ConnectionState.CONNECTED
                logger.info(
                    f"Connected to RabbitMQ {self.settings.RABBITMQ_HOST}:{self.settings.RABBITMQ_PORT} "
                    f"(attempt {attempt}/{retries})"
                )
                return
            except TRANSIENT_ERRORS as e:
                last_error = e
                logger.error(f"RabbitMQ init failed (attempt {attempt}/{retries}): {e}")
                await self._discard()
                if attempt < retries:
                    await self._sleep(delay)

        self.state = ConnectionState.FAILED
        logger.critical(f"Could not initialize RabbitMQ after {retries} attempts")
        raise BrokerConnectionError(
            f"RabbitMQ unreachable after {retries} attempts: {last_error}",
            attempts=retries,
        ) from last_error

    async def _bootstrap(self):
        s = self.settings
        self._connection = await self._connect_fn(
            host=s.RABBITMQ_HOST,
            port=s.RABBITMQ_PORT,
            login=s.RABBITMQ_USERNAME,
            password=s.RABBITMQ_PASSWORD,
            virtualhost=s.RABBITMQ_VHOST,
        )
        channel = await self._connection.channel()
        try:
            await channel.declare_exchange(
                s.RABBITMQ_EXCHANGE,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
            for exchange_name in s.entity_exchanges.values():
                await channel.declare_exchange(
                    exchange_name,
                    aio_pika.ExchangeType.TOPIC,
                    durable=s.ENTITY_EXCHANGE_DURABLE,
                )
        finally:
            await channel.close()

    async def _discard(self):
        if self._connection is not None and not self._connection.is_closed:
            try:
                await self._connection.close()
            except TRANSIENT_ERRORS as e:
                logger.debug(f"Ignoring close error on failed connection: {e}")
        self._connection = None

    async def open_channel(self) -> AbstractChannel:
        """
        Open a channel for exactly one consumer or producer.

        Raises:
            NotInitializedError: connection never came up, failed, or was closed
        """
        if not self.is_connected:
            raise NotInitializedError(f"RabbitMQ connection is {self.state.value}")
        return await self._connection.channel()

    async def close(self):
        """Close the connection. Safe to call more than once."""
        if self.state == ConnectionState.CLOSED:
            return
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
            logger.info("RabbitMQ connection closed")
        self._connection = None
        if self.state != ConnectionState.FAILED:
            self.state = ConnectionState.CLOSED
