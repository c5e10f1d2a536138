"""
CRM Bridge - Control-room log publisher
Forwards operational events as <Log> XML to the control-room log exchange
"""
import logging

import aio_pika

from ..config import Settings
from ..core.events import EventConstants
from ..schemas import LogEvent
from .broker import BrokerConnection
from .publisher import XmlPublisher

logger = logging.getLogger("crm_bridge.log_publisher")


class ControlRoomLogPublisher:
    """Direct, durable exchange; routing key controlroom.log.event"""

    def __init__(self, connection: BrokerConnection, settings: Settings):
        self.settings = settings
        self.publisher = XmlPublisher(
            connection,
            settings.LOG_EXCHANGE,
            exchange_type=aio_pika.ExchangeType.DIRECT,
            durable=True,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.settings.LOG_EXCHANGE)

    async def open(self):
        if self.enabled:
            await self.publisher.open()

    async def send(self, status: str, code: str, message: str) -> bool:
        if not self.enabled:
            return False
        event = LogEvent(
            service_name=self.settings.SERVICE_NAME,
            status=status,
            code=code,
            message=message,
        )
        return await self.publisher.publish(EventConstants.ROUTING_KEY_CONTROLROOM_LOG, event.to_document())

    async def report_failure(self, routing_key: str, error_name: str, detail: str):
        """FailureListener for the consumer runtimes"""
        await self.send("error", error_name, f"{routing_key}: {detail}")

    async def close(self):
        await self.publisher.close()
