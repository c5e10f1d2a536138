"""
HEARTBEAT PRODUCER
==================
Publishes a liveness record on monitoring.heartbeat.create at a fixed interval.

- APScheduler interval job, first run immediately, never overlapping itself
- own channel, independent of every consumer runtime
- fire-and-forget: a failed publish is logged and skipped
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import Settings
from ..core.events import EventConstants
from ..core.metrics import record_heartbeat
from ..schemas import Heartbeat, HeartbeatMetadata
from .broker import BrokerConnection
from .publisher import XmlPublisher

logger = logging.getLogger("crm_bridge.heartbeat")


class HeartbeatProducer:
    JOB_ID = "heartbeat"

    def __init__(
        self,
        connection: BrokerConnection,
        settings: Settings,
        interval: Optional[float] = None,
        publisher: Optional[XmlPublisher] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.settings = settings
        self.interval = interval if interval is not None else settings.HEARTBEAT_INTERVAL
        self.routing_key = EventConstants.ROUTING_KEY_HEARTBEAT
        self.publisher = publisher or XmlPublisher(connection, settings.RABBITMQ_EXCHANGE)
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.sent = 0

    def build(self) -> Heartbeat:
        """New heartbeat record, timestamped now"""
        s = self.settings
        return Heartbeat(
            service_name=s.SERVICE_NAME,
            status="OK",
            heartbeat_interval=max(1, round(self.interval)),
            metadata=HeartbeatMetadata(
                version=s.SERVICE_VERSION,
                host=s.SERVICE_HOST,
                environment=s.ENVIRONMENT,
            ),
        )

    async def beat(self) -> bool:
        """Build and publish one heartbeat"""
        heartbeat = self.build()
        published = await self.publisher.publish(self.routing_key, heartbeat.to_document())
        record_heartbeat("published" if published else "failed")
        if published:
            self.sent += 1
        else:
            logger.warning(f"Heartbeat {heartbeat.timestamp} skipped")
        return published

    async def start(self):
        await self.publisher.open()
        self.scheduler.add_job(
            self.beat,
            "interval",
            seconds=self.interval,
            id=self.JOB_ID,
            name="Monitoring heartbeat",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Heartbeat started: every {self.interval}s on {self.routing_key}")

    async def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.publisher.close()
        logger.info(f"Heartbeat stopped after {self.sent} beats")
