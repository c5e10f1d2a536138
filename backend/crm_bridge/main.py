"""
CRM Bridge - Main Application
Wires the broker, the CRM gateways, the consumer runtimes and the heartbeat,
and runs until SIGINT/SIGTERM.

Usage:
    crm-bridge [--env-file .env] [--log-level DEBUG] [--no-heartbeat]
"""
import argparse
import asyncio
import logging
import signal
import sys
from typing import Dict, List, Optional

from pydantic import ValidationError

from .config import Settings
from .core.errors import BridgeError, ConfigurationError
from .core.events import EventConstants
from .core.metrics import start_metrics_server
from .services.broker import BrokerConnection
from .services.cdc_listener import CdcListener, ContactChangeHandler
from .services.consumer import ConsumerRuntime, build_entity_runtimes
from .services.crm_gateway import CrmGateway
from .services.heartbeat import HeartbeatProducer
from .services.log_publisher import ControlRoomLogPublisher
from .services.publisher import XmlPublisher
from .services.salesforce_client import SalesforceClient

logger = logging.getLogger("crm_bridge")


class BridgeService:
    """
    Master orchestrator.

    Coordinates:
    - Broker connection (one, shared)
    - Consumer runtimes (three per entity kind, one channel each)
    - Heartbeat producer (APScheduler)
    - Control-room log publisher
    - Salesforce CDC listener (optional)
    """

    def __init__(
        self,
        settings: Settings,
        crm_client: Optional[SalesforceClient] = None,
        heartbeat_enabled: Optional[bool] = None,
    ):
        self.settings = settings
        self.crm_client = crm_client or SalesforceClient(settings)
        self.heartbeat_enabled = (
            settings.HEARTBEAT_ENABLED if heartbeat_enabled is None else heartbeat_enabled
        )

        self.connection: Optional[BrokerConnection] = None
        self.gateways: Dict[str, CrmGateway] = {}
        self.runtimes: List[ConsumerRuntime] = []
        self.heartbeat: Optional[HeartbeatProducer] = None
        self.log_publisher: Optional[ControlRoomLogPublisher] = None
        self.cdc_publisher: Optional[XmlPublisher] = None
        self.cdc_listener: Optional[CdcListener] = None
        self._running = False

    async def start(self):
        """Start all components. Broker failures here are fatal."""
        logger.info("=" * 60)
        logger.info(f"Starting {self.settings.SERVICE_NAME} v{self.settings.SERVICE_VERSION}")
        logger.info("=" * 60)

        self.connection = await BrokerConnection.connect(self.settings)
        await self.crm_client.start()

        self.log_publisher = ControlRoomLogPublisher(self.connection, self.settings)
        await self.log_publisher.open()
        on_failure = self.log_publisher.report_failure if self.log_publisher.enabled else None

        for entity in EventConstants.ENTITIES:
            gateway = CrmGateway(entity, self.crm_client.sobject(entity), settings=self.settings)
            self.gateways[entity] = gateway
            self.runtimes.extend(
                build_entity_runtimes(
                    self.connection,
                    self.settings,
                    entity,
                    gateway.execute,
                    on_failure=on_failure,
                )
            )

        for runtime in self.runtimes:
            await runtime.start()

        if self.heartbeat_enabled:
            self.heartbeat = HeartbeatProducer(self.connection, self.settings)
            await self.heartbeat.start()

        if self.settings.CDC_ENABLED:
            await self._start_cdc()

        if self.settings.METRICS_PORT:
            start_metrics_server(self.settings.METRICS_PORT)

        self._running = True
        logger.info(
            f"Running: {len(self.runtimes)} consumers, "
            f"heartbeat={'on' if self.heartbeat else 'off'}, cdc={'on' if self.cdc_listener else 'off'}"
        )

    async def _start_cdc(self):
        """Republish Salesforce Contact changes on the user exchange"""
        self.cdc_publisher = XmlPublisher(
            self.connection,
            self.settings.USER_EXCHANGE,
            durable=self.settings.ENTITY_EXCHANGE_DURABLE,
        )
        await self.cdc_publisher.open()
        handler = ContactChangeHandler(
            self.crm_client,
            self.cdc_publisher,
            self.settings,
            report=self.log_publisher.send if self.log_publisher.enabled else None,
        )
        self.cdc_listener = CdcListener(self.crm_client, handler, self.settings)
        await self.cdc_listener.start()

    async def stop(self):
        """Coordinated teardown: CDC, heartbeat, consumers, publishers, CRM client, connection"""
        self._running = False

        if self.cdc_listener is not None:
            await self.cdc_listener.stop()
        if self.cdc_publisher is not None:
            await self.cdc_publisher.close()

        if self.heartbeat is not None:
            await self.heartbeat.stop()

        for runtime in self.runtimes:
            await runtime.close()

        if self.log_publisher is not None:
            await self.log_publisher.close()

        await self.crm_client.close()

        if self.connection is not None:
            await self.connection.close()

        logger.info("CRM bridge stopped")

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "broker": self.connection.state.value if self.connection else "new",
            "consumers": {r.queue_name: r.state.value for r in self.runtimes},
            "circuits": [g.breaker.to_dict() for g in self.gateways.values()],
            "heartbeats_sent": self.heartbeat.sent if self.heartbeat else 0,
            "cdc_events_received": self.cdc_listener.received if self.cdc_listener else 0,
        }


# =============================================================================
# ENTRY POINT
# =============================================================================

def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def run(service: BridgeService):
    """Start the service and block until a shutdown signal arrives"""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await service.start()
        logger.info("CRM bridge running, press Ctrl+C to stop")
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await service.stop()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="crm-bridge",
        description="Consume CRM entity events from RabbitMQ and apply them to Salesforce",
    )
    parser.add_argument("--env-file", default=".env", help="dotenv file with RABBITMQ_* / SALESFORCE_* settings")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    parser.add_argument("--no-heartbeat", action="store_true", help="do not publish heartbeats")
    return parser.parse_args(argv)


def load_settings(env_file: Optional[str]) -> Settings:
    """Read settings, turning validation errors into ConfigurationError"""
    try:
        return Settings(_env_file=env_file)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"invalid settings: {problems}") from e


def cli(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args.env_file)
    except ConfigurationError as e:
        configure_logging(args.log_level or "INFO")
        logger.critical(f"CRM bridge failed to start: {e}")
        return 1
    configure_logging(args.log_level or settings.LOG_LEVEL)

    service = BridgeService(settings, heartbeat_enabled=False if args.no_heartbeat else None)
    try:
        asyncio.run(run(service))
    except BridgeError as e:
        logger.critical(f"CRM bridge failed to start: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(cli())
