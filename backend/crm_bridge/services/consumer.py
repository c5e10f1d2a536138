"""
CRM Bridge - Consumer Runtime
One runtime per (entity, operation) queue, each on its own channel.

Lifecycle:
    UNBOUND -> BOUND -> CONSUMING -> (ACKING | REQUEUING) -> CONSUMING ... -> CLOSED

Per delivery the runtime runs translate -> dispatch -> CRM call and inspects
the returned values:
- success: ack this one delivery
- any failure: nack with requeue=True (or reject once MAX_REDELIVERIES is hit)

Manual acknowledgment only, so delivery is at-least-once.

A failed delivery is held for REQUEUE_DELAY seconds (or until the CRM circuit
cools down) before the nack. With prefetch 1 that pauses the queue instead of
spinning the same message through the broker.
"""
import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError
from opentelemetry import trace

from ..config import Settings
from ..core.errors import BridgeError, NotInitializedError
from ..core.events import RoutingKey, crm_routing_keys, queue_name_for
from ..core.metrics import record_delivery
from .broker import BrokerConnection
from .crm_gateway import Outcome
from .dispatcher import Intent, dispatch

logger = logging.getLogger("crm_bridge.consumer")
tracer = trace.get_tracer("crm_bridge.consumer", "1.0.0")

IntentHandler = Callable[[Intent], Awaitable[Outcome]]
FailureListener = Callable[[str, str, str], Awaitable[None]]

DELIVERY_COUNT_HEADER = "x-delivery-count"
QUORUM_QUEUE_ARGUMENTS = {"x-queue-type": "quorum"}
CIRCUIT_OPEN = "CircuitOpen"


class ConsumerState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CONSUMING = "consuming"
    ACKING = "acking"
    REQUEUING = "requeuing"
    CLOSED = "closed"


class Decision(str, Enum):
    ACK = "ack"
    REQUEUE = "requeue"
    REJECT = "reject"


@dataclass
class ProcessingResult:
    """What happened to one payload, before the broker is told"""
    ok: bool
    error: Optional[BridgeError] = None
    outcome: Optional[Outcome] = None

    @property
    def error_name(self) -> Optional[str]:
        return type(self.error).__name__ if self.error else None

    @property
    def circuit_open(self) -> bool:
        return self.outcome is not None and self.outcome.circuit_open

    @property
    def retry_after(self) -> float:
        return self.outcome.retry_after if self.outcome is not None else 0.0


class ConsumerRuntime:
    """
    Generic consumer for one queue, parameterized by the entity kind's
    intent handler (normally CrmGateway.execute).

    With max_redeliveries > 0 the queue is declared as a durable quorum queue,
    the queue type on which RabbitMQ stamps x-delivery-count.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        exchange_name: str,
        routing_key: str,
        handler: IntentHandler,
        prefetch_count: int = 1,
        max_redeliveries: int = 0,
        on_failure: Optional[FailureListener] = None,
        requeue_delay: float = 0.0,
        failure_report_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        key = RoutingKey.parse(routing_key)
        self.connection = connection
        self.exchange_name = exchange_name
        self.routing_key = routing_key
        self.entity = key.entity
        self.operation = key.operation
        self.queue_name = queue_name_for(routing_key)
        self.handler = handler
        self.prefetch_count = prefetch_count
        self.max_redeliveries = max_redeliveries
        self.on_failure = on_failure
        self.requeue_delay = requeue_delay
        self.failure_report_interval = failure_report_interval
        self._clock = clock
        self._sleep = sleep

        self.state = ConsumerState.UNBOUND
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None
        self._last_report: Dict[str, float] = {}
        self._suppressed: Counter = Counter()

    def __repr__(self) -> str:
        return f"<ConsumerRuntime {self.queue_name} {self.state.value}>"

    @property
    def uses_quorum_queue(self) -> bool:
        return self.max_redeliveries > 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def bind(self):
        """Declare the queue and bind it to the exchange. Re-declaring is idempotent."""
        if self.state == ConsumerState.CLOSED:
            raise NotInitializedError(f"{self.queue_name} consumer is closed")
        if self.state != ConsumerState.UNBOUND:
            return

        self._channel = await self.connection.open_channel()
        await self._channel.set_qos(prefetch_count=self.prefetch_count)
        if self.uses_quorum_queue:
            # quorum queues are always durable and never exclusive
            self._queue = await self._channel.declare_queue(
                self.queue_name,
                durable=True,
                arguments=dict(QUORUM_QUEUE_ARGUMENTS),
            )
        else:
            self._queue = await self._channel.declare_queue(
                self.queue_name,
                durable=False,
                exclusive=False,
                auto_delete=False,
            )
        await self._queue.bind(self.exchange_name, routing_key=self.routing_key)
        self.state = ConsumerState.BOUND
        logger.info(f"Bound {self.queue_name} to {self.exchange_name} ({self.routing_key})")

    async def start(self):
        """Register as a manual-ack consumer"""
        if self.state == ConsumerState.UNBOUND:
            await self.bind()
        if self.state != ConsumerState.BOUND:
            return

        self._consumer_tag = await self._queue.consume(
            self.on_message,
            no_ack=False,
            consumer_tag=f"crm_bridge_{self.queue_name}",
        )
        self.state = ConsumerState.CONSUMING
        logger.info(f"Consuming {self.queue_name}")

    async def close(self):
        """
        Stop taking deliveries and close the channel.

        Unacked in-flight deliveries go back to the broker; the runtime does not wait.
        """
        if self.state == ConsumerState.CLOSED:
            return

        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except AMQPError as e:
                logger.warning(f"Cancel failed for {self.queue_name}: {e}")

        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()

        self._consumer_tag = None
        self._queue = None
        self._channel = None
        self.state = ConsumerState.CLOSED
        logger.info(f"Closed consumer {self.queue_name}")

    # -------------------------------------------------------------------------
    # Delivery handling
    # -------------------------------------------------------------------------

    async def process(self, body: bytes) -> ProcessingResult:
        """Translate, dispatch and call the CRM for one payload"""
        dispatched = dispatch(self.routing_key, body)
        if not dispatched.ok:
            return ProcessingResult(ok=False, error=dispatched.error)

        outcome = await self.handler(dispatched.intent)
        if not outcome.ok:
            return ProcessingResult(ok=False, error=outcome.error, outcome=outcome)
        return ProcessingResult(ok=True, outcome=outcome)

    async def on_message(self, message: AbstractIncomingMessage):
        """
        Broker callback.

        message.process() is only a guard: if anything below raises, the
        delivery is rejected with requeue instead of being left dangling.
        """
        async with message.process(requeue=True, ignore_processed=True):
            with tracer.start_as_current_span("crm_bridge.handle_delivery") as span:
                span.set_attribute("messaging.destination", self.queue_name)
                span.set_attribute("messaging.rabbitmq.routing_key", self.routing_key)

                result = await self.process(message.body)
                decision = self.decide(result, message.headers)
                span.set_attribute("crm_bridge.decision", decision.value)

                await self._settle(message, decision, result)

    def decide(self, result: ProcessingResult, headers: Optional[Mapping[str, Any]] = None) -> Decision:
        if result.ok:
            return Decision.ACK
        if self.max_redeliveries > 0 and delivery_count(headers) >= self.max_redeliveries:
            return Decision.REJECT
        return Decision.REQUEUE

    def requeue_pause(self, result: ProcessingResult) -> float:
        """How long to hold a failed delivery before handing it back"""
        if result.circuit_open:
            return max(self.requeue_delay, result.retry_after)
        return self.requeue_delay

    async def _settle(self, message: AbstractIncomingMessage, decision: Decision, result: ProcessingResult):
        record_delivery(self.entity, self.operation, decision.value, result.error_name)

        if decision == Decision.ACK:
            self.state = ConsumerState.ACKING
            await message.ack()
            logger.info(f"[{self.routing_key}] processed, acked")
            self._back_to_consuming()
            return

        self.state = ConsumerState.REQUEUING
        await self._report(result)

        if decision == Decision.REJECT:
            await message.reject(requeue=False)
            logger.error(
                f"[{self.routing_key}] rejected after {delivery_count(message.headers)} deliveries: "
                f"{result.error}"
            )
            self._back_to_consuming()
            return

        pause = self.requeue_pause(result)
        if pause > 0:
            await self._sleep(pause)
            if self.state == ConsumerState.CLOSED:
                # channel is gone; the broker already took the delivery back
                return

        await message.nack(requeue=True)
        logger.warning(f"[{self.routing_key}] requeued: {result.error_name}: {result.error}")
        self._back_to_consuming()

    def _back_to_consuming(self):
        if self.state != ConsumerState.CLOSED:
            self.state = ConsumerState.CONSUMING

    async def _report(self, result: ProcessingResult):
        """
        Forward a failure to the listener, at most once per
        failure_report_interval for each kind of failure.
        """
        if self.on_failure is None:
            return

        kind = CIRCUIT_OPEN if result.circuit_open else (result.error_name or "Error")
        now = self._clock()
        last = self._last_report.get(kind)
        if last is not None and now - last < self.failure_report_interval:
            self._suppressed[kind] += 1
            return

        self._last_report[kind] = now
        detail = str(result.error)
        suppressed = self._suppressed.pop(kind, 0)
        if suppressed:
            detail = f"{detail} (+{suppressed} similar since last report)"
        await self.on_failure(self.routing_key, kind, detail)


def delivery_count(headers: Optional[Mapping[str, Any]]) -> int:
    """Previous deliveries as reported by the broker (quorum queues set x-delivery-count)"""
    if not headers:
        return 0
    try:
        return int(headers.get(DELIVERY_COUNT_HEADER, 0))
    except (TypeError, ValueError):
        return 0


def build_entity_runtimes(
    connection: BrokerConnection,
    settings: Settings,
    entity: str,
    handler: IntentHandler,
    on_failure: Optional[FailureListener] = None,
) -> List[ConsumerRuntime]:
    """One runtime per CRM operation of an entity kind, sharing its intent handler"""
    exchange_name = settings.entity_exchanges[entity]
    return [
        ConsumerRuntime(
            connection,
            exchange_name,
            routing_key,
            handler,
            prefetch_count=settings.CONSUMER_PREFETCH,
            max_redeliveries=settings.MAX_REDELIVERIES,
            on_failure=on_failure,
            requeue_delay=settings.REQUEUE_DELAY,
            failure_report_interval=settings.FAILURE_REPORT_INTERVAL,
        )
        for routing_key in crm_routing_keys(entity)
    ]
