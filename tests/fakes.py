"""In-memory stand-ins for aio-pika objects and CRM entity clients."""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple


# ---------------------------------------------------------------------------
# aio-pika fakes
# ---------------------------------------------------------------------------

class FakeMessage:
    """Stands in for aio_pika.IncomingMessage."""

    def __init__(self, body: bytes, routing_key: str = "", headers: Optional[Dict[str, Any]] = None):
        self.body = body
        self.routing_key = routing_key
        self.headers = headers or {}
        self.acked = False
        self.nacks: List[bool] = []
        self.rejects: List[bool] = []

    @property
    def processed(self) -> bool:
        return self.acked or bool(self.nacks) or bool(self.rejects)

    @property
    def requeued(self) -> bool:
        return self.nacks == [True] or self.rejects == [True]

    async def ack(self, multiple: bool = False):
        assert not multiple
        self.acked = True

    async def nack(self, multiple: bool = False, requeue: bool = True):
        assert not multiple
        self.nacks.append(requeue)

    async def reject(self, requeue: bool = False):
        self.rejects.append(requeue)

    @asynccontextmanager
    async def process(self, requeue: bool = False, ignore_processed: bool = False, **kwargs):
        try:
            yield self
        except Exception:
            if not self.processed:
                await self.reject(requeue=requeue)
            raise
        else:
            if not ignore_processed and not self.processed:
                await self.ack()


class FakeExchange:
    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.published: List[Tuple[str, Any]] = []

    async def publish(self, message, routing_key: str):
        if self.fail:
            raise ConnectionResetError("broker went away")
        self.published.append((routing_key, message))


class FakeQueue:
    def __init__(self, name: str, **declare_kwargs):
        self.name = name
        self.declare_kwargs = declare_kwargs
        self.bindings: List[Tuple[str, str]] = []
        self.callback = None
        self.consume_kwargs: Dict[str, Any] = {}
        self.cancelled: List[str] = []

    async def bind(self, exchange, routing_key: str = ""):
        self.bindings.append((exchange, routing_key))

    async def consume(self, callback, **kwargs) -> str:
        self.callback = callback
        self.consume_kwargs = kwargs
        return kwargs.get("consumer_tag") or f"ctag-{self.name}"

    async def cancel(self, consumer_tag: str):
        self.cancelled.append(consumer_tag)
        self.callback = None

    async def deliver(self, body: bytes, headers: Optional[Dict[str, Any]] = None) -> FakeMessage:
        """Push one delivery to the registered consumer and return it."""
        assert self.callback is not None, f"nobody consumes {self.name}"
        message = FakeMessage(body, headers=headers)
        await self.callback(message)
        return message

    async def deliver_until_settled(self, body: bytes, limit: int = 10) -> List[FakeMessage]:
        """Redeliver while the consumer requeues, stamping x-delivery-count the way a quorum queue does."""
        deliveries: List[FakeMessage] = []
        for count in range(limit):
            message = await self.deliver(body, headers={"x-delivery-count": count} if count else None)
            deliveries.append(message)
            if not message.requeued:
                break
        return deliveries


class FakeChannel:
    def __init__(self, fail_publish: bool = False):
        self.is_closed = False
        self.qos: Dict[str, Any] = {}
        self.queues: Dict[str, FakeQueue] = {}
        self.exchanges: Dict[str, FakeExchange] = {}
        self.exchange_kwargs: Dict[str, Any] = {}
        self.fail_publish = fail_publish

    async def set_qos(self, **kwargs):
        self.qos = kwargs

    async def declare_queue(self, name: str, **kwargs) -> FakeQueue:
        queue = self.queues.get(name) or FakeQueue(name, **kwargs)
        self.queues[name] = queue
        return queue

    async def declare_exchange(self, name: str, type=None, **kwargs) -> FakeExchange:
        exchange = self.exchanges.get(name) or FakeExchange(name, fail=self.fail_publish)
        self.exchanges[name] = exchange
        self.exchange_kwargs[name] = {"type": type, **kwargs}
        return exchange

    async def close(self):
        self.is_closed = True


class FakeBroker:
    """Stands in for BrokerConnection: hands out a fresh channel per caller."""

    def __init__(self, fail_publish: bool = False):
        self.channels: List[FakeChannel] = []
        self.fail_publish = fail_publish

    async def open_channel(self) -> FakeChannel:
        channel = FakeChannel(fail_publish=self.fail_publish)
        self.channels.append(channel)
        return channel


class FakeRobustConnection:
    """Stands in for aio_pika.RobustConnection in BrokerConnection tests."""

    def __init__(self):
        self.is_closed = False
        self.channels: List[FakeChannel] = []

    async def channel(self) -> FakeChannel:
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    async def close(self):
        self.is_closed = True


# ---------------------------------------------------------------------------
# CRM fakes
# ---------------------------------------------------------------------------

class StubEntityClient:
    """CRM entity client returning fixed status codes and recording calls."""

    def __init__(
        self,
        create: int = 201,
        update: int = 204,
        delete: int = 204,
        get: int = 200,
        record: Optional[Dict[str, Any]] = None,
    ):
        self.statuses = {"create": create, "update": update, "delete": delete, "get": get}
        self.record = record
        self.calls: List[Tuple] = []

    async def create(self, payload):
        self.calls.append(("create", payload))
        return self.statuses["create"], {"id": "001NEW", "success": True}

    async def get(self, record_id):
        self.calls.append(("get", record_id))
        return self.statuses["get"], self.record or {"Id": record_id}

    async def update(self, record_id, payload):
        self.calls.append(("update", record_id, payload))
        return self.statuses["update"], None

    async def delete(self, record_id):
        self.calls.append(("delete", record_id))
        return self.statuses["delete"], None



class FakeSalesforceSession:
    """Stands in for SalesforceClient in service wiring tests."""

    def __init__(self):
        self.started = False
        self.closed = False
        self.clients: Dict[str, StubEntityClient] = {}

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    def sobject(self, entity: str) -> StubEntityClient:
        return self.clients.setdefault(entity, StubEntityClient())


class FakeContactCrm:
    """Stands in for SalesforceClient in change-capture tests."""

    def __init__(
        self,
        contacts: Optional[StubEntityClient] = None,
        deleted: Optional[List[Dict[str, Any]]] = None,
        query_status: int = 200,
    ):
        self.contacts = contacts or StubEntityClient()
        self.deleted = deleted or []
        self.query_status = query_status
        self.queries: List[str] = []

    def sobject(self, entity: str) -> StubEntityClient:
        assert entity == "user"
        return self.contacts

    async def query_all(self, soql: str):
        self.queries.append(soql)
        return self.query_status, {"totalSize": len(self.deleted), "done": True, "records": self.deleted}


class RecordingPublisher:
    """Stands in for XmlPublisher; keeps (routing_key, document) pairs."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.published: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, routing_key: str, document: Dict[str, Any]) -> bool:
        self.published.append((routing_key, document))
        return self.accept
