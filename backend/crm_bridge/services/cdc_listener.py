"""
CRM Bridge - Salesforce Change Data Capture listener
Republishes Contact changes made in Salesforce to the other systems.

    Salesforce --(CometD long-polling, /data/ContactChangeEvent)--> CdcListener
    CdcListener --> ContactChangeHandler --(UserMessage XML)--> exchange "user"
                    routing keys <target>.user.<create|update|delete>

Changes made through the REST API are skipped by default: those are the
bridge's own writes coming back from the consumers.
"""
import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from ..config import Settings
from ..core.errors import BridgeError, CrmCallFailure, MissingIdentifierError, StreamingError
from ..schemas import UserBusiness, UserMessage, utc_now_iso
from .publisher import XmlPublisher
from .salesforce_client import SalesforceClient

logger = logging.getLogger("crm_bridge.cdc")

LogSender = Callable[[str, str, str], Awaitable[Any]]

API_ORIGIN_PREFIX = "com/salesforce/api/rest"
HANDLED_CHANGES = ("CREATE", "UPDATE", "DELETE")

# "Main Street 12 b" -> street, house number, bus code
STREET_PATTERN = re.compile(r"(.+?)\s(\d+)(?:\s([a-zA-Z]+))?")


def format_address(address: Optional[Mapping[str, Any]]) -> str:
    """
    Render a Salesforce address as country;state;postal code;city;street;number;bus;

    Returns "" for a missing address or a street without a house number.
    """
    if not address or not address.get("Street"):
        return ""
    match = STREET_PATTERN.fullmatch(str(address["Street"]).strip())
    if match is None:
        logger.warning(f"Cannot split street '{address['Street']}' into street and house number")
        return ""
    street, number, bus = match.groups()
    parts = [
        address.get("Country"),
        address.get("State"),
        address.get("PostalCode"),
        address.get("City"),
        street,
        number,
        bus,
    ]
    return "".join(f"{part or ''};" for part in parts)


def _record_address(record: Mapping[str, Any], prefix: str) -> Dict[str, Any]:
    """Collect the flat MailingStreet/MailingCity/... fields of a record"""
    return {
        field: record.get(f"{prefix}{field}")
        for field in ("Street", "City", "State", "PostalCode", "Country")
    }


# =============================================================================
# CHANGE HANDLER
# =============================================================================

class ContactChangeHandler:
    """
    Turns one ContactChangeEvent into a UserMessage and publishes it once
    per target system.

    Failures are logged and reported; they never escape handle().
    """

    def __init__(
        self,
        crm: SalesforceClient,
        publisher: XmlPublisher,
        settings: Settings,
        report: Optional[LogSender] = None,
    ):
        self.crm = crm
        self.contacts = crm.sobject("user")
        self.publisher = publisher
        self.settings = settings
        self.report = report
        self.published = 0

    async def handle(self, event: Mapping[str, Any]) -> Optional[UserMessage]:
        """
        Process the data of one streaming message ({"event": ..., "payload": ...}).

        Returns the published message, or None when the change was skipped
        or failed.
        """
        payload = dict(event.get("payload") or {})
        header = payload.pop("ChangeEventHeader", None) or {}
        change = header.get("changeType")
        origin = header.get("changeOrigin") or ""

        if origin.startswith(API_ORIGIN_PREFIX) and not self.settings.CDC_INCLUDE_API_ORIGIN:
            logger.debug(f"Skipping {change} from API origin {origin}")
            return None

        if change not in HANDLED_CHANGES:
            logger.warning(f"Unhandled Contact change type: {change}")
            await self._report("warning", "400", f"Unhandled Contact change type: {change}")
            return None

        record_ids = header.get("recordIds") or []
        if not record_ids:
            logger.error(f"No recordId in Contact {change} event")
            await self._report("error", "400", f"No recordId in Contact {change} event")
            return None
        record_id = record_ids[0]

        logger.info(f"Captured Contact {change} for {record_id}")
        try:
            if change == "CREATE":
                message = await self._on_create(record_id, payload)
            elif change == "UPDATE":
                message = await self._on_update(record_id)
            else:
                message = await self._on_delete(record_id)
        except (BridgeError, httpx.HTTPError) as e:
            logger.error(f"Contact {change} for {record_id} not republished: {e}")
            await self._report("error", "500", f"Contact {change} for {record_id} not republished: {e}")
            return None

        await self._publish(message)
        return message

    async def _on_create(self, record_id: str, payload: Mapping[str, Any]) -> UserMessage:
        # the UUID shared with the other systems is a microsecond timestamp
        uuid = utc_now_iso()
        status, body = await self.contacts.update(record_id, {"UUID__c": uuid})
        if status != 204:
            raise CrmCallFailure("set Contact UUID", status, body, expected=204)
        logger.info(f"UUID {uuid} stored on Contact {record_id}")

        name = payload.get("Name") or {}
        return UserMessage(
            action_type="CREATE",
            uuid=uuid,
            encrypted_password=payload.get("Password__c") or "",
            first_name=name.get("FirstName") or "",
            last_name=name.get("LastName") or "",
            phone_number=payload.get("Phone") or "",
            email_address=payload.get("Email") or "",
            business=UserBusiness(
                business_name=payload.get("BusinessName__c") or "",
                business_email=payload.get("BusinessEmail__c") or "",
                real_address=format_address(payload.get("MailingAddress")),
                btw_number=payload.get("BTWNumber__c") or "",
                facturation_address=format_address(payload.get("OtherAddress")),
            ),
        )

    async def _on_update(self, record_id: str) -> UserMessage:
        status, record = await self.contacts.get(record_id)
        if status != 200:
            raise CrmCallFailure("get Contact", status, record, expected=200)
        uuid = (record or {}).get("UUID__c")
        if not uuid:
            raise MissingIdentifierError(f"Contact {record_id} has no UUID__c")

        return UserMessage(
            action_type="UPDATE",
            uuid=uuid,
            encrypted_password=record.get("Password__c") or "",
            first_name=record.get("FirstName") or "",
            last_name=record.get("LastName") or "",
            phone_number=record.get("Phone") or "",
            email_address=record.get("Email") or "",
            business=UserBusiness(
                business_name=record.get("BusinessName__c") or "",
                business_email=record.get("BusinessEmail__c") or "",
                real_address=format_address(_record_address(record, "Mailing")),
                btw_number=record.get("BTWNumber__c") or "",
                facturation_address=format_address(_record_address(record, "Other")),
            ),
        )

    async def _on_delete(self, record_id: str) -> UserMessage:
        # deleted rows are only visible through queryAll
        quoted = record_id.replace("\\", "\\\\").replace("'", "\\'")
        soql = f"SELECT UUID__c FROM Contact WHERE Id = '{quoted}' AND IsDeleted = true LIMIT 1"
        status, body = await self.crm.query_all(soql)
        if status != 200:
            raise CrmCallFailure("query deleted Contact", status, body, expected=200)
        records = (body or {}).get("records") or []
        uuid = records[0].get("UUID__c") if records else None
        if not uuid:
            raise MissingIdentifierError(f"deleted Contact {record_id} has no UUID__c")
        return UserMessage(action_type="DELETE", uuid=uuid)

    def routing_keys(self, change: str) -> List[str]:
        return [f"{target}.user.{change.lower()}" for target in self.settings.cdc_targets]

    async def _publish(self, message: UserMessage):
        document = message.to_document()
        for routing_key in self.routing_keys(message.action_type):
            if await self.publisher.publish(routing_key, document):
                self.published += 1
                logger.info(f"UserMessage {message.action_type} {message.uuid} sent ({routing_key})")

    async def _report(self, status: str, code: str, text: str):
        if self.report is not None:
            await self.report(status, code, text)


# =============================================================================
# STREAMING CLIENT
# =============================================================================

class CdcListener:
    """
    Bayeux long-polling client for one change event channel.

    handshake -> subscribe -> connect, connect, ... Each connect reply may
    carry data messages for the channel; they are handled in order before
    the next connect. On "reconnect: handshake" advice the session is
    rebuilt; on an error the listener waits CDC_RETRY_DELAY seconds first.
    """

    HANDSHAKE = "/meta/handshake"
    SUBSCRIBE = "/meta/subscribe"
    CONNECT = "/meta/connect"
    DISCONNECT = "/meta/disconnect"

    def __init__(
        self,
        crm: SalesforceClient,
        handler: ContactChangeHandler,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.crm = crm
        self.handler = handler
        self.settings = settings
        self.topic = settings.CDC_TOPIC
        self._sleep = sleep
        self._client_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.received = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._listen())
        logger.info(f"CDC listener started on {self.topic}")

    async def stop(self):
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        if self._client_id is not None:
            try:
                await self._exchange({"channel": self.DISCONNECT, "clientId": self._client_id})
            except (BridgeError, httpx.HTTPError) as e:
                logger.debug(f"Streaming disconnect failed: {e}")
            self._client_id = None
        logger.info("CDC listener stopped")

    # -------------------------------------------------------------------------
    # Bayeux
    # -------------------------------------------------------------------------

    async def handshake(self) -> str:
        reply = await self._exchange({
            "channel": self.HANDSHAKE,
            "version": "1.0",
            "supportedConnectionTypes": ["long-polling"],
        })
        meta = _meta_reply(reply, self.HANDSHAKE)
        self._client_id = meta["clientId"]
        return self._client_id

    async def subscribe(self):
        reply = await self._exchange({
            "channel": self.SUBSCRIBE,
            "clientId": self._client_id,
            "subscription": self.topic,
            # -1: only events published from now on
            "ext": {"replay": {self.topic: -1}},
        })
        _meta_reply(reply, self.SUBSCRIBE)
        logger.info(f"Subscribed to {self.topic}")

    async def connect_once(self) -> bool:
        """
        One long poll. Handles any delivered events.

        Returns:
            False when the server asks for a new handshake
        """
        reply = await self._exchange(
            {"channel": self.CONNECT, "clientId": self._client_id, "connectionType": "long-polling"},
            timeout=self.settings.CDC_POLL_TIMEOUT,
        )

        meta = None
        for message in reply:
            channel = message.get("channel")
            if channel == self.CONNECT:
                meta = message
            elif channel == self.topic and "data" in message:
                self.received += 1
                await self.handler.handle(message["data"])

        if meta is None or meta.get("successful"):
            return True
        advice = meta.get("advice") or {}
        if advice.get("reconnect") == "handshake":
            logger.info("Streaming session expired, handshaking again")
            self._client_id = None
            return False
        raise StreamingError(self.CONNECT, meta.get("error"))

    async def _listen(self):
        while self._running:
            try:
                await self.handshake()
                await self.subscribe()
                while self._running and await self.connect_once():
                    pass
                continue
            except Exception as e:
                logger.error(f"CDC listener error: {e}")
                self._client_id = None
            await self._sleep(self.settings.CDC_RETRY_DELAY)

    async def _exchange(self, message: Dict[str, Any], timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        status, body = await self.crm.streaming([message], timeout=timeout or self.settings.CRM_TIMEOUT)
        if status != 200 or not isinstance(body, list):
            raise StreamingError(message["channel"], f"HTTP {status}: {body}")
        return body


def _meta_reply(reply: List[Dict[str, Any]], channel: str) -> Dict[str, Any]:
    for message in reply:
        if message.get("channel") == channel:
            if not message.get("successful"):
                raise StreamingError(channel, message.get("error"))
            return message
    raise StreamingError(channel, "no reply")
