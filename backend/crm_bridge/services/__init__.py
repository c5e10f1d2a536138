# CRM Bridge - Services
from .broker import BrokerConnection, ConnectionState
from .cdc_listener import CdcListener, ContactChangeHandler
from .circuit_breaker import CircuitBreaker, CircuitBreakerError
from .consumer import ConsumerRuntime, ConsumerState, build_entity_runtimes
from .crm_gateway import CrmGateway, Outcome
from .dispatcher import CreateIntent, DeleteIntent, DispatchResult, UpdateIntent, dispatch
from .heartbeat import HeartbeatProducer
from .log_publisher import ControlRoomLogPublisher
from .salesforce_client import SalesforceClient
from .translator import json_to_xml, xml_to_json

__all__ = [
    "BrokerConnection",
    "ConnectionState",
    "CdcListener",
    "ContactChangeHandler",
    "CircuitBreaker",
    "CircuitBreakerError",
    "ConsumerRuntime",
    "ConsumerState",
    "build_entity_runtimes",
    "CrmGateway",
    "Outcome",
    "CreateIntent",
    "UpdateIntent",
    "DeleteIntent",
    "DispatchResult",
    "dispatch",
    "HeartbeatProducer",
    "ControlRoomLogPublisher",
    "SalesforceClient",
    "json_to_xml",
    "xml_to_json",
]
