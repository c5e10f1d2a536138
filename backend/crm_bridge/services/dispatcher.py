"""
CRM Bridge - Entity Dispatcher
Turns (routing key, XML payload) into a CRM intent.

Routing keys are read positionally as <domain>.<entity>.<operation>:
the entity segment names the envelope key to unwrap and the operation
segment picks the intent. Wildcard matching belongs to the broker.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..core.errors import (
    EnvelopeMismatchError,
    MessageError,
    MissingIdentifierError,
    UnknownOperationError,
)
from ..core.events import EventConstants, RoutingKey
from .translator import xml_to_json

logger = logging.getLogger("crm_bridge.dispatcher")

ID_FIELD = "Id"


# =============================================================================
# INTENTS
# =============================================================================

@dataclass(frozen=True)
class CreateIntent:
    entity: str
    body: Dict[str, Any]

    operation = EventConstants.OP_CREATE


@dataclass(frozen=True)
class UpdateIntent:
    entity: str
    id: str
    body: Dict[str, Any]

    operation = EventConstants.OP_UPDATE


@dataclass(frozen=True)
class DeleteIntent:
    entity: str
    id: str

    operation = EventConstants.OP_DELETE


Intent = Union[CreateIntent, UpdateIntent, DeleteIntent]


@dataclass
class DispatchResult:
    """Either an intent or the message error that prevented one"""
    routing_key: str
    intent: Optional[Intent] = None
    error: Optional[MessageError] = None

    @property
    def ok(self) -> bool:
        return self.intent is not None and self.error is None


# =============================================================================
# DISPATCH
# =============================================================================

def parse_intent(routing_key: str, payload: bytes) -> Intent:
    """
    Build the intent for one delivery.

    Raises:
        MalformedInputError: payload is not XML
        EnvelopeMismatchError: no top-level key for the routing key's entity
        MissingIdentifierError: update/delete without an Id
        UnknownOperationError: operation segment is not create/update/delete
    """
    document = xml_to_json(payload)

    try:
        key = RoutingKey.parse(routing_key)
    except ValueError as e:
        raise UnknownOperationError(str(e)) from e

    entity_fields = unwrap_envelope(document, key.entity)

    if key.operation == EventConstants.OP_CREATE:
        return CreateIntent(entity=key.entity, body=dict(entity_fields))

    if key.operation == EventConstants.OP_UPDATE:
        entity_id = _require_id(entity_fields, routing_key)
        body = {k: v for k, v in entity_fields.items() if k != ID_FIELD}
        return UpdateIntent(entity=key.entity, id=entity_id, body=body)

    if key.operation == EventConstants.OP_DELETE:
        return DeleteIntent(entity=key.entity, id=_require_id(entity_fields, routing_key))

    raise UnknownOperationError(f"unknown operation '{key.operation}' in '{routing_key}'")


def dispatch(routing_key: str, payload: bytes) -> DispatchResult:
    """
    Same as parse_intent, but hands message errors back as a value.

    Deterministic: the same (routing key, payload) always yields the same result,
    so a requeued message is dispatched exactly as on its first delivery.
    """
    try:
        intent = parse_intent(routing_key, payload)
    except MessageError as e:
        logger.debug(f"Dispatch failed for {routing_key}: {e}")
        return DispatchResult(routing_key=routing_key, error=e)
    return DispatchResult(routing_key=routing_key, intent=intent)


def unwrap_envelope(document: Dict[str, Any], entity: str) -> Dict[str, Any]:
    """Return the field map stored under the entity key"""
    if entity not in document:
        found = ", ".join(document) or "nothing"
        raise EnvelopeMismatchError(f"expected <{entity}> envelope, found {found}")

    entity_fields = document[entity]
    if not isinstance(entity_fields, dict):
        raise EnvelopeMismatchError(f"<{entity}> envelope carries no fields")
    return entity_fields


def _require_id(entity_fields: Dict[str, Any], routing_key: str) -> str:
    value = entity_fields.get(ID_FIELD)
    if not isinstance(value, str) or not value.strip():
        raise MissingIdentifierError(f"{routing_key} payload has no {ID_FIELD}")
    return value.strip()
