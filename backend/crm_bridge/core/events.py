"""
EVENT CONSTANTS
===============
Centralized definition of exchanges, routing keys and queue names.
Publishers and consumers must agree on these strings.
"""
from typing import List, NamedTuple


class EventConstants:
    """Shared constants for the RabbitMQ event system."""

    # Domains
    DOMAIN_CRM = "crm"
    DOMAIN_MONITORING = "monitoring"

    # Entity kinds
    ENTITY_USER = "user"
    ENTITY_COMPANY = "company"
    ENTITIES = (ENTITY_USER, ENTITY_COMPANY)

    # Operations
    OP_CREATE = "create"
    OP_UPDATE = "update"
    OP_DELETE = "delete"
    OPERATIONS = (OP_CREATE, OP_UPDATE, OP_DELETE)

    # Monitoring
    ROUTING_KEY_HEARTBEAT = "monitoring.heartbeat.create"
    ROUTING_KEY_CONTROLROOM_LOG = "controlroom.log.event"

    # Queues
    QUEUE_SUFFIX = "_queue"

    # Content Types
    CONTENT_TYPE_XML = "application/xml"


class RoutingKey(NamedTuple):
    """A `<domain>.<entity>.<operation>` routing key split positionally."""

    domain: str
    entity: str
    operation: str

    @classmethod
    def parse(cls, value: str) -> "RoutingKey":
        """
        Split a routing key on dots.

        Purely positional: wildcards are treated as literal segments.
        Raises ValueError when the key has fewer than three segments.
        """
        parts = value.split(".")
        if len(parts) < 3:
            raise ValueError(f"routing key '{value}' needs <domain>.<entity>.<operation>")
        return cls(parts[0], parts[1], parts[2])

    def __str__(self) -> str:
        return f"{self.domain}.{self.entity}.{self.operation}"


def crm_routing_key(entity: str, operation: str) -> str:
    """Routing key for a CRM entity change, e.g. crm.user.create"""
    return f"{EventConstants.DOMAIN_CRM}.{entity}.{operation}"


def crm_routing_keys(entity: str) -> List[str]:
    """All CRM routing keys for one entity kind"""
    return [crm_routing_key(entity, op) for op in EventConstants.OPERATIONS]


def queue_name_for(routing_key: str) -> str:
    """
    Derive the queue name bound to a routing key.

    crm.user.create -> crm_user_create_queue
    """
    return routing_key.replace(".", "_") + EventConstants.QUEUE_SUFFIX
