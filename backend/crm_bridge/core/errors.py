"""
CRM Bridge - Error taxonomy

Startup errors (configuration, broker connection) are raised and fatal.
Message errors and CRM call failures are per-message: the dispatcher and the
gateway hand them back as values and the consumer runtime turns them into a
requeue.
"""
from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all CRM bridge errors"""


class ConfigurationError(BridgeError):
    """Missing or invalid connection parameters"""


class BrokerConnectionError(BridgeError):
    """Broker unreachable after the startup retry budget was spent"""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class NotInitializedError(BridgeError):
    """Broker connection is not (or no longer) usable"""


class MessageError(BridgeError):
    """A defect in the content of a single inbound message"""


class MalformedInputError(MessageError):
    """Payload is not well-formed XML, or a document cannot be rendered as XML"""


class EnvelopeMismatchError(MessageError):
    """The translated payload is not wrapped in the expected entity key"""


class MissingIdentifierError(MessageError):
    """An update or delete payload carries no Id"""


class UnknownOperationError(MessageError):
    """The routing key names an operation the dispatcher does not know"""


class CrmCallFailure(BridgeError):
    """The CRM answered with a status code other than the expected one"""

    def __init__(
        self,
        operation: str,
        status_code: Optional[int],
        body: Any = None,
        expected: Optional[int] = None,
    ):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        self.expected = expected
        if status_code is None:
            message = f"{operation} failed without a response: {body}"
        else:
            message = f"{operation} returned {status_code} (expected {expected}): {body}"
        super().__init__(message)


class StreamingError(BridgeError):
    """The Salesforce Streaming API refused a handshake, subscribe or connect"""

    def __init__(self, channel: str, detail: Any = None):
        self.channel = channel
        self.detail = detail
        super().__init__(f"{channel} failed: {detail}")
