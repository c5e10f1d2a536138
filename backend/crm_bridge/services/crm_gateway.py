"""
CRM Bridge - CRM Operation Gateway
Turns intents into CRM calls and decides success from the status code

Success thresholds are fixed per operation:
- create: 201
- update: 204
- delete: 204
- get:    200
Anything else is a CrmCallFailure carrying the response body.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import httpx

from ..config import Settings, get_settings
from ..core.errors import CrmCallFailure
from ..core.metrics import record_crm_call
from .circuit_breaker import CircuitBreaker, CircuitBreakerError
from .dispatcher import CreateIntent, DeleteIntent, Intent, UpdateIntent

logger = logging.getLogger("crm_bridge.gateway")

SUCCESS_STATUS: Dict[str, int] = {
    "create": 201,
    "update": 204,
    "delete": 204,
    "get": 200,
}


class EntityClient(Protocol):
    """The CRM HTTP surface for one entity kind"""

    async def create(self, payload: Dict[str, Any]) -> Tuple[int, Any]: ...
    async def get(self, record_id: str) -> Tuple[int, Any]: ...
    async def update(self, record_id: str, payload: Dict[str, Any]) -> Tuple[int, Any]: ...
    async def delete(self, record_id: str) -> Tuple[int, Any]: ...


@dataclass(frozen=True)
class Outcome:
    """
    Result of one CRM call; status_code is None when no response arrived.

    circuit_open marks a call the breaker refused; retry_after is how long
    the circuit stays open.
    """
    operation: str
    status_code: Optional[int]
    body: Any = None
    circuit_open: bool = False
    retry_after: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status_code == SUCCESS_STATUS[self.operation]

    @property
    def error(self) -> Optional[CrmCallFailure]:
        if self.ok:
            return None
        return CrmCallFailure(
            self.operation,
            self.status_code,
            self.body,
            expected=SUCCESS_STATUS[self.operation],
        )


class CrmGateway:
    """
    Operation set for one entity kind.

    Never raises for CRM-side problems: transport errors and an open circuit
    come back as an Outcome without a status code.
    """

    def __init__(
        self,
        entity: str,
        client: EntityClient,
        breaker: Optional[CircuitBreaker] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.entity = entity
        self.client = client
        self.breaker = breaker or CircuitBreaker(
            name=f"crm_{entity}",
            failure_threshold=settings.CB_FAILURE_THRESHOLD,
            recovery_timeout=settings.CB_RECOVERY_TIMEOUT,
            half_open_max_calls=settings.CB_HALF_OPEN_MAX_CALLS,
        )

    async def create(self, body: Dict[str, Any]) -> Outcome:
        return await self._call("create", self.client.create, body)

    async def update(self, record_id: str, body: Dict[str, Any]) -> Outcome:
        return await self._call("update", self.client.update, record_id, body)

    async def delete(self, record_id: str) -> Outcome:
        return await self._call("delete", self.client.delete, record_id)

    async def get(self, record_id: str) -> Outcome:
        return await self._call("get", self.client.get, record_id)

    async def execute(self, intent: Intent) -> Outcome:
        """Intent handler used by the consumer runtimes"""
        if isinstance(intent, CreateIntent):
            return await self.create(intent.body)
        if isinstance(intent, UpdateIntent):
            return await self.update(intent.id, intent.body)
        if isinstance(intent, DeleteIntent):
            return await self.delete(intent.id)
        raise TypeError(f"not an intent: {intent!r}")

    async def _call(
        self,
        operation: str,
        func: Callable[..., Awaitable[Tuple[int, Any]]],
        *args,
    ) -> Outcome:
        start_time = time.perf_counter()
        try:
            status_code, body = await self.breaker.call(func, *args)
        except CircuitBreakerError as e:
            record_crm_call(self.entity, operation, "circuit_open")
            logger.warning(f"{self.entity}.{operation} skipped: {e}")
            return Outcome(operation, None, str(e), circuit_open=True, retry_after=e.retry_after)
        except httpx.HTTPError as e:
            record_crm_call(self.entity, operation, "failure", time.perf_counter() - start_time)
            logger.error(f"{self.entity}.{operation} transport error: {e}")
            return Outcome(operation, None, str(e))

        outcome = Outcome(operation, status_code, body)

        # 4xx means the CRM is up and rejected this record; only 5xx trips the breaker
        if status_code >= 500:
            self.breaker.record_failure()
        else:
            self.breaker.record_success()

        record_crm_call(
            self.entity,
            operation,
            "success" if outcome.ok else "failure",
            time.perf_counter() - start_time,
        )
        if outcome.ok:
            logger.info(f"{self.entity}.{operation} succeeded ({status_code})")
        else:
            logger.warning(f"{self.entity}.{operation} failed: {outcome.error}")
        return outcome
