"""CRM gateway: status thresholds, intent execution, breaker integration"""

import httpx
import pytest

from crm_bridge.core.errors import CrmCallFailure
from crm_bridge.services.circuit_breaker import CircuitBreaker, CircuitState
from crm_bridge.services.crm_gateway import CrmGateway, Outcome
from crm_bridge.services.dispatcher import CreateIntent, DeleteIntent, UpdateIntent

from .fakes import StubEntityClient


class ExplodingClient(StubEntityClient):
    async def create(self, payload):
        self.calls.append(("create", payload))
        raise httpx.ConnectError("connection refused")


@pytest.fixture
def client():
    return StubEntityClient()


@pytest.fixture
def gateway(client, settings):
    return CrmGateway("company", client, settings=settings)


class TestOutcome:
    @pytest.mark.parametrize("operation,status", [("create", 201), ("update", 204), ("delete", 204), ("get", 200)])
    def test_success_thresholds(self, operation, status):
        outcome = Outcome(operation, status)
        assert outcome.ok
        assert outcome.error is None

    @pytest.mark.parametrize("operation,status", [("create", 200), ("update", 200), ("delete", 404), ("get", 204)])
    def test_other_codes_fail(self, operation, status):
        outcome = Outcome(operation, status, {"message": "nope"})
        assert not outcome.ok
        assert isinstance(outcome.error, CrmCallFailure)
        assert outcome.error.status_code == status
        assert "nope" in str(outcome.error)

    def test_no_response(self):
        error = Outcome("create", None, "timeout").error
        assert error.status_code is None
        assert "without a response" in str(error)


@pytest.mark.asyncio
async def test_execute_create(gateway, client):
    outcome = await gateway.execute(CreateIntent("company", {"Name": "Acme"}))
    assert outcome.ok
    assert outcome.status_code == 201
    assert client.calls == [("create", {"Name": "Acme"})]


@pytest.mark.asyncio
async def test_execute_update_and_delete(gateway, client):
    assert (await gateway.execute(UpdateIntent("company", "001", {"Name": "Acme NV"}))).ok
    assert (await gateway.execute(DeleteIntent("company", "001"))).ok
    assert client.calls == [("update", "001", {"Name": "Acme NV"}), ("delete", "001")]


@pytest.mark.asyncio
async def test_get(gateway, client):
    outcome = await gateway.get("001")
    assert outcome.ok
    assert outcome.body == {"Id": "001"}


@pytest.mark.asyncio
async def test_bad_request_is_a_failure_value(settings):
    gateway = CrmGateway("company", StubEntityClient(create=400), settings=settings)
    outcome = await gateway.create({"Name": ""})
    assert not outcome.ok
    assert outcome.error.status_code == 400
    assert outcome.error.expected == 201


@pytest.mark.asyncio
async def test_execute_rejects_non_intents(gateway):
    with pytest.raises(TypeError):
        await gateway.execute({"entity": "company"})


@pytest.mark.asyncio
async def test_transport_error_becomes_outcome(settings):
    client = ExplodingClient()
    gateway = CrmGateway("company", client, settings=settings)
    outcome = await gateway.create({"Name": "Acme"})
    assert outcome.status_code is None
    assert not outcome.ok
    assert "connection refused" in str(outcome.error)
    assert gateway.breaker.stats.failed_calls == 1


@pytest.mark.asyncio
async def test_client_errors_do_not_trip_breaker(settings):
    breaker = CircuitBreaker("crm_company", failure_threshold=2)
    gateway = CrmGateway("company", StubEntityClient(create=400), breaker=breaker, settings=settings)
    for _ in range(5):
        await gateway.create({"Name": "Acme"})
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_server_errors_open_the_circuit(settings):
    client = StubEntityClient(create=503)
    breaker = CircuitBreaker("crm_company", failure_threshold=2, recovery_timeout=60)
    gateway = CrmGateway("company", client, breaker=breaker, settings=settings)

    await gateway.create({"Name": "Acme"})
    await gateway.create({"Name": "Acme"})
    assert breaker.state == CircuitState.OPEN

    outcome = await gateway.create({"Name": "Acme"})
    assert outcome.status_code is None
    assert "open" in str(outcome.body)
    assert len(client.calls) == 2
    assert outcome.circuit_open
    assert 0 < outcome.retry_after <= 60


@pytest.mark.asyncio
async def test_regular_failures_are_not_marked_circuit_open(settings):
    gateway = CrmGateway("company", StubEntityClient(create=500), settings=settings)
    outcome = await gateway.create({"Name": "Acme"})
    assert not outcome.circuit_open
    assert outcome.retry_after == 0
