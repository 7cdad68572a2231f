import pytest

from reeru.errors import ExternalProtocolViolation, ExternalTransient
from reeru.services.gateway import CircuitOpenError, ServiceConfig, ServiceGateway

from conftest import no_sleep


def _gateway(**overrides):
    config = ServiceConfig(max_retries=2, circuit_failure_threshold=3, circuit_recovery_seconds=60.0, **overrides)
    return ServiceGateway(config={"svc": config}, sleep=no_sleep)


@pytest.mark.anyio
async def test_transient_errors_are_retried():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ExternalTransient("blip")
        return "ok"

    assert await _gateway().execute("svc", flaky) == "ok"
    assert len(calls) == 3


@pytest.mark.anyio
async def test_contract_violations_are_not_retried():
    calls = []

    async def broken():
        calls.append(1)
        raise ExternalProtocolViolation()

    with pytest.raises(ExternalProtocolViolation):
        await _gateway().execute("svc", broken)
    assert len(calls) == 1


@pytest.mark.anyio
async def test_circuit_opens_after_repeated_failures():
    gateway = ServiceGateway(
        config={"svc": ServiceConfig(max_retries=0, circuit_failure_threshold=2)},
        sleep=no_sleep,
    )

    async def down():
        raise ExternalTransient("down")

    for _ in range(2):
        with pytest.raises(ExternalTransient):
            await gateway.execute("svc", down)

    with pytest.raises(CircuitOpenError):
        await gateway.execute("svc", down)
    assert gateway.get_circuit_states() == {"svc": "open"}


@pytest.mark.anyio
async def test_unknown_service_passes_through():
    async def value():
        return 42

    assert await ServiceGateway(sleep=no_sleep).execute("elsewhere", value) == 42
