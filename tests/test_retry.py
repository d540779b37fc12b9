import asyncio

import pytest

from app.clients.errors import (
    ConnectionFailure,
    HttpStatusFailure,
    ProviderJobFailed,
    SceneInputError,
    TransportTimeout,
    is_retriable,
)
from app.services.retry import ConcurrencyGate, retry_with_backoff


class Flaky:
    def __init__(self, failures):
        self.failures = list(failures)
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


def test_retriable_classification():
    assert is_retriable(TransportTimeout("slow"))
    assert is_retriable(ConnectionFailure("refused"))
    for status in (429, 500, 502, 503, 504):
        assert is_retriable(HttpStatusFailure(status))
    assert not is_retriable(HttpStatusFailure(400))
    assert not is_retriable(HttpStatusFailure(404))
    assert not is_retriable(ProviderJobFailed("runpod", "FAILED"))
    assert not is_retriable(SceneInputError("Missing image"))
    assert not is_retriable(RuntimeError("503 service unavailable"))


@pytest.mark.asyncio
async def test_two_503s_then_success(sleeper):
    operation = Flaky([HttpStatusFailure(503), HttpStatusFailure(503)])

    result = await retry_with_backoff(operation, max_retries=2, base_delay=1.0, sleep=sleeper)

    assert result == "ok"
    assert operation.attempts == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_ceiling_reraises_last_error(sleeper):
    last = HttpStatusFailure(502, "bad gateway")
    operation = Flaky([HttpStatusFailure(503), TransportTimeout("slow"), last, HttpStatusFailure(503)])

    with pytest.raises(HttpStatusFailure) as caught:
        await retry_with_backoff(operation, max_retries=2, base_delay=0.5, sleep=sleeper)

    assert caught.value is last
    assert operation.attempts == 3
    assert sleeper.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_non_retriable_error_is_not_retried(sleeper):
    operation = Flaky([HttpStatusFailure(400, "bad prompt")])

    with pytest.raises(HttpStatusFailure):
        await retry_with_backoff(operation, max_retries=2, sleep=sleeper)

    assert operation.attempts == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_gate_limits_and_serves_in_arrival_order():
    gate = ConcurrencyGate(capacity=1)
    order = []

    await gate.acquire()

    async def worker(name):
        async with gate:
            order.append(name)
            await asyncio.sleep(0)

    tasks = [asyncio.create_task(worker(name)) for name in ("a", "b", "c")]
    await asyncio.sleep(0)
    assert gate.waiting == 3
    assert gate.in_use == 1

    gate.release()
    late = asyncio.create_task(worker("late"))
    await asyncio.gather(*tasks, late)

    assert order == ["a", "b", "c", "late"]
    assert gate.in_use == 0


@pytest.mark.asyncio
async def test_gate_never_exceeds_capacity():
    gate = ConcurrencyGate(capacity=2)
    active = 0
    peak = 0

    async def worker():
        nonlocal active, peak
        async with gate:
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(worker() for _ in range(6)))

    assert peak == 2


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_slot():
    gate = ConcurrencyGate(capacity=1)
    await gate.acquire()
    waiter = asyncio.create_task(gate.acquire())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    gate.release()
    assert gate.in_use == 0
    await asyncio.wait_for(gate.acquire(), timeout=1)
