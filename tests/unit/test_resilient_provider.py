# tests/unit/test_resilient_provider.py

from __future__ import annotations
import sys
from pathlib import Path
from types import SimpleNamespace
import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from parley.core.errors import ProviderClientError, ProviderError, ProviderTransientError
from parley.core.ports import Completion, StreamChunk
import parley.resilience.resilient_provider as rp_module
from parley.resilience.resilient_provider import ResilientProvider, ResiliencePolicy


# -------- helpers --------

async def _no_sleep(*_):
    return None


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    # no sleeping during tests
    monkeypatch.setattr(rp_module, "asyncio", SimpleNamespace(sleep=_no_sleep))


class FlakyThenOK:
    def __init__(self, fail_times=2, exc=TimeoutError):
        self.calls = 0
        self.fail_times = fail_times
        self.exc = exc
        self.model = "flaky"

    async def generate(self, _):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise self.exc("boom")
        return Completion(text="ok")

    async def stream(self, _):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise self.exc("boom")
        yield StreamChunk(text="ok")


class MidStreamBoom:
    model = "mid"

    def __init__(self):
        self.calls = 0

    async def generate(self, _):
        return Completion(text="ok")

    async def stream(self, _):
        self.calls += 1
        yield StreamChunk(text="he")
        raise ProviderTransientError("boom mid-stream")


async def _collect(agen):
    return [c.text async for c in agen]


# -------- tests --------

@pytest.mark.asyncio
async def test_generate_retries_then_succeeds():
    inner = FlakyThenOK(fail_times=2)
    rp = ResilientProvider(inner, ResiliencePolicy(max_retries=5, base_delay=0))
    assert (await rp.generate([])).text == "ok"
    assert inner.calls == 3


@pytest.mark.asyncio
async def test_transient_provider_error_is_retried():
    inner = FlakyThenOK(fail_times=1, exc=ProviderTransientError)
    rp = ResilientProvider(inner, ResiliencePolicy(max_retries=2, base_delay=0))
    assert (await rp.generate([])).text == "ok"


@pytest.mark.asyncio
async def test_client_error_is_not_retried_and_keeps_type():
    inner = FlakyThenOK(fail_times=5, exc=ProviderClientError)
    rp = ResilientProvider(inner, ResiliencePolicy(max_retries=3))
    with pytest.raises(ProviderClientError, match="failed after retries"):
        await rp.generate([])
    assert inner.calls == 1


@pytest.mark.asyncio
async def test_non_retryable_becomes_provider_error():
    inner = FlakyThenOK(fail_times=5, exc=ValueError)
    rp = ResilientProvider(inner, ResiliencePolicy(max_retries=3))
    with pytest.raises(ProviderError):
        await rp.generate([])
    assert inner.calls == 1


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    inner = FlakyThenOK(fail_times=10)
    rp = ResilientProvider(inner, ResiliencePolicy(max_retries=2, base_delay=0))
    with pytest.raises(ProviderError):
        await rp.generate([])
    assert inner.calls == 3


@pytest.mark.asyncio
async def test_total_timeout_enforced(monkeypatch):
    # Force elapsed time to exceed total_timeout immediately. Only the module's
    # clock is replaced; the event loop keeps the real one.
    times = iter([0.0, 10.0, 10.0])
    monkeypatch.setattr(rp_module, "time", SimpleNamespace(monotonic=lambda: next(times)))
    inner = FlakyThenOK(fail_times=10)
    rp = ResilientProvider(inner, ResiliencePolicy(max_retries=5, base_delay=0, total_timeout=0.1))
    with pytest.raises(ProviderError):
        await rp.generate([])
    assert inner.calls == 1


@pytest.mark.asyncio
async def test_stream_retries_only_before_first_chunk():
    rp = ResilientProvider(FlakyThenOK(fail_times=1), ResiliencePolicy(max_retries=3, base_delay=0))
    assert await _collect(rp.stream([])) == ["ok"]


@pytest.mark.asyncio
async def test_stream_midway_failure_bubbles():
    inner = MidStreamBoom()
    rp = ResilientProvider(inner, ResiliencePolicy())
    agen = rp.stream([])
    assert (await agen.__anext__()).text == "he"
    # not retried mid-stream
    with pytest.raises(ProviderTransientError):
        await agen.__anext__()
    assert inner.calls == 1


@pytest.mark.asyncio
async def test_keyboard_interrupt_passthrough():
    class Kb:
        model = "kb"
        async def generate(self, _): raise KeyboardInterrupt()
        async def stream(self, _):
            raise KeyboardInterrupt()
            yield  # pragma: no cover
    rp = ResilientProvider(Kb(), ResiliencePolicy())
    with pytest.raises(KeyboardInterrupt):
        await rp.generate([])
    with pytest.raises(KeyboardInterrupt):
        await _collect(rp.stream([]))


def test_policy_from_config_and_backoff_cap():
    p = ResiliencePolicy.from_config({"max_retries": 1, "base_delay": 1, "max_delay": 2.5})
    assert (p.max_retries, p.base_delay, p.max_delay, p.total_timeout) == (1, 1.0, 2.5, 30.0)
    assert p.compute_backoff(10) == 2.5
    assert 1.0 <= p.compute_backoff(1) <= 1.1
