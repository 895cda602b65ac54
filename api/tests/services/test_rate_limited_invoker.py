"""
Tests for services/rate_limited_invoker.py

Run with:
    cd api && python -m pytest tests/services/test_rate_limited_invoker.py -v
"""
import asyncio
from datetime import timedelta
from email.utils import format_datetime

import httpx
import pytest

from ledgerflow.core.errors import InternalError, RateLimited, UpstreamUnavailable
from ledgerflow.services.rate_limited_invoker import (
    InvokerRegistry,
    RateLimitedInvoker,
    UpstreamFailure,
    UpstreamResponse,
)


def scripted(*responses):
    """Call that returns (or raises) the given items in order and counts invocations."""
    queue = list(responses)
    calls = {"n": 0}

    async def call():
        calls["n"] += 1
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    return call, calls


def invoker(clock, **kw):
    kw.setdefault("max_retries", 2)
    kw.setdefault("base_delay", 1.0)
    kw.setdefault("max_delay", 8.0)
    kw.setdefault("call_timeout", 5.0)
    return RateLimitedInvoker("tenant-1", clock=clock, **kw)


# ── Success and permanent failures ────────────────────────────────────────────

class TestImmediateOutcomes:
    @pytest.mark.asyncio
    async def test_success_returns_response_without_sleeping(self, clock):
        call, calls = scripted(UpstreamResponse(200, payload={"ok": True}))
        result = await invoker(clock).invoke(call)
        assert isinstance(result, UpstreamResponse)
        assert result.payload == {"ok": True}
        assert calls["n"] == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, clock):
        call, calls = scripted(UpstreamResponse(400, payload={"Message": "bad where clause"}))
        result = await invoker(clock).invoke(call)
        assert isinstance(result, UpstreamFailure)
        assert result.kind == "client_error"
        assert result.status_code == 400
        assert result.attempts == 1
        assert "bad where clause" in result.message
        assert calls["n"] == 1
        assert isinstance(result.to_error(), InternalError)

    @pytest.mark.asyncio
    async def test_unauthorized_maps_to_auth_failure(self, clock):
        call, _ = scripted(UpstreamResponse(401))
        result = await invoker(clock).invoke(call)
        assert result.kind == "auth"
        assert result.to_error().reason == "expired"

    @pytest.mark.asyncio
    async def test_not_modified_is_a_response(self, clock):
        call, _ = scripted(UpstreamResponse(304))
        result = await invoker(clock).invoke(call)
        assert isinstance(result, UpstreamResponse)
        assert result.status_code == 304


# ── Retry policy ──────────────────────────────────────────────────────────────

class TestRetries:
    @pytest.mark.asyncio
    async def test_server_errors_back_off_exponentially(self, clock):
        call, calls = scripted(UpstreamResponse(503), UpstreamResponse(502), UpstreamResponse(200))
        result = await invoker(clock).invoke(call)
        assert result.status_code == 200
        assert calls["n"] == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, clock):
        call, calls = scripted(UpstreamResponse(409), UpstreamResponse(200))
        result = await invoker(clock).invoke(call)
        assert result.ok
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, clock):
        call, _ = scripted(*[UpstreamResponse(500)] * 4, UpstreamResponse(200))
        result = await invoker(clock, max_retries=4, max_delay=3.0).invoke(call)
        assert result.ok
        assert clock.sleeps == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_rate_limit_waits_exactly_retry_after(self, clock):
        call, _ = scripted(UpstreamResponse(429, headers={"Retry-After": "7"}), UpstreamResponse(200))
        result = await invoker(clock).invoke(call)
        assert result.ok
        assert clock.sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_rate_limit_accepts_http_date(self, clock):
        when = format_datetime(clock.now() + timedelta(seconds=30), usegmt=True)
        call, _ = scripted(UpstreamResponse(429, headers={"retry-after": when}), UpstreamResponse(200))
        await invoker(clock).invoke(call)
        assert clock.sleeps == [30.0]

    @pytest.mark.asyncio
    async def test_rate_limit_without_header_uses_backoff(self, clock):
        call, _ = scripted(UpstreamResponse(429), UpstreamResponse(200))
        await invoker(clock).invoke(call)
        assert clock.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self, clock):
        call, calls = scripted(httpx.ConnectError("refused"), UpstreamResponse(200))
        result = await invoker(clock).invoke(call)
        assert result.ok
        assert calls["n"] == 2


# ── Exhausted retry budget ────────────────────────────────────────────────────

class TestExhaustion:
    @pytest.mark.asyncio
    async def test_persistent_server_error_becomes_unavailable(self, clock):
        call, calls = scripted(*[UpstreamResponse(503)] * 3)
        result = await invoker(clock).invoke(call)
        assert isinstance(result, UpstreamFailure)
        assert result.kind == "unavailable"
        assert result.attempts == 3
        assert calls["n"] == 3
        assert isinstance(result.to_error(), UpstreamUnavailable)

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_becomes_rate_limited(self, clock):
        call, _ = scripted(*[UpstreamResponse(429, headers={"Retry-After": "1"})] * 3)
        result = await invoker(clock).invoke(call)
        assert result.kind == "rate_limited"
        assert isinstance(result.to_error(), RateLimited)

    @pytest.mark.asyncio
    async def test_timed_out_calls_count_as_attempts(self, clock):
        calls = {"n": 0}

        async def hang():
            calls["n"] += 1
            await asyncio.Event().wait()

        result = await invoker(clock, call_timeout=0.01).invoke(hang)
        assert result.kind == "unavailable"
        assert result.attempts == 3
        assert calls["n"] == 3


# ── Concurrency ceiling ───────────────────────────────────────────────────────

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_in_flight_calls_never_exceed_ceiling(self, clock):
        inv = invoker(clock, max_concurrency=2)
        state = {"in_flight": 0, "peak": 0}

        async def call():
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0.01)
            state["in_flight"] -= 1
            return UpstreamResponse(200)

        results = await asyncio.gather(*[inv.invoke(call) for _ in range(6)])
        assert all(r.ok for r in results)
        assert state["peak"] == 2

    def test_registry_reuses_invoker_per_tenant(self, clock):
        registry = InvokerRegistry(clock=clock, max_concurrency=3)
        a = registry.for_tenant("a")
        assert registry.for_tenant("a") is a
        assert registry.for_tenant("b") is not a
        assert a.max_concurrency == 3
