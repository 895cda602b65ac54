"""
Rate-limited invoker for calls against the accounting API.

Every upstream request goes through ``RateLimitedInvoker.invoke`` so the
concurrency ceiling, the per-call timeout and the retry policy live in one
place instead of at each call site:

  429            wait exactly what Retry-After says, then retry
  409 / 5xx      exponential backoff (base * 2^attempt, capped)
  other 4xx      returned at once, never retried
  network error  retried with backoff; a timed-out call counts as one attempt

Outcomes are values: callers get an ``UpstreamResponse`` or an
``UpstreamFailure`` and never have to catch upstream exceptions.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

from ledgerflow.core.clock import Clock, as_utc, system_clock
from ledgerflow.core.config import settings
from ledgerflow.core.errors import (
    AuthError,
    InternalError,
    LedgerflowError,
    RateLimited,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {409, 429, 500, 502, 503, 504}
TRANSIENT_EXCEPTIONS = (asyncio.TimeoutError, httpx.TransportError)


# ─── Result values ────────────────────────────────────────────────────────────

@dataclass
class UpstreamResponse:
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    payload: Any = None

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def retry_after(self, now: datetime) -> float | None:
        """Seconds to wait per the Retry-After header (delta-seconds or HTTP date)."""
        raw = self.headers.get("retry-after")
        if not raw:
            return None
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            logger.warning("Unparseable Retry-After header: %r", raw)
            return None
        return max(0.0, (as_utc(when) - as_utc(now)).total_seconds())


@dataclass
class UpstreamFailure:
    kind: str                     # rate_limited | unavailable | auth | client_error
    message: str
    attempts: int
    status_code: int | None = None

    def to_error(self) -> LedgerflowError:
        if self.kind == "rate_limited":
            return RateLimited(self.message)
        if self.kind == "unavailable":
            return UpstreamUnavailable(self.message, detail={"attempts": self.attempts})
        if self.kind == "auth":
            return AuthError("expired", self.message)
        return InternalError(self.message, detail={"status_code": self.status_code})


UpstreamCall = Callable[[], Awaitable[UpstreamResponse]]


def _should_retry(response: UpstreamResponse) -> bool:
    return response.status_code in RETRYABLE_STATUSES


def _describe(response: UpstreamResponse) -> str:
    payload = response.payload
    if isinstance(payload, dict):
        detail = payload.get("Message") or payload.get("Detail") or payload.get("message")
        if detail:
            return f"HTTP {response.status_code}: {detail}"
    return f"HTTP {response.status_code}"


# ─── Invoker ──────────────────────────────────────────────────────────────────

class RateLimitedInvoker:
    """Concurrency ceiling + retry policy for one tenant's upstream calls."""

    def __init__(
        self,
        tenant_id: str,
        *,
        clock: Clock = system_clock,
        max_concurrency: int | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        call_timeout: float | None = None,
    ):
        self.tenant_id = tenant_id
        self._clock = clock
        self.max_concurrency = max_concurrency or settings.upstream_max_concurrency
        self.max_retries = settings.upstream_max_retries if max_retries is None else max_retries
        self.base_delay = settings.upstream_base_delay_seconds if base_delay is None else base_delay
        self.max_delay = settings.upstream_max_delay_seconds if max_delay is None else max_delay
        self.call_timeout = call_timeout or settings.upstream_call_timeout_seconds
        self._semaphore = asyncio.Semaphore(self.max_concurrency)

    async def invoke(self, call: UpstreamCall) -> UpstreamResponse | UpstreamFailure:
        attempts = 0

        async def attempt() -> UpstreamResponse:
            nonlocal attempts
            attempts += 1
            async with self._semaphore:
                response = await asyncio.wait_for(call(), timeout=self.call_timeout)
            self._log_rate_headers(response)
            return response

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_result(_should_retry) | retry_if_exception_type(TRANSIENT_EXCEPTIONS),
            sleep=self._clock.sleep,
            before_sleep=self._before_sleep,
            retry_error_callback=self._exhausted,
        )
        result = await retrying(attempt)

        if isinstance(result, UpstreamFailure) or result.ok:
            return result

        kind = "auth" if result.status_code in (401, 403) else "client_error"
        logger.warning("Upstream rejected call for tenant %s: %s", self.tenant_id, _describe(result))
        return UpstreamFailure(
            kind=kind,
            message=_describe(result),
            attempts=attempts,
            status_code=result.status_code,
        )

    # ─── tenacity hooks ──────────────────────────────────────────────────────

    def _wait(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and not outcome.failed:
            response = outcome.result()
            if response.status_code == 429:
                delay = response.retry_after(self._clock.now())
                if delay is not None:
                    return delay
        return min(self.base_delay * 2 ** (retry_state.attempt_number - 1), self.max_delay)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        if outcome.failed:
            cause = repr(outcome.exception())
        else:
            cause = f"HTTP {outcome.result().status_code}"
        logger.warning(
            "Upstream %s for tenant %s (attempt %d/%d), retrying in %.1fs",
            cause,
            self.tenant_id,
            retry_state.attempt_number,
            self.max_retries + 1,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    def _exhausted(self, retry_state: RetryCallState) -> UpstreamFailure:
        outcome = retry_state.outcome
        attempts = retry_state.attempt_number
        if outcome.failed:
            exc = outcome.exception()
            message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            logger.error("Upstream unreachable for tenant %s after %d attempts: %s", self.tenant_id, attempts, message)
            return UpstreamFailure("unavailable", message, attempts)

        response = outcome.result()
        kind = "rate_limited" if response.status_code == 429 else "unavailable"
        logger.error(
            "Upstream retry budget exhausted for tenant %s after %d attempts: %s",
            self.tenant_id, attempts, _describe(response),
        )
        return UpstreamFailure(kind, _describe(response), attempts, response.status_code)

    def _log_rate_headers(self, response: UpstreamResponse) -> None:
        problem = response.headers.get("x-rate-limit-problem")
        if problem:
            logger.warning("Upstream %s rate limit hit for tenant %s", problem, self.tenant_id)
        remaining = response.headers.get("x-minlimit-remaining") or response.headers.get("x-rate-limit-remaining")
        if remaining is not None:
            logger.debug("Upstream calls remaining for tenant %s: %s", self.tenant_id, remaining)


class InvokerRegistry:
    """One invoker (and so one concurrency ceiling) per tenant."""

    def __init__(self, clock: Clock = system_clock, **tuning):
        self._clock = clock
        self._tuning = tuning
        self._invokers: dict[str, RateLimitedInvoker] = {}

    def for_tenant(self, tenant_id: str) -> RateLimitedInvoker:
        invoker = self._invokers.get(tenant_id)
        if invoker is None:
            invoker = RateLimitedInvoker(tenant_id, clock=self._clock, **self._tuning)
            self._invokers[tenant_id] = invoker
        return invoker
