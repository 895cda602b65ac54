"""
Shared fixtures for the ledgerflow test suite.

  clock        FakeClock: time only moves when a test (or a retry sleep) moves it
  kv           InMemoryKVStore driven by that clock
  session_factory  fresh in-memory SQLite database per test (aiosqlite)
  upstream     FakeUpstream: an accounting API served through httpx.MockTransport
  runtime      fully wired services against all of the above

Run from the repository root with:
    pip install -e ".[test]"
    pytest -v
"""
import os

from cryptography.fernet import Fernet

os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("UPSTREAM_CLIENT_ID", "test-client")
os.environ.setdefault("UPSTREAM_CLIENT_SECRET", "test-secret")

import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import ledgerflow.models.cashflow  # noqa: F401  (registers tables)
import ledgerflow.models.ledger  # noqa: F401
import ledgerflow.models.tenant  # noqa: F401
from ledgerflow.core.database import Base
from ledgerflow.core.deps import build_runtime
from ledgerflow.core.errors import AuthError
from ledgerflow.core.kvstore import InMemoryKVStore
from ledgerflow.services.accounting_client import parse_upstream_datetime
from ledgerflow.services.credentials import Credential
from ledgerflow.services.rate_limited_invoker import InvokerRegistry
from tests.builders import balance_sheet


# ── Clock ────────────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def today(self):
        return self.current.date()

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv(clock) -> InMemoryKVStore:
    return InMemoryKVStore(clock)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


# ── Fake accounting API ──────────────────────────────────────────────────────

class FakeUpstream:
    """In-memory accounting API. ``fail(path, page, status, ...)`` queues error responses."""

    PAGED = {"Contacts", "BankTransactions", "Invoices"}

    def __init__(self):
        self.data: dict[str, list[dict]] = {
            "Accounts": [], "Contacts": [], "BankTransactions": [], "Invoices": [], "RepeatingInvoices": [],
        }
        self.report = balance_sheet([])
        self.requests: list[httpx.Request] = []
        self.token_requests: list[httpx.Request] = []
        self.token_response = (200, {"access_token": "new-access", "refresh_token": "new-refresh",
                                     "expires_in": 1800, "scope": "accounting.transactions"})
        self._failures: dict[tuple[str, int], list[tuple[int, dict]]] = {}
        self.on_request = None

    def fail(self, path: str, page: int = 1, status: int = 503, times: int = 1, headers: dict | None = None):
        self._failures.setdefault((path, page), []).extend([(status, headers or {})] * times)

    def clear_failures(self):
        self._failures.clear()

    def requested_paths(self) -> list[str]:
        return [r.url.path.rsplit("/", 1)[-1] for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/connect/token"):
            self.token_requests.append(request)
            status, body = self.token_response
            return httpx.Response(status, json=body)

        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        path = request.url.path.rsplit("/", 1)[-1]
        page = int(request.url.params.get("page", 1))

        queued = self._failures.get((path, page))
        if queued:
            status, headers = queued.pop(0)
            return httpx.Response(status, headers=headers, json={"Message": f"simulated {status}"})

        if path == "BalanceSheet":
            return httpx.Response(200, json=self.report)

        records = list(self.data[path])
        since = request.headers.get("If-Modified-Since")
        if since:
            cutoff = parsedate_to_datetime(since)
            records = [r for r in records if parse_upstream_datetime(r["UpdatedDateUTC"]) > cutoff]

        if path in self.PAGED:
            size = int(request.url.params.get("pageSize", 100))
            records = records[(page - 1) * size: page * size]
        elif page > 1:
            records = []
        return httpx.Response(200, json={path: records})


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


class StaticCredentials:
    def __init__(self):
        self.error: AuthError | None = None
        self.calls = 0
        self.invalidated: list[str] = []

    async def get_valid_credential(self, tenant_id: str) -> Credential:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Credential("access", "refresh", datetime(2100, 1, 1, tzinfo=timezone.utc), ("accounting",))

    def invalidate(self, tenant_id: str) -> None:
        self.invalidated.append(tenant_id)


class InProcessDispatcher:
    """Runs dispatched syncs as asyncio tasks instead of Celery tasks."""

    def __init__(self):
        self.orchestrator = None
        self.tasks: list[asyncio.Task] = []
        self.dispatched: list[tuple[str, str]] = []

    def __call__(self, tenant_id: str, sync_id: str) -> None:
        self.dispatched.append((tenant_id, sync_id))
        self.tasks.append(asyncio.create_task(self.orchestrator.run_sync(tenant_id, None, sync_id=sync_id)))

    async def drain(self):
        return await asyncio.gather(*self.tasks)


@pytest_asyncio.fixture
async def http(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as client:
        yield client


@pytest.fixture
def credentials() -> StaticCredentials:
    return StaticCredentials()


@pytest.fixture
def dispatcher() -> InProcessDispatcher:
    return InProcessDispatcher()


@pytest.fixture
def runtime(kv, session_factory, http, clock, credentials, dispatcher):
    rt = build_runtime(
        kv=kv,
        session_factory=session_factory,
        http=http,
        clock=clock,
        dispatcher=dispatcher,
        credentials=credentials,
        invokers=InvokerRegistry(clock=clock, max_retries=2, base_delay=1.0, max_delay=8.0),
        page_size=2,
    )
    dispatcher.orchestrator = rt.orchestrator
    return rt
