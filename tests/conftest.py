"""
Pytest configuration and shared fixtures.
"""

import threading
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from leadenrich.cache import ContactProjectionStore, ResultCache
from leadenrich.database import dispose_engines, get_session_factory, init_database
from leadenrich.errors import ProviderNotFoundError
from leadenrich.logger import get_logger, reset_logger
from leadenrich.metrics import get_metrics, reset_metrics
from leadenrich.orchestrator import EnrichmentOrchestrator
from leadenrich.providers.base import Contact, ProviderInvoker, ProviderResult


@pytest.fixture(autouse=True)
def quiet_globals():
    """Fresh global logger (no handlers) and metrics for every test."""
    reset_logger()
    reset_metrics()
    get_logger(enable_console=False, enable_file=False)
    yield
    reset_logger()
    reset_metrics()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "leadenrich.db"
    init_database(path)
    yield path
    dispose_engines()


@pytest.fixture
def session_factory(db_path):
    return get_session_factory(db_path)


class FakeClock:
    """Settable wall clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs):
        with self._lock:
            self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


class FakeProvider(ProviderInvoker):
    """
    In-memory provider that counts calls.

    ``script`` maps a subject id to outcomes consumed in order; an exception
    instance is raised, anything else falls through to a normal result.
    """

    def __init__(
        self,
        name: str = "fake",
        cost: Decimal = Decimal("0.25"),
        delay: float = 0.0,
        script: Optional[Dict[str, List[Any]]] = None,
        on_call=None,
    ):
        self.name = name
        self.version = "v1"
        self.cost = cost
        self.delay = delay
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.on_call = on_call
        self.calls = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def calls_for(self, subject_id: str) -> int:
        with self._lock:
            return sum(1 for r in self.calls if r.subject_id == subject_id)

    def call(self, request):
        with self._lock:
            self.calls.append(request)
            queued = self.script.get(request.subject_id)
            outcome = queued.pop(0) if queued else None
        if self.on_call is not None:
            self.on_call(request)
        if self.delay:
            time.sleep(self.delay)
        if isinstance(outcome, ProviderNotFoundError) and outcome.cost is None:
            outcome.cost = self.cost
        if isinstance(outcome, BaseException):
            raise outcome
        return ProviderResult(
            contacts=[
                Contact(kind="phone", value="+13125550100", type="mobile", confidence=0.9, source=self.name),
                Contact(kind="email", value=f"{request.subject_id}@example.com", confidence=0.6, source=self.name),
            ],
            cost=self.cost,
        )


@pytest.fixture
def provider():
    return FakeProvider()


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: str = "", headers=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeHttpSession:
    """
    Stand-in for requests.Session.

    ``responses`` are returned in order (the last one repeats); an exception
    instance is raised instead of returned.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [FakeResponse(200)])
        self.requests = []
        self._lock = threading.Lock()

    def post(self, url, data=None, json=None, headers=None, timeout=None):
        with self._lock:
            self.requests.append({"url": url, "data": data, "json": json, "headers": dict(headers or {}), "timeout": timeout})
            outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def make_orchestrator(session_factory, clock):
    """Build an orchestrator over the test database with a given provider."""

    def _make(provider: ProviderInvoker, **kwargs) -> EnrichmentOrchestrator:
        kwargs.setdefault("ttl_seconds", 3600)
        return EnrichmentOrchestrator(
            cache=ResultCache(session_factory, clock=clock),
            invoker=provider,
            contacts=ContactProjectionStore(session_factory, clock=clock),
            clock=clock,
            metrics=get_metrics(),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_provider():
    """Factory for FakeProvider instances with custom scripts or hooks."""
    return FakeProvider


@pytest.fixture
def make_http():
    """
    Build a FakeHttpSession. Integers become responses with that status code;
    exception instances are raised on their turn.
    """

    def _make(*outcomes) -> FakeHttpSession:
        responses = [FakeResponse(o) if isinstance(o, int) else o for o in outcomes]
        return FakeHttpSession(responses or None)

    return _make


@pytest.fixture
def make_response():
    return FakeResponse
