"""Pytest configuration for tracking tests

WHAT: Shared fixtures for the preparation pipeline, session store, CAPI client and bridge
WHY: Deterministic clocks (dedup ids are per-second) and a fake Meta endpoint,
    so no test depends on wall time or network
REFERENCES:
    - app/services/funnel_bridge.py
    - app/services/meta_capi_service.py
"""

import json
import os
import sys
from pathlib import Path

import httpx
import pytest

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SENTRY_DSN", "")
os.environ.setdefault("VALIDATE_TOKEN_ON_STARTUP", "false")

from app.services.dedup_cache import DeduplicationCache  # noqa: E402
from app.services.event_preparation import EventPreparer  # noqa: E402
from app.services.funnel_bridge import FunnelBridge  # noqa: E402
from app.services.meta_capi_service import MetaCAPIService  # noqa: E402
from app.services.session_store import SessionStore  # noqa: E402

PIXEL_ID = "123456"
ACCESS_TOKEN = "test-token"
START_MS = 1_730_000_000_000


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# Fake Meta Graph API
# ============================================================================


class FakeMeta:
    """httpx MockTransport handler standing in for graph.facebook.com.

    Queued responses (httpx.Response or exceptions to raise) are consumed in
    order; once empty, every POST is acknowledged with the right count.
    """

    def __init__(self):
        self.requests = []
        self.queued = []

    def queue(self, *responses) -> None:
        self.queued.extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queued:
            item = self.queued.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if request.method == "GET":
            return httpx.Response(200, json={"id": PIXEL_ID, "name": "Test"})
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={"events_received": len(body["data"]), "fbtrace_id": "AbCdEf123"},
        )

    @property
    def payloads(self):
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]

    @property
    def events(self):
        return [event for payload in self.payloads for event in payload["data"]]


@pytest.fixture
def fake_meta():
    return FakeMeta()


@pytest.fixture
def sleeps():
    """Delays the CAPI client asked to sleep between attempts."""
    return []


@pytest.fixture
def capi(fake_meta, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return MetaCAPIService(
        pixel_id=PIXEL_ID,
        access_token=ACCESS_TOKEN,
        transport=httpx.MockTransport(fake_meta.handler),
        sleep=fake_sleep,
    )


# ============================================================================
# Core services
# ============================================================================


@pytest.fixture
def cache(clock):
    return DeduplicationCache(window_hours=24, clock=clock)


@pytest.fixture
def store(clock):
    return SessionStore(inactivity_hours=24, clock=clock)


@pytest.fixture
def preparer(cache, clock):
    return EventPreparer(cache=cache, currency="BRL", default_country="br", clock=clock)


@pytest.fixture
def bridge(store, preparer, capi):
    return FunnelBridge(store=store, preparer=preparer, capi=capi)
