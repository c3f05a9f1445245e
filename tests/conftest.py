"""
Shared fixtures: an in-memory Mongo, a scripted Teller, the stub SnapTrade
client and an ASGI client wired to app.state without running the lifespan.
"""

import json
import re

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from flint.db import ensure_indexes
from flint.services.market_data import CandleService, MarketDataService, PolygonCandleProvider, StaticQuoteProvider
from flint.services.snaptrade_client import StubSnapTradeClient


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["flint_test"]
    await ensure_indexes(database)
    return database


class FakeTeller:
    """
    Routes Teller REST paths to canned JSON. Register handlers with
    ``on(method, path_regex, status, body)``; unmatched calls return 404.
    """

    def __init__(self):
        self.routes = []
        self.calls = []

    def on(self, method, pattern, body=None, status=200):
        self.routes.insert(0, (method, re.compile(f"^{pattern}$"), status, body))
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        for method, pattern, status, body in self.routes:
            if method == request.method and pattern.match(request.url.path):
                payload = body(request) if callable(body) else body
                if isinstance(payload, str):
                    return httpx.Response(status, text=payload)
                return httpx.Response(status, content=json.dumps(payload), headers={"content-type": "application/json"})
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def teller():
    return FakeTeller()


@pytest.fixture
async def http(teller):
    client = httpx.AsyncClient(transport=httpx.MockTransport(teller.handler))
    yield client
    await client.aclose()


@pytest.fixture
def snaptrade():
    return StubSnapTradeClient()


class RecordingScheduler:
    def __init__(self):
        self.payment_polls = []
        self.trade_polls = []

    def enqueue_payment_poll(self, payment_id):
        self.payment_polls.append(payment_id)

    def enqueue_trade_poll(self, trade_id):
        self.trade_polls.append(trade_id)


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def market_data():
    return MarketDataService([StaticQuoteProvider()])


@pytest.fixture
def candles(http):
    # shares the scripted transport, so tests register Polygon paths on `teller`
    return CandleService([PolygonCandleProvider(http, "test-key", "https://polygon.test")])


@pytest.fixture
async def api(db, http, snaptrade, market_data, candles, scheduler):
    from flint.main import app

    app.state.mongodb = db
    app.state.http = http
    app.state.snaptrade = snaptrade
    app.state.market_data = market_data
    app.state.candles = candles
    app.state.scheduler = scheduler

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def login(api):
    async def _login(email="user@example.com"):
        resp = await api.post("/api/auth/login", json={"email": email})
        assert resp.status_code == 200, resp.text
        return resp.json()["user"]
    return _login


@pytest.fixture
def teller_account_payloads():
    checking = {
        "id": "acc_chk",
        "name": "Everyday Checking",
        "type": "depository",
        "subtype": "checking",
        "last_four": "1234",
        "currency": "USD",
        "enrollment_id": "enr_1",
        "institution": {"id": "chase", "name": "Chase"},
    }
    card = {
        "id": "acc_card",
        "name": "Sapphire",
        "type": "credit",
        "subtype": "credit_card",
        "last_four": "9876",
        "currency": "USD",
        "enrollment_id": "enr_1",
        "institution": {"id": "chase", "name": "Chase"},
    }
    return checking, card
