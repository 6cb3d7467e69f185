"""Shared fixtures: credentials, a controllable clock and a fake QuickBooks."""

import asyncio
from datetime import datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio

from quickbooks_mcp.auth import TokenManager
from quickbooks_mcp.client import QuickBooksClient
from quickbooks_mcp.models import Credentials

TOKEN_HOST = "oauth.platform.intuit.com"
COMPANY_ID = "9130"
BASE_PATH = f"/v3/company/{COMPANY_ID}"


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class MockQuickBooks:
    """httpx MockTransport handler standing in for Intuit's servers.

    Token requests are answered with ``token_reply``; API requests are
    answered from ``routes`` keyed by (method, path below the company).
    """

    def __init__(self) -> None:
        self.token_requests: list[httpx.Request] = []
        self.requests: list[httpx.Request] = []
        self.token_reply: tuple[int, Any] = (
            200,
            {"access_token": "abc", "refresh_token": "xyz", "expires_in": 3600},
        )
        self.token_error: Exception | None = None
        self.api_error: Exception | None = None
        self.routes: dict[tuple[str, str], tuple[int, Any]] = {}

    def route(self, method: str, path: str, status: int = 200, json: Any = None) -> None:
        self.routes[(method, BASE_PATH + path)] = (status, json)

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        # Yield so concurrent callers interleave as they would on a real socket
        await asyncio.sleep(0)
        if request.url.host == TOKEN_HOST:
            self.token_requests.append(request)
            if self.token_error is not None:
                raise self.token_error
            status, body = self.token_reply
            if isinstance(body, bytes):
                return httpx.Response(status, content=body)
            return httpx.Response(status, json=body)

        self.requests.append(request)
        if self.api_error is not None:
            raise self.api_error
        status, body = self.routes.get(
            (request.method, request.url.path),
            (404, {"Fault": {"Error": [{"Message": "Not found"}]}}),
        )
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(
        client_id="client-id",
        client_secret="client-secret",
        refresh_token="refresh-1",
        company_id=COMPANY_ID,
        environment="sandbox",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_qbo() -> MockQuickBooks:
    return MockQuickBooks()


@pytest_asyncio.fixture
async def http_client(mock_qbo):
    client = httpx.AsyncClient(transport=httpx.MockTransport(mock_qbo))
    yield client
    await client.aclose()


@pytest.fixture
def token_manager(credentials, http_client, clock) -> TokenManager:
    return TokenManager(credentials, http_client=http_client, clock=clock)


@pytest.fixture
def qbo_client(credentials, token_manager, http_client) -> QuickBooksClient:
    return QuickBooksClient(credentials, token_manager=token_manager, http_client=http_client)
