"""Shared fixtures for the server tests."""

import httpx
import pytest
import pytest_asyncio

from calculator_server.config import ServerConfig
from calculator_server.context import RequestContext
from calculator_server.metrics import ServerMetrics
from calculator_server.protocol.factory import create_engine
from calculator_server.server import create_app

BASE_URL = "http://localhost:1071"

JSON_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json, text/event-stream",
}


def rpc(method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


@pytest.fixture
def config():
    return ServerConfig(_env_file=None, progress_delay_ms=0, sample_tool_name="echo")


@pytest.fixture
def metrics():
    return ServerMetrics(capacity=1000)


@pytest.fixture
def context():
    return RequestContext.new(test=True)


@pytest.fixture
def engine(config, metrics):
    return create_engine(config, metrics)


@pytest.fixture
def app(config, metrics):
    return create_app(config, metrics)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as c:
        yield c
