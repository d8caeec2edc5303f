from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from main import app, get_gateway, get_storage
from notifications import MockSmsGateway
from storage import InMemoryStorage


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def gateway():
    return MockSmsGateway()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, 0))


@pytest.fixture
def client(storage, gateway):
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
