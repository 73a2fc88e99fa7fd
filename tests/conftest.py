"""
Shared test fixtures for gateway tests.

Everything runs in-process: the mock task platform executes the real key
manager and oracle code against the in-memory relay, with simulated
providers. SQL store tests need TEST_DATABASE_URL and skip otherwise.
"""
import os
from typing import AsyncGenerator

import pytest

from core.enclave import InMemorySecretRelay, MockTaskPlatform, default_apps, reset_enclave
from core.services import GatewayService
from core.storage import InMemoryGatewayStore, reset_store
from tests.utils.gateway_test_utils import FakeClock

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture(autouse=True)
def reset_singletons():
    """Factories hand out process-wide singletons; start every test clean."""
    reset_enclave()
    reset_store()
    yield
    reset_enclave()
    reset_store()


@pytest.fixture
def relay() -> InMemorySecretRelay:
    return InMemorySecretRelay()


@pytest.fixture
async def platform(relay) -> AsyncGenerator[MockTaskPlatform, None]:
    """In-process platform running the TEE apps with simulated providers."""
    platform = MockTaskPlatform(relay=relay, apps=default_apps(provider_mode="simulated"))
    yield platform
    await platform.close()


@pytest.fixture
def store() -> InMemoryGatewayStore:
    return InMemoryGatewayStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway(store, platform, relay, clock) -> GatewayService:
    """Gateway wired to in-process collaborators with fast polling."""
    return GatewayService(
        store=store,
        platform=platform,
        relay=relay,
        session_key_timeout=5.0,
        oracle_timeout=5.0,
        poll_interval=0.01,
        clock=clock,
    )
