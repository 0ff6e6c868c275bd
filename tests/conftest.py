"""
Pytest Configuration and Fixtures

Provides fixtures for:
- The fake channel/livechat backend (FastAPI, in memory)
- A BackendClient wired to it through httpx.ASGITransport
- Session service and takeover coordinator instances
"""
# The settings validator requires a token when DEBUG=False; set it before importing govconnect
import os
os.environ.setdefault("BACKEND_API_TOKEN", "test-token")
os.environ.setdefault("BACKEND_BASE_URL", "http://backend.test")

import pytest
from httpx import ASGITransport

from govconnect.domain.services.audit import AuditTrail
from govconnect.domain.services.backend_client import BackendClient
from govconnect.domain.services.channel_session_service import ChannelSessionService
from govconnect.domain.services.notifications import Notifier
from govconnect.domain.services.takeover_coordinator import TakeoverCoordinator
from tests.fake_backend import TENANT_A, TEST_TOKEN, create_fake_backend


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from govconnect.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture
def fake_backend():
    """(app, state) of a fresh fake backend"""
    return create_fake_backend()


@pytest.fixture
def backend_state(fake_backend):
    return fake_backend[1]


@pytest.fixture
async def backend_client(fake_backend):
    """BackendClient talking to the fake backend, no retry sleeps"""
    app, _ = fake_backend
    client = BackendClient(
        base_url="http://backend.test",
        token=TEST_TOKEN,
        transport=ASGITransport(app=app),
        backoff_base=0,
    )
    yield client
    await client.aclose()


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture
def audit_trail() -> AuditTrail:
    return AuditTrail()


@pytest.fixture
def session_service(backend_client, notifier, audit_trail) -> ChannelSessionService:
    return ChannelSessionService(backend_client, notifier=notifier, audit=audit_trail)


@pytest.fixture
def coordinator(backend_client, notifier, audit_trail) -> TakeoverCoordinator:
    return TakeoverCoordinator(
        backend_client,
        TENANT_A,
        notifier=notifier,
        audit=audit_trail,
        actor="admin-1",
    )
