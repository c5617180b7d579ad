"""Pytest configuration for relay tests

WHAT: Shared fixtures for store, pipeline, dispatcher and HTTP endpoint tests
WHY: Every test gets its own SQLite file and a mocked set of platform APIs,
     so nothing leaves the process and tests never share state
REFERENCES:
    - utmrelay/main.py: create_app
    - utmrelay/state.py: build_context
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, List

import httpx
import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from utmrelay.deps import Settings
from utmrelay.main import create_app
from utmrelay.services.pixel_registry import register_pixel
from utmrelay.state import build_context

ADMIN_KEY = "admin-test-key"


# ============================================================================
# Platform API mock
# ============================================================================

class PlatformAPI:
    """Records outbound conversion calls and answers like each platform would."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.failing_hosts: Dict[str, int] = {}
        self.delay = 0.01

    def fail(self, host: str, status_code: int = 500) -> None:
        self.failing_hosts[host] = status_code

    def calls_to(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def bodies_to(self, host: str) -> List[dict]:
        return [json.loads(r.content) for r in self.calls_to(host)]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        # Keep the request "in flight" long enough for concurrent callers to overlap
        await asyncio.sleep(self.delay)

        host = request.url.host
        if host in self.failing_hosts:
            return httpx.Response(self.failing_hosts[host], json={"error": {"message": "boom"}})
        if host == "graph.facebook.com":
            return httpx.Response(200, json={"events_received": 1, "fbtrace_id": "trace"})
        if host == "business-api.tiktok.com":
            return httpx.Response(200, json={"code": 0, "message": "OK", "request_id": "req"})
        if host == "www.adsnebula.com":
            return httpx.Response(200, json={"result": 1})
        if host == "api.utmify.com.br":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404, json={})


# ============================================================================
# Settings / Context Fixtures
# ============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'relay.db'}",
        TOKEN_ENCRYPTION_KEY=Fernet.generate_key().decode(),
        ADMIN_API_KEY=ADMIN_KEY,
    )


@pytest.fixture
def platform_api() -> PlatformAPI:
    return PlatformAPI()


@pytest.fixture
def context(settings, platform_api):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(platform_api.handler))
    relay = build_context(settings, http_client=http_client)
    relay.create_tables()
    yield relay
    relay.engine.dispose()


@pytest.fixture
def db(context):
    with context.session() as session:
        yield session


@pytest.fixture
def add_pixel(context):
    """Register a pixel through the registry (token encrypted like in production)."""

    def _add(platform: str, pixel_id: str, test_event_code=None, name=None):
        with context.session() as session:
            return register_pixel(
                session,
                context.cipher,
                name=name or f"{platform} pixel",
                platform=platform,
                pixel_id=pixel_id,
                access_token=f"token-{pixel_id}",
                test_event_code=test_event_code,
            )

    return _add


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(context):
    return create_app(context=context)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": ADMIN_KEY}
