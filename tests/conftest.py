"""Pytest configuration and fixtures."""

import json

import pytest
from fastapi.testclient import TestClient

from gateway import ConnectionGateway
from registry import DeviceRegistry
from router import SessionRouter
from sessions import SessionTracker
from storage import ObjectNotFound, ObjectStore, StorageError, StoredObject


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket; records what the server sends."""

    def __init__(self, fail_sends: bool = False):
        self.sent: list[dict] = []
        self.closed_with = None
        self.fail_sends = fail_sends

    async def send_text(self, text: str):
        if self.fail_sends:
            raise RuntimeError("Cannot call send once a close message has been sent")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000):
        self.closed_with = code

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == msg_type]


class MemoryStore(ObjectStore):
    """Dict-backed object store with the same write-once semantics as the real one."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_with = None

    def public_url(self, path: str) -> str:
        return f"https://store.test/storage/v1/object/public/video-kiosk/{path}"

    async def put(self, path, data, content_type="video/webm"):
        if self.fail_with:
            raise self.fail_with
        if path in self.objects:
            raise StorageError("The resource already exists", 409)
        self.objects[path] = data
        return self.public_url(path)

    async def get(self, path):
        if path not in self.objects:
            raise ObjectNotFound(path)
        return StoredObject(self.objects[path])


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend."""
    return "asyncio"


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def gateway():
    return ConnectionGateway()


@pytest.fixture
def sessions():
    return SessionTracker(timeout=30, history_ttl=60)


@pytest.fixture
def router(registry, gateway, sessions):
    return SessionRouter(registry, gateway, sessions)


@pytest.fixture
def connect(gateway):
    """Open a fake connection on the gateway. Returns (handle, ws)."""

    def _connect(fail_sends: bool = False):
        ws = FakeWebSocket(fail_sends=fail_sends)
        conn = gateway.connect(ws)
        return conn.handle, ws

    return _connect


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def server_app(monkeypatch, store):
    """The real FastAPI app with fresh relay state and an in-memory store."""
    import server

    registry = DeviceRegistry()
    gateway = ConnectionGateway()
    sessions = SessionTracker(timeout=30, history_ttl=60)
    monkeypatch.setattr(server, "registry", registry)
    monkeypatch.setattr(server, "gateway", gateway)
    monkeypatch.setattr(server, "sessions", sessions)
    monkeypatch.setattr(server, "relay", SessionRouter(registry, gateway, sessions))
    monkeypatch.setattr(server, "_store", store)
    return server


@pytest.fixture
def client(server_app, monkeypatch):
    """TestClient with the lifespan running, so every socket shares one event loop."""
    import config

    monkeypatch.setattr(config, "SUPABASE_URL", "https://store.test")
    monkeypatch.setattr(config, "SUPABASE_SERVICE_KEY", "service-key")
    monkeypatch.setattr(config, "SUPABASE_ANON_KEY", "anon-key")
    with TestClient(server_app.app) as test_client:
        yield test_client
