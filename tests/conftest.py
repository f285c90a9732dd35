import asyncio
import os

# Keep the module-level app in accesshub.main away from the broker and cwd
os.environ.setdefault("MQTT_ENABLED", "false")
os.environ.setdefault("LOG_FILE", "")

import pytest
import pytest_asyncio
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from accesshub.config import Settings
from accesshub.database import init_models
from accesshub.main import create_app
from accesshub.services import build_services


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'accesshub.db'}",
        MQTT_ENABLED=False,
        LOG_FILE=None,
        LOG_LIMIT_DEFAULT=50,
        LOG_LIMIT_MAX=100,
        SUBSCRIBER_QUEUE_SIZE=8,
    )


@pytest_asyncio.fixture
async def services(settings):
    services = build_services(settings)
    await init_models(services.engine)
    yield services
    await services.stop()


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


class FakeWebSocket:
    """Records what the hub sends; receive_text() blocks until a frame is fed in."""

    def __init__(self, stall: bool = False):
        self.sent = []
        self.accepted = False
        self.closed_with = None
        self.stall = stall
        self._incoming = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.stall and self.sent:
            # A dead peer: everything after the snapshot hangs
            await asyncio.Event().wait()
        self.sent.append(message)

    async def receive_text(self):
        text = await self._incoming.get()
        if text is None:
            raise WebSocketDisconnect(code=1000)
        return text

    async def close(self, code=1000):
        self.closed_with = code

    def feed(self, text):
        self._incoming.put_nowait(text)

    def hang_up(self):
        self._incoming.put_nowait(None)


@pytest.fixture
def fake_websocket():
    return FakeWebSocket
