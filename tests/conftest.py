"""Shared pytest fixtures: a browserless stand-in for the WhatsApp Web client."""

from collections import defaultdict
from typing import Any, List, Optional

import httpx
import pytest
import pytest_asyncio

from whatsapp_gateway.config import Settings
from whatsapp_gateway.main import create_app
from whatsapp_gateway.session import ReconnectPolicy, SessionManager

API_KEY = "test-key"
RECONNECT_DELAY = 0.05


class FakeClient:
    """Records calls and lets tests fire lifecycle events by hand."""

    def __init__(self, registered: bool = True):
        self.handlers = defaultdict(list)
        self.registered = registered
        self.initialized = False
        self.destroyed = False
        self.logged_out = False
        self.init_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.logout_error: Optional[Exception] = None
        self.checked: List[str] = []
        self.sent: List[tuple] = []

    def on(self, event: str, handler: Any) -> None:
        self.handlers[event].append(handler)

    async def emit(self, event: str, *args: Any) -> None:
        for handler in self.handlers[event]:
            await handler(*args)

    async def initialize(self) -> None:
        if self.init_error:
            raise self.init_error
        self.initialized = True

    async def destroy(self) -> None:
        self.destroyed = True

    async def is_registered_user(self, chat_id: str) -> bool:
        self.checked.append(chat_id)
        return self.registered

    async def send_message(self, chat_id: str, content: Any, caption: Optional[str] = None):
        if self.send_error:
            raise self.send_error
        self.sent.append((chat_id, content, caption))
        return {"chat_id": chat_id}

    async def logout(self) -> None:
        if self.logout_error:
            raise self.logout_error
        self.logged_out = True
        await self.emit("disconnected", "LOGOUT")


@pytest.fixture
def clients() -> List[FakeClient]:
    return []


@pytest.fixture
def client_factory(clients):
    def make() -> FakeClient:
        c = FakeClient()
        clients.append(c)
        return c
    return make


@pytest_asyncio.fixture
async def session(client_factory):
    manager = SessionManager(
        client_factory=client_factory,
        policy=ReconnectPolicy(delay=RECONNECT_DELAY),
        qr_renderer=lambda code: f"data:image/png;base64,{code}",
    )
    yield manager
    await manager.stop()


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key=API_KEY, port=3000)


@pytest.fixture
def app(settings, session):
    return create_app(settings=settings, session=session)


@pytest_asyncio.fixture
async def http(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers():
    return {"x-api-key": API_KEY}


async def connect(session: SessionManager, clients: List[FakeClient]) -> FakeClient:
    """Initialize a session and drive it to ready."""
    await session.initialize()
    client = clients[-1]
    await client.emit("authenticated")
    await client.emit("ready")
    return client
