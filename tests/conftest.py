import asyncio
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("PUBLIC_BASE_URL", "http://test")

from visionstudio.core.config import get_settings  # noqa: E402
from visionstudio.services.gateway import (  # noqa: E402
    AIGateway,
    GatewayError,
    HistoryTurn,
    ImageResult,
    InlineImage,
    ResearchResult,
    Source,
    TextResult,
    get_gateway,
)
from visionstudio.storage.base import get_storage  # noqa: E402
from visionstudio.stores.base import get_stores  # noqa: E402

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


class FakeGateway(AIGateway):
    """Deterministic gateway: fixed usage per call, optional injected failures and delays."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.usage = {"research": 40, "render": 60, "edit": 25, "compose": 30, "chat": 12, "title": 3}
        self.fail: dict[str, Exception] = {}
        self.delay: dict[str, float] = {}
        self.last_chat_history: list[HistoryTurn] = []

    async def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.delay:
            await asyncio.sleep(self.delay[name])
        if name in self.fail:
            raise self.fail[name]

    async def research(self, topic, *, level, style, language, aspect_ratio):
        await self._call("research")
        return ResearchResult(
            image_prompt=f"infographic about {topic} in {language}",
            facts=["fact one", "fact two"],
            sources=[Source(title="Example", url="https://example.com")],
            usage=self.usage["research"],
        )

    async def render(self, prompt, *, aspect_ratio):
        await self._call("render")
        return ImageResult(data=PNG, usage=self.usage["render"])

    async def edit(self, image: InlineImage, instruction):
        await self._call("edit")
        return ImageResult(data=PNG + image.data[:4], usage=self.usage["edit"])

    async def compose(self, prompt, images):
        await self._call("compose")
        return ImageResult(data=PNG, usage=self.usage["compose"])

    async def chat(self, model, history, message, attachments):
        await self._call("chat")
        self.last_chat_history = list(history)
        return TextResult(text=f"echo: {message}", usage=self.usage["chat"])

    async def title(self, text):
        await self._call("title")
        return TextResult(text="Short title", usage=self.usage["title"])


def _clear_caches() -> None:
    get_settings.cache_clear()
    get_stores.cache_clear()
    get_storage.cache_clear()
    get_gateway.cache_clear()


@pytest.fixture(autouse=True)
def isolated_backends(monkeypatch, tmp_path):
    """Fresh in-memory stores and a private asset directory per test."""
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_PATH", str(tmp_path / "assets"))
    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture
def stores():
    return get_stores()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateway_error():
    return GatewayError


@pytest.fixture
def make_account():
    from visionstudio.services import accounts as accounts_service

    async def _make(username: str = "alice", role: str = "user", balance: int = 1000, **kwargs):
        return await accounts_service.create_account(username, role=role, initial_grant=balance, **kwargs)

    return _make


def auth_headers(account) -> dict[str, str]:
    from visionstudio.services.accounts import issue_session_token
    return {"Authorization": f"Bearer {issue_session_token(account)}"}


@pytest_asyncio.fixture
async def client(gateway) -> AsyncGenerator[AsyncClient, None]:
    from visionstudio.main import app
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
