from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from meetprep.config import AppSettings
from meetprep.main import create_app
from tests.fakes import FakeChatClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        model_base_url="http://model.test/v1",
        model_api_key=None,
        model_id="test-model",
        tavily_api_key="test-key",
        max_steps=10,
        run_timeout_s=5.0,
        tool_timeout_s=2.0,
        model_timeout_s=2.0,
        heartbeat_interval_s=25.0,
        watchdog_grace_s=1.0,
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_chat: FakeChatClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        chat_client = fake_chat or FakeChatClient()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, chat_client=chat_client, tavily_client=tavily_client, config_path=cfg_path)
        return app, cfg_path, chat_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, chat_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_chat = chat_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
