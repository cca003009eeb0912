from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from deepsearch.config import AppSettings
from deepsearch.db import Database
from deepsearch.main import create_app
from tests.fakes import FakeChatModel, FakeTavilyClient
from tests.helpers import ALICE_TOKEN, BOB_TOKEN


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        model_base_url="http://model.test/v1",
        model_id="test-model",
        tavily_api_key="test-key",
        database_path=str(tmp_path / "test.db"),
        crawl_retry_delay_s=0.0,
        host="127.0.0.1",
        port=8000,
        api_tokens={ALICE_TOKEN: "alice", BOB_TOKEN: "bob"},
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_model: FakeChatModel | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        model_client = fake_model or FakeChatModel()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        app = create_app(settings, model_client=model_client, tavily_client=tavily_client)
        return app, model_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, model_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_model = model_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "store.db"))
    await database.init()
    return database
