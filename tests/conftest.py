from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from missionagent.config import AppSettings
from missionagent.db import Database
from missionagent.main import create_app
from missionagent.mission_store import MissionStore
from tests.fakes import FakeGeminiClient, FakeSerperClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        tavily_api_key=None,
        serper_api_key=None,
        gemini_api_key=None,
        llm_decisions=False,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        poll_interval_s=0.01,
        engine_autostart=False,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def store(tmp_path: Path) -> MissionStore:
    db = Database(str(tmp_path / "store.db"))
    await db.init()
    return MissionStore(db)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_tavily: FakeTavilyClient | None = None,
        fake_serper: FakeSerperClient | None = None,
        fake_gemini: FakeGeminiClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        serper_client = fake_serper or FakeSerperClient(api_key=settings.serper_api_key)
        gemini_client = fake_gemini or FakeGeminiClient(api_key=settings.gemini_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            tavily_client=tavily_client,
            serper_client=serper_client,
            gemini_client=gemini_client,
            config_path=cfg_path,
        )
        return app, cfg_path, gemini_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, gemini_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_gemini = gemini_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
