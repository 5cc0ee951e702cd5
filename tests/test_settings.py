import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from missionagent.config import AppSettings, load_settings


@pytest.mark.asyncio
async def test_get_settings_masks_api_keys(app_factory):
    app, _, _, _ = app_factory(tavily_api_key="secret-key", gemini_api_key="other-secret")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()
            assert data["settings"]["tavily_api_key"] == "********"
            assert data["settings"]["gemini_api_key"] == "********"
            assert data["settings"]["serper_api_key"] is None


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_enables_provider(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", json={"tavily_api_key": "new-key"})
            assert res.status_code == 200
            assert res.json()["providers"] == ["tavily"]
            health = (await client.get("/api/health")).json()
            assert health["providers"] == ["tavily"]
            assert app.state.settings.tavily_api_key == "new-key"

    saved = json.loads(config_path.read_text())
    assert saved["tavily_api_key"] == "new-key"


@pytest.mark.asyncio
async def test_post_settings_rejects_non_object(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", json=["not", "an", "object"])
            assert res.status_code == 400


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"tavily_api_key": "from-config", "gemini_model": "gemini-config"}))
    monkeypatch.setenv("TAVILY_API_KEY", "from-env")
    monkeypatch.setenv("GEMINI_MODEL", "gemini-env")
    monkeypatch.delenv("MISSIONAGENT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.tavily_api_key == "from-config"
    assert settings.gemini_model == "gemini-config"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"tavily_api_key": "from-config"}))
    monkeypatch.setenv("TAVILY_API_KEY", "from-env")
    monkeypatch.setenv("MISSIONAGENT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.tavily_api_key == "from-env"


def test_empty_config_key_falls_back_to_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"serper_api_key": ""}))
    monkeypatch.setenv("SERPER_API_KEY", "serper-env")
    monkeypatch.delenv("MISSIONAGENT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.serper_api_key == "serper-env"


def test_env_values_are_coerced(tmp_path, monkeypatch):
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setenv("POLL_INTERVAL_S", "2.5")
    monkeypatch.setenv("LLM_DECISIONS", "off")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.port == 9100
    assert settings.poll_interval_s == 2.5
    assert settings.llm_decisions is False


def test_available_providers_and_llm_flag():
    settings = AppSettings(serper_api_key="s", gemini_api_key="g", llm_decisions=True)
    assert settings.available_providers() == ["serper", "gemini"]
    assert settings.llm_enabled is True
    assert AppSettings(llm_decisions=True).llm_enabled is False
