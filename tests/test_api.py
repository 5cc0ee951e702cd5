import asyncio

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from missionagent.gemini import GeminiError
from tests.fakes import FakeGeminiClient, FakeTavilyClient


DECOMPOSITION = [
    {"description": "Research and define: photosynthesis."},
    {"description": "Look up the light-dependent reactions."},
]


@pytest.mark.asyncio
async def test_health_reports_providers(client):
    res = await client.get("/api/health")
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "ok"
    assert data["providers"] == []
    assert data["llm_decisions"] is False
    assert data["engine_running"] is False


@pytest.mark.asyncio
async def test_create_mission_without_llm_uses_fallback_task(client):
    res = await client.post("/api/missions", json={"goal": "  Map the ocean floor  "})
    assert res.status_code == 201
    mission = res.json()["mission"]
    assert mission["goal"] == "Map the ocean floor"
    assert mission["status"] == "pending"
    assert len(mission["tasks"]) == 1
    assert mission["tasks"][0]["id"] == f"{mission['id']}-task-fallback"

    logs = (await client.get(f"/api/missions/{mission['id']}/logs")).json()["logs"]
    assert any(entry["level"] == "error" and "Error decomposing" in entry["message"] for entry in logs)


@pytest.mark.asyncio
async def test_create_mission_with_gemini_decomposition(app_factory):
    gemini = FakeGeminiClient(responses=[DECOMPOSITION])
    app, _, _, _ = app_factory(gemini_api_key="gemini-test-key", fake_gemini=gemini)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post("/api/missions", json={"goal": "Understand photosynthesis"})
            assert res.status_code == 201
            mission = res.json()["mission"]
            assert [t["id"] for t in mission["tasks"]] == [
                f"{mission['id']}-task-001",
                f"{mission['id']}-task-002",
            ]
            assert mission["tasks"][1]["description"] == "Look up the light-dependent reactions."
            assert 'Mission: "Understand photosynthesis"' in gemini.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_empty_goal_is_rejected(client):
    res = await client.post("/api/missions", json={"goal": "   "})
    assert res.status_code == 400
    res = await client.post("/api/missions", json={})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_unknown_ids_return_404(client):
    assert (await client.get("/api/missions/nope")).status_code == 404
    assert (await client.delete("/api/missions/nope")).status_code == 404
    assert (await client.get("/api/missions/nope/logs")).status_code == 404
    assert (await client.get("/api/tasks/nope-task-001")).status_code == 404


@pytest.mark.asyncio
async def test_list_get_task_and_delete(client):
    first = (await client.post("/api/missions", json={"goal": "Goal one"})).json()["mission"]
    second = (await client.post("/api/missions", json={"goal": "Goal two"})).json()["mission"]

    listed = (await client.get("/api/missions")).json()["missions"]
    assert {m["id"] for m in listed} == {first["id"], second["id"]}
    assert (await client.get("/api/missions", params={"status": "completed"})).json()["missions"] == []

    task_id = first["tasks"][0]["id"]
    task = (await client.get(f"/api/tasks/{task_id}")).json()["task"]
    assert task["mission_id"] == first["id"]
    assert task["retries"] == 0

    assert (await client.delete(f"/api/missions/{first['id']}")).json() == {"ok": True}
    assert (await client.get(f"/api/missions/{first['id']}")).status_code == 404
    assert (await client.get(f"/api/tasks/{task_id}")).status_code == 404


@pytest.mark.asyncio
async def test_engine_autostart_processes_missions(app_factory):
    gemini = FakeGeminiClient(responses=[DECOMPOSITION])
    app, _, _, tavily = app_factory(
        engine_autostart=True,
        gemini_api_key="gemini-test-key",
        tavily_api_key="tavily-test-key",
        fake_gemini=gemini,
        fake_tavily=FakeTavilyClient(),
    )
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            health = (await http_client.get("/api/health")).json()
            assert health["engine_running"] is True
            mission = (await http_client.post("/api/missions", json={"goal": "Understand photosynthesis"})).json()[
                "mission"
            ]
            status = None
            for _ in range(300):
                status = (await http_client.get(f"/api/missions/{mission['id']}")).json()["mission"]["status"]
                if status == "completed":
                    break
                await asyncio.sleep(0.01)
            assert status == "completed"
            assert len(tavily.calls) == 2
    assert app.state.engine_task is None


@pytest.mark.asyncio
async def test_agent_status_lists_in_progress_missions(client):
    store = client.app.state.store
    idle = (await client.get("/api/agent/status")).json()
    assert idle == {"is_active": False, "active_mission_ids": [], "active_missions_count": 0, "active_task_ids": []}

    await store.create_mission("Running", [], mission_id="run-1")
    await store.create_mission("Waiting", [], mission_id="wait-1")
    await store.update_mission_status("run-1", "in-progress", "Mission processing started.")
    status = (await client.get("/api/agent/status")).json()
    assert status["is_active"] is True
    assert status["active_mission_ids"] == ["run-1"]
    assert status["active_missions_count"] == 1


@pytest.mark.asyncio
async def test_summarize_returns_gemini_summary(app_factory):
    gemini = FakeGeminiClient(responses=["This is a summary."])
    app, _, _, _ = app_factory(gemini_api_key="gemini-test-key", fake_gemini=gemini)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post(
                "/api/agent/summarize",
                json={"text_to_summarize": "A long piece of text to summarize.", "target_length": "short"},
            )
            assert res.status_code == 200
            assert res.json() == {"summary": "This is a summary."}
            assert gemini.calls[-1] == {"summarize": "A long piece of text to summarize.", "target_length": "short"}


@pytest.mark.asyncio
async def test_summarize_failure_returns_500(app_factory):
    gemini = FakeGeminiClient(responses=[GeminiError("Summarization failed: API failure")])
    app, _, _, _ = app_factory(gemini_api_key="gemini-test-key", fake_gemini=gemini)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post("/api/agent/summarize", json={"text_to_summarize": "Text"})
            assert res.status_code == 500
            assert "Failed to generate summary" in res.json()["detail"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"text_to_summarize": "   "},
        {"text_to_summarize": 42},
        {"text_to_summarize": "Text", "target_length": "huge"},
    ],
)
async def test_summarize_rejects_bad_payloads(app_factory, payload):
    app, _, _, _ = app_factory(gemini_api_key="gemini-test-key")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post("/api/agent/summarize", json=payload)
            assert res.status_code == 400


@pytest.mark.asyncio
async def test_summarize_without_gemini_key_is_server_error(client):
    res = await client.post("/api/agent/summarize", json={"text_to_summarize": "Text"})
    assert res.status_code == 500
    assert res.json()["detail"] == "Server configuration error: Gemini API key is missing."
