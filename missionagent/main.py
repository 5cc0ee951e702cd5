import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .decision_engine import DecisionEngine
from .decomposer import TaskDecomposer
from .gemini import SUMMARY_LENGTHS, GeminiClient, GeminiError
from .mission_store import MissionStore
from .orchestrator import MissionOrchestrator
from .providers import ProviderGateway
from .schemas import CreateMissionRequest
from .serper import SerperClient
from .tavily import TavilyClient


logger = logging.getLogger("missionagent")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_store(request: Request) -> MissionStore:
    return request.app.state.store


def get_gateway(request: Request) -> ProviderGateway:
    return request.app.state.gateway


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_decomposer(request: Request) -> TaskDecomposer:
    gemini = request.app.state.gateway.gemini
    return TaskDecomposer(llm=gemini if gemini is not None and gemini.enabled else None)


router = APIRouter()


@router.get("/api/health")
async def health(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    gateway: ProviderGateway = Depends(get_gateway),
):
    engine_task = request.app.state.engine_task
    return {
        "status": "ok",
        "providers": gateway.available_providers(),
        "llm_decisions": settings.llm_enabled,
        "engine_running": engine_task is not None and not engine_task.done(),
    }


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    gateway: ProviderGateway = Depends(get_gateway),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    if gateway.tavily is not None:
        gateway.tavily.api_key = new_settings.tavily_api_key
    if gateway.serper is not None:
        gateway.serper.api_key = new_settings.serper_api_key
    if gateway.gemini is not None:
        gateway.gemini.api_key = new_settings.gemini_api_key
        gateway.gemini.model = new_settings.gemini_model
    request.app.state.orchestrator.executor.decision_engine = DecisionEngine.from_settings(new_settings, gateway.gemini)
    return {"ok": True, "providers": gateway.available_providers()}


@router.post("/api/missions", status_code=201)
async def create_mission(
    payload: CreateMissionRequest,
    store: MissionStore = Depends(get_store),
    decomposer: TaskDecomposer = Depends(get_decomposer),
):
    goal = payload.goal.strip()
    if not goal:
        raise HTTPException(status_code=400, detail="Mission goal is required.")
    mission_id = str(uuid.uuid4())
    # The mission row does not exist until decomposition finishes, so logs are buffered.
    pending_logs: List[Dict[str, Any]] = []

    async def buffer_log(level: str, message: str, details: Optional[Dict] = None) -> None:
        pending_logs.append({"level": level, "message": message, "details": details})

    decomposer.log_sink = buffer_log
    tasks = await decomposer.decompose_mission(mission_id, goal)
    mission = await store.create_mission(goal, tasks, mission_id=mission_id)
    for entry in pending_logs:
        await store.add_log(mission_id, entry["level"], entry["message"], details=entry["details"])
    return {"mission": mission.model_dump()}


@router.get("/api/missions")
async def list_missions(
    status: Optional[str] = None,
    limit: int = 50,
    store: MissionStore = Depends(get_store),
):
    missions = await store.list_missions(status=status, limit=max(1, min(limit, 500)))
    return {"missions": [mission.model_dump() for mission in missions]}


@router.get("/api/missions/{mission_id}")
async def get_mission(mission_id: str, store: MissionStore = Depends(get_store)):
    mission = await store.get_mission(mission_id)
    if not mission:
        raise HTTPException(status_code=404, detail="Mission not found")
    return {"mission": mission.model_dump()}


@router.delete("/api/missions/{mission_id}")
async def delete_mission(mission_id: str, store: MissionStore = Depends(get_store)):
    deleted = await store.delete_mission(mission_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Mission not found")
    return {"ok": True}


@router.get("/api/missions/{mission_id}/logs")
async def mission_logs(
    mission_id: str,
    task_id: Optional[str] = None,
    after_id: int = 0,
    store: MissionStore = Depends(get_store),
):
    mission = await store.get_mission(mission_id)
    if not mission:
        raise HTTPException(status_code=404, detail="Mission not found")
    logs = await store.list_logs(mission_id, task_id=task_id, after_id=after_id)
    return {"logs": [entry.model_dump() for entry in logs]}


@router.get("/api/agent/status")
async def agent_status(request: Request, store: MissionStore = Depends(get_store)):
    missions = await store.list_missions(status="in-progress", limit=500)
    active_ids = [mission.id for mission in missions]
    return {
        "is_active": bool(active_ids),
        "active_mission_ids": active_ids,
        "active_missions_count": len(active_ids),
        "active_task_ids": sorted(request.app.state.orchestrator.active_tasks),
    }


@router.post("/api/agent/summarize")
async def summarize(request: Request, gateway: ProviderGateway = Depends(get_gateway)):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Summarize payload must be an object.")
    text = body.get("text_to_summarize")
    if not isinstance(text, str) or not text.strip():
        raise HTTPException(status_code=400, detail="text_to_summarize is required and must be a non-empty string")
    target_length = body.get("target_length")
    if target_length is not None and (not isinstance(target_length, str) or target_length not in SUMMARY_LENGTHS):
        raise HTTPException(status_code=400, detail="target_length must be one of 'short', 'medium', or 'long'")
    gemini = gateway.gemini
    if gemini is None or not gemini.enabled:
        logger.error("Summarize requested but the Gemini API key is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error: Gemini API key is missing.")
    try:
        summary = await gemini.summarize(text, target_length=target_length)
    except GeminiError as exc:
        logger.warning("Summarize failed: %s", exc)
        raise HTTPException(status_code=500, detail=f"Failed to generate summary: {exc}") from exc
    return {"summary": summary}


@router.get("/api/tasks/{task_id}")
async def get_task(task_id: str, store: MissionStore = Depends(get_store)):
    task = await store.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"task": task.model_dump()}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    tavily_client: Optional[TavilyClient] = None,
    serper_client: Optional[SerperClient] = None,
    gemini_client: Optional[GeminiClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        stop_event = asyncio.Event()
        if app.state.settings.engine_autostart:
            app.state.engine_task = asyncio.create_task(
                app.state.orchestrator.run_forever(stop_event, interval_s=app.state.settings.poll_interval_s)
            )
        try:
            yield
        finally:
            stop_event.set()
            if app.state.engine_task is not None:
                await app.state.engine_task
                app.state.engine_task = None
            await app.state.gateway.close()

    app = FastAPI(title="Mission Agent", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.store = MissionStore(app.state.db)
    app.state.gateway = ProviderGateway.from_settings(
        settings,
        tavily_client=tavily_client,
        serper_client=serper_client,
        gemini_client=gemini_client,
    )
    app.state.orchestrator = MissionOrchestrator(
        app.state.store,
        app.state.gateway,
        decision_engine=DecisionEngine.from_settings(settings, app.state.gateway.gemini),
    )
    app.state.engine_task = None
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        uvicorn.run("missionagent.main:app", host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
