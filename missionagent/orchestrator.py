import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from .db import utc_now
from .decision_engine import DecisionEngine
from .mission_store import MissionStore
from .providers import ProviderGateway
from .schemas import LOG_LEVEL_MAP, TERMINAL_MISSION_STATUSES, FailureDetails, Mission, Task
from .task_executor import Sleeper, TaskExecutor
from .validator import ResultValidator


logger = logging.getLogger("missionagent")

RUNNABLE_TASK_STATUSES = ("pending", "retrying")


def aggregate_status(tasks: Iterable[Task]) -> Tuple[str, str]:
    """Derive (mission status, summary) from task states."""
    tasks = list(tasks)
    if not tasks:
        return "completed", "Mission completed: No tasks to execute."
    completed = sum(1 for task in tasks if task.status == "completed")
    failed = sum(1 for task in tasks if task.status == "failed")
    open_count = len(tasks) - completed - failed
    summary = f"Tasks: {completed} completed, {failed} failed, {open_count} pending/active."
    if open_count > 0:
        return "in-progress", summary
    if failed > 0:
        return "failed", f"Mission failed. {summary}"
    return "completed", f"Mission completed successfully. {summary}"


class MissionOrchestrator:
    """Polling loop that drives stored missions and their tasks to a terminal state."""

    def __init__(
        self,
        store: MissionStore,
        gateway: ProviderGateway,
        decision_engine: Optional[DecisionEngine] = None,
        validator: Optional[ResultValidator] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.store = store
        self.active_tasks: Set[str] = set()
        self.executor = TaskExecutor(self, gateway, decision_engine, validator, sleep=sleep)

    # Executor callbacks

    async def update_task_state(self, mission_id: str, task_id: str, patch: Dict[str, Any]) -> None:
        await self.store.update_task_state(mission_id, task_id, patch)

    def track_active(self, task_id: str) -> None:
        self.active_tasks.add(task_id)

    def untrack_active(self, task_id: str) -> None:
        self.active_tasks.discard(task_id)

    async def log(
        self,
        mission_id: str,
        task_id: Optional[str],
        level: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.store.add_log(mission_id, level, message, task_id=task_id, details=details)

    async def _system_log(self, mission: Mission, level: str, message: str) -> None:
        logger.log(LOG_LEVEL_MAP.get(level, logging.INFO), "[mission %s] %s", mission.id, message)
        await self.store.add_log(mission.id, level, message)

    async def run_once(self) -> None:
        missions = await self.store.get_processable_missions()
        if not missions:
            logger.debug("No processable missions")
            return
        logger.info("Processing %d mission(s)", len(missions))
        for mission in missions:
            await self._process_mission(mission)

    async def _process_mission(self, mission: Mission) -> None:
        status = mission.status
        if status == "pending":
            await self.store.update_mission_status(mission.id, "in-progress", "Mission processing started.")
            await self._system_log(mission, "system", "Mission processing started.")
            status = "in-progress"

        for task in mission.tasks:
            if task.status not in RUNNABLE_TASK_STATUSES:
                continue
            try:
                await self.executor.execute_task(mission.id, task)
            except Exception as exc:
                logger.exception("TaskExecutor crashed on task %s of mission %s", task.id, mission.id)
                await self.store.update_task_state(
                    mission.id,
                    task.id,
                    {
                        "status": "failed",
                        "result": "TaskExecutor crashed unexpectedly.",
                        "failure_details": FailureDetails(
                            reason="TaskExecutor crashed unexpectedly.",
                            suggested_action="abandon",
                            original_error=str(exc) or type(exc).__name__,
                            timestamp=utc_now(),
                        ),
                    },
                )
                await self.store.update_mission_status(
                    mission.id,
                    "failed",
                    f"Mission failed due to critical error in task {task.id}.",
                )
                await self._system_log(mission, "error", f"Critical error in task {task.id}: {exc}")
                return

        tasks = await self.store.get_tasks_by_mission_id(mission.id)
        new_status, summary = aggregate_status(tasks)
        if new_status != status or new_status in TERMINAL_MISSION_STATUSES:
            await self.store.update_mission_status(mission.id, new_status, summary)
            await self._system_log(mission, "system", f"Mission status: {new_status}. {summary}")

    async def run_forever(self, stop_event: asyncio.Event, interval_s: float = 10.0) -> None:
        logger.info("Mission engine started (interval %.1fs)", interval_s)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Engine cycle failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass
        logger.info("Mission engine stopped")
