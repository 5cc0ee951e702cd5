import uuid
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from .db import Database, _json_dumps, _json_loads, utc_now
from .schemas import FailureDetails, LogEntry, Mission, Task, ValidationOutcome


TASK_PATCH_FIELDS = {"status", "result", "retries", "failure_details", "validation_outcome"}
PROCESSABLE_STATUSES = ("pending", "in-progress")


def _dump_model(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    return _json_dumps(value)


def _row_to_task(row: aiosqlite.Row) -> Task:
    failure = _json_loads(row["failure_details_json"], None)
    validation = _json_loads(row["validation_outcome_json"], None)
    return Task(
        id=row["id"],
        mission_id=row["mission_id"],
        description=row["description"],
        status=row["status"],
        result=row["result"],
        retries=int(row["retries"] or 0),
        failure_details=FailureDetails(**failure) if failure else None,
        validation_outcome=ValidationOutcome(**validation) if validation else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_mission(row: aiosqlite.Row, tasks: List[Task]) -> Mission:
    return Mission(
        id=row["id"],
        goal=row["goal"],
        status=row["status"],
        result=row["result"],
        tasks=tasks,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class MissionStore:
    """Persistent mission/task state shared by the engine and the HTTP API."""

    def __init__(self, db: Database):
        self.db = db

    async def create_mission(
        self,
        goal: str,
        tasks: Optional[Sequence[Task]] = None,
        mission_id: Optional[str] = None,
    ) -> Mission:
        mission_id = mission_id or str(uuid.uuid4())
        created_at = utc_now()
        await self.db.execute(
            "INSERT INTO missions(id, goal, status, result, created_at, updated_at) VALUES (?,?,?,?,?,?)",
            (mission_id, goal, "pending", None, created_at, created_at),
        )
        rows = [
            (
                task.id,
                mission_id,
                seq,
                task.description,
                task.status,
                task.result,
                task.retries,
                _dump_model(task.failure_details),
                _dump_model(task.validation_outcome),
                created_at,
                created_at,
            )
            for seq, task in enumerate(tasks or [])
        ]
        if rows:
            await self.db.executemany(
                "INSERT INTO tasks(id, mission_id, seq, description, status, result, retries, "
                "failure_details_json, validation_outcome_json, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                rows,
            )
        mission = await self.get_mission(mission_id)
        if mission is None:
            raise RuntimeError(f"Mission {mission_id} was not found after insert")
        return mission

    async def get_mission(self, mission_id: str) -> Optional[Mission]:
        row = await self.db.fetchone("SELECT * FROM missions WHERE id=?", (mission_id,))
        if not row:
            return None
        tasks = await self.get_tasks_by_mission_id(mission_id)
        return _row_to_mission(row, tasks)

    async def list_missions(self, status: Optional[str] = None, limit: int = 50) -> List[Mission]:
        if status:
            rows = await self.db.fetchall(
                "SELECT * FROM missions WHERE status=? ORDER BY created_at DESC LIMIT ?",
                (status, limit),
            )
        else:
            rows = await self.db.fetchall(
                "SELECT * FROM missions ORDER BY created_at DESC LIMIT ?",
                (limit,),
            )
        return [_row_to_mission(row, await self.get_tasks_by_mission_id(row["id"])) for row in rows]

    async def get_processable_missions(self) -> List[Mission]:
        rows = await self.db.fetchall(
            "SELECT * FROM missions WHERE status IN (?, ?) ORDER BY created_at ASC",
            PROCESSABLE_STATUSES,
        )
        return [_row_to_mission(row, await self.get_tasks_by_mission_id(row["id"])) for row in rows]

    async def update_mission_status(self, mission_id: str, status: str, summary: Optional[str] = None) -> None:
        if summary is None:
            await self.db.execute(
                "UPDATE missions SET status=?, updated_at=? WHERE id=?",
                (status, utc_now(), mission_id),
            )
        else:
            await self.db.execute(
                "UPDATE missions SET status=?, result=?, updated_at=? WHERE id=?",
                (status, summary, utc_now(), mission_id),
            )

    async def delete_mission(self, mission_id: str) -> bool:
        row = await self.db.fetchone("SELECT id FROM missions WHERE id=?", (mission_id,))
        if not row:
            return False
        await self.db.execute("DELETE FROM missions WHERE id=?", (mission_id,))
        return True

    async def get_task(self, task_id: str) -> Optional[Task]:
        row = await self.db.fetchone("SELECT * FROM tasks WHERE id=?", (task_id,))
        return _row_to_task(row) if row else None

    async def get_tasks_by_mission_id(self, mission_id: str) -> List[Task]:
        rows = await self.db.fetchall(
            "SELECT * FROM tasks WHERE mission_id=? ORDER BY seq ASC, created_at ASC",
            (mission_id,),
        )
        return [_row_to_task(row) for row in rows]

    async def update_task_state(self, mission_id: str, task_id: str, patch: Dict[str, Any]) -> None:
        """Apply a partial update; keys present with a None value clear the column."""
        unknown = set(patch) - TASK_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        columns: List[str] = []
        params: List[Any] = []
        for key, value in patch.items():
            if key == "failure_details":
                columns.append("failure_details_json=?")
                params.append(_dump_model(value))
            elif key == "validation_outcome":
                columns.append("validation_outcome_json=?")
                params.append(_dump_model(value))
            elif key == "retries":
                columns.append("retries=?")
                params.append(int(value or 0))
            else:
                columns.append(f"{key}=?")
                params.append(value)
        columns.append("updated_at=?")
        params.append(utc_now())
        await self.db.execute(
            f"UPDATE tasks SET {', '.join(columns)} WHERE id=? AND mission_id=?",
            (*params, task_id, mission_id),
        )

    async def add_log(
        self,
        mission_id: str,
        level: str,
        message: str,
        *,
        task_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.db.execute(
            "INSERT INTO mission_logs(mission_id, task_id, level, message, details_json, created_at) "
            "VALUES (?,?,?,?,?,?)",
            (mission_id, task_id, level, message, _json_dumps(details), utc_now()),
        )

    async def list_logs(
        self,
        mission_id: str,
        task_id: Optional[str] = None,
        after_id: int = 0,
        limit: int = 500,
    ) -> List[LogEntry]:
        clauses = ["mission_id=?", "id>?"]
        params: List[Any] = [mission_id, after_id]
        if task_id:
            clauses.append("task_id=?")
            params.append(task_id)
        where = " AND ".join(clauses)
        rows = await self.db.fetchall(
            f"SELECT * FROM mission_logs WHERE {where} ORDER BY id ASC LIMIT ?",
            (*params, limit),
        )
        return [
            LogEntry(
                id=row["id"],
                mission_id=row["mission_id"],
                task_id=row["task_id"],
                level=row["level"],
                message=row["message"],
                details=_json_loads(row["details_json"], None),
                timestamp=row["created_at"],
            )
            for row in rows
        ]
