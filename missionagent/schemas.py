import logging
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, Field


MissionStatus = Literal["pending", "in-progress", "completed", "failed"]
TaskStatus = Literal["pending", "in-progress", "retrying", "completed", "failed"]
SearchProvider = Literal["tavily", "serper", "gemini", "none"]
FailedTaskAction = Literal["retry", "abandon", "re-plan", "escalate"]
ValidationSuggestedAction = Literal[
    "accept",
    "retry_task_new_params",
    "refine_query",
    "alternative_source",
    "escalate_issue",
]
LogLevel = Literal["debug", "info", "warn", "error", "system"]

SEARCH_PROVIDERS = get_args(SearchProvider)
FAILED_TASK_ACTIONS = get_args(FailedTaskAction)
TERMINAL_MISSION_STATUSES = ("completed", "failed")
LOG_LEVEL_MAP = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "system": logging.INFO,
}


class FailureDetails(BaseModel):
    reason: str
    suggested_action: Optional[str] = None
    original_error: Optional[str] = None
    timestamp: str


class ValidationOutcome(BaseModel):
    is_valid: bool
    critique: Optional[str] = None
    quality_score: Optional[float] = None
    suggested_action: Optional[ValidationSuggestedAction] = None


class Task(BaseModel):
    id: str
    mission_id: str
    description: str
    status: TaskStatus = "pending"
    result: Optional[str] = None
    retries: int = Field(default=0, ge=0)
    failure_details: Optional[FailureDetails] = None
    validation_outcome: Optional[ValidationOutcome] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Mission(BaseModel):
    id: str
    goal: str
    status: MissionStatus = "pending"
    result: Optional[str] = None
    tasks: List[Task] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class LogEntry(BaseModel):
    id: int
    mission_id: str
    task_id: Optional[str] = None
    level: LogLevel = "info"
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: str


class ProviderChoice(BaseModel):
    provider: SearchProvider
    reason: str


class FailureDecision(BaseModel):
    action: FailedTaskAction
    reason: str
    delay_ms: Optional[int] = None


class CreateMissionRequest(BaseModel):
    goal: str
