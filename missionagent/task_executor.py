import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .db import utc_now
from .decision_engine import MAX_TASK_RETRIES, DecisionEngine, ValidationFailure, backoff_delay_ms
from .providers import ProviderGateway
from .schemas import LOG_LEVEL_MAP, FailureDecision, FailureDetails, Task, ValidationOutcome
from .validator import ResultValidator


logger = logging.getLogger("missionagent")

SEARCH_KEYWORDS = (
    "search for",
    "find information on",
    "find information about",
    "research",
    "look up",
    "investigate",
    "google search for",
    "serper search for",
    "tavily search for",
)
# Longest first so "google search for" wins over a shorter overlapping phrase.
_PREFIXES = sorted(SEARCH_KEYWORDS, key=len, reverse=True)

Sleeper = Callable[[float], Awaitable[Any]]


class TaskNotImplementedError(RuntimeError):
    pass


class ExecutorCallbacks(Protocol):
    async def update_task_state(self, mission_id: str, task_id: str, patch: Dict[str, Any]) -> None:
        ...

    def track_active(self, task_id: str) -> None:
        ...

    def untrack_active(self, task_id: str) -> None:
        ...

    async def log(
        self,
        mission_id: str,
        task_id: Optional[str],
        level: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


def is_search_task(description: str) -> bool:
    lowered = (description or "").lower()
    return any(keyword in lowered for keyword in SEARCH_KEYWORDS)


def extract_query(description: str) -> str:
    text = (description or "").strip()
    lowered = text.lower()
    for prefix in _PREFIXES:
        if lowered.startswith(prefix + " "):
            remainder = text[len(prefix) + 1 :].strip()
            if remainder:
                return remainder
    return text


def failed_result_text(retries: int) -> str:
    noun = "retry" if retries == 1 else "retries"
    return f"Task failed after {retries} {noun}. See 'failure_details'."


class TaskExecutor:
    """Runs one task through search, validation and the retry/abandon policy."""

    def __init__(
        self,
        callbacks: ExecutorCallbacks,
        gateway: ProviderGateway,
        decision_engine: Optional[DecisionEngine] = None,
        validator: Optional[ResultValidator] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.callbacks = callbacks
        self.gateway = gateway
        self.decision_engine = decision_engine or DecisionEngine()
        self.validator = validator or ResultValidator()
        self.sleep = sleep or asyncio.sleep

    async def _log(
        self,
        task: Task,
        level: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.log(LOG_LEVEL_MAP.get(level, logging.INFO), "[task %s] %s", task.id, message)
        await self.callbacks.log(task.mission_id, task.id, level, message, details)

    async def execute_task(self, mission_id: str, task: Task) -> None:
        current = task
        # One initial attempt plus at most MAX_TASK_RETRIES retries.
        for _ in range(MAX_TASK_RETRIES + 1):
            delay_ms = await self._attempt(mission_id, current)
            if delay_ms is None:
                return
            await self.sleep(delay_ms / 1000)
            current = current.model_copy(
                update={
                    "retries": current.retries + 1,
                    "status": "pending",
                    "result": None,
                    "failure_details": None,
                    "validation_outcome": None,
                }
            )
        logger.error("Task %s exceeded its attempt budget without a terminal state", task.id)

    async def _attempt(self, mission_id: str, task: Task) -> Optional[int]:
        """Run a single attempt. Returns the retry delay in ms, or None once the task is terminal."""
        self.callbacks.track_active(task.id)
        try:
            await self.callbacks.update_task_state(
                mission_id,
                task.id,
                {"status": "in-progress", "result": None, "failure_details": None, "validation_outcome": None},
            )
            await self._log(task, "info", f"Starting task (attempt {task.retries + 1}): {task.description}")
            try:
                result = await self._run(task)
                outcome = self.validator.validate(task, result)
            except Exception as exc:
                await self._log(task, "error", f"Execution failed: {str(exc) or type(exc).__name__}")
                decision = await self.decision_engine.handle_failed_task(task, exc)
                return await self._apply_error_decision(mission_id, task, exc, decision)

            if outcome.is_valid:
                await self.callbacks.update_task_state(
                    mission_id,
                    task.id,
                    {"status": "completed", "result": result, "validation_outcome": outcome},
                )
                await self._log(task, "info", "Task completed.", {"quality_score": outcome.quality_score})
                return None

            await self._log(task, "warn", f"Result validation failed: {outcome.critique}")
            failure = ValidationFailure(outcome)
            decision = await self.decision_engine.handle_failed_task(task, failure, validation=outcome)
            return await self._apply_validation_decision(mission_id, task, result, outcome, failure, decision)
        finally:
            self.callbacks.untrack_active(task.id)

    def _should_retry(self, task: Task, decision: FailureDecision) -> bool:
        return decision.action == "retry" and task.retries < MAX_TASK_RETRIES

    async def _apply_validation_decision(
        self,
        mission_id: str,
        task: Task,
        result: str,
        outcome: ValidationOutcome,
        failure: ValidationFailure,
        decision: FailureDecision,
    ) -> Optional[int]:
        details = FailureDetails(
            reason=f"{outcome.critique} Decision: {decision.reason}",
            suggested_action=decision.action,
            original_error=str(failure),
            timestamp=utc_now(),
        )
        if self._should_retry(task, decision):
            delay_ms = decision.delay_ms or backoff_delay_ms(task.retries)
            await self.callbacks.update_task_state(
                mission_id,
                task.id,
                {
                    "status": "retrying",
                    "retries": task.retries + 1,
                    "result": result,
                    "validation_outcome": outcome,
                    "failure_details": details,
                },
            )
            await self._log(task, "warn", f"Retry scheduled in {delay_ms}ms: {decision.reason}")
            return delay_ms
        await self.callbacks.update_task_state(
            mission_id,
            task.id,
            {"status": "failed", "result": result, "validation_outcome": outcome, "failure_details": details},
        )
        await self._log(task, "error", f"Task failed validation ({decision.action}): {decision.reason}")
        return None

    async def _apply_error_decision(
        self,
        mission_id: str,
        task: Task,
        exc: Exception,
        decision: FailureDecision,
    ) -> Optional[int]:
        details = FailureDetails(
            reason=decision.reason,
            suggested_action=decision.action,
            original_error=str(exc) or type(exc).__name__,
            timestamp=utc_now(),
        )
        if self._should_retry(task, decision):
            delay_ms = decision.delay_ms or backoff_delay_ms(task.retries)
            await self.callbacks.update_task_state(
                mission_id,
                task.id,
                {"status": "retrying", "retries": task.retries + 1, "failure_details": details},
            )
            await self._log(task, "warn", f"Retry scheduled in {delay_ms}ms: {decision.reason}")
            return delay_ms
        await self.callbacks.update_task_state(
            mission_id,
            task.id,
            {"status": "failed", "result": failed_result_text(task.retries), "failure_details": details},
        )
        await self._log(task, "error", f"Task failed ({decision.action}): {decision.reason}")
        return None

    async def _run(self, task: Task) -> str:
        description = task.description
        if not is_search_task(description):
            raise TaskNotImplementedError(f"Task type not implemented: {description}")
        choice = await self.decision_engine.choose_search_provider(description, self.gateway.available_providers())
        await self._log(task, "debug", f"Provider chosen: {choice.provider}. {choice.reason}")
        if choice.provider == "none":
            return f"No search provider action taken. Decision: {choice.reason}"
        query = extract_query(description)
        result = await self.gateway.search(choice.provider, query)
        await self._log(task, "debug", "Provider returned a result; validating.", {"summary": result[:100]})
        return result
