import logging
from typing import Any

from .decision_engine import MAX_TASK_RETRIES
from .schemas import Task, ValidationOutcome


logger = logging.getLogger("missionagent")

MIN_RESULT_LENGTH = 50

ERROR_SUBSTRINGS = (
    "api key invalid",
    "api key not configured",
    "authentication failed",
    "error occurred",
    "failed to fetch",
    "cannot connect",
    "service unavailable",
    "no results found",
    "search returned no results",
    "query format incorrect",
    "parameter invalid",
    "bad request",
    "page not found",
    "400 bad request",
    "401 unauthorized",
    "403 forbidden",
    "404 not found",
    "500 internal server error",
    "503 service unavailable",
    "configuration error:",
    "execution error:",
    "task execution failed",
    "search failed or no provider was executed",
    "no search provider action taken",
)

PLACEHOLDER_SUBSTRINGS = (
    "simulated success for:",
    "gemini search chosen - execution path not fully implemented",
    "gemini search chosen - execution path is a placeholder",
    "search did not produce results",
)


class ResultValidator:
    """Heuristic quality gate for task results. A task only completes when this accepts it."""

    def validate(self, task: Task, result: Any) -> ValidationOutcome:
        text = "" if result is None else str(result).strip()
        logger.debug("Validating result for task %s: %r", task.id, text[:100])
        has_budget = task.retries < MAX_TASK_RETRIES

        if not text:
            return ValidationOutcome(
                is_valid=False,
                quality_score=0.0,
                critique="Result is empty or missing.",
                suggested_action="retry_task_new_params" if has_budget else "alternative_source",
            )

        lowered = text.lower()
        for marker in ERROR_SUBSTRINGS:
            if marker in lowered:
                return ValidationOutcome(
                    is_valid=False,
                    quality_score=0.1,
                    critique=f'Result contains a common error message or indicates no results: "{marker}".',
                    suggested_action="retry_task_new_params" if has_budget else "alternative_source",
                )

        for marker in PLACEHOLDER_SUBSTRINGS:
            if marker in lowered:
                return ValidationOutcome(
                    is_valid=False,
                    quality_score=0.05,
                    critique=f'Result appears to be a placeholder or simulated content: "{marker}".',
                    suggested_action="retry_task_new_params" if has_budget else "alternative_source",
                )

        if len(text) < MIN_RESULT_LENGTH:
            return ValidationOutcome(
                is_valid=False,
                quality_score=0.3,
                critique=(
                    f"Result is very short (length: {len(text)} chars). May not be sufficient unless "
                    "a specific, concise answer was expected."
                ),
                suggested_action="refine_query" if has_budget else "alternative_source",
            )

        return ValidationOutcome(
            is_valid=True,
            quality_score=0.7,
            critique="Result passed basic heuristic checks (not empty, no obvious errors, sufficient length).",
            suggested_action="accept",
        )
