import logging
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from .config import AppSettings
from .llm_json import ModelOutputError, extract_json
from .schemas import (
    FAILED_TASK_ACTIONS,
    FailureDecision,
    ProviderChoice,
    SEARCH_PROVIDERS,
    Task,
    ValidationOutcome,
)


logger = logging.getLogger("missionagent")

MAX_TASK_RETRIES = 3
BASE_DELAY_MS = 1000

SERPER_HINTS = ("google search for", "serper search for")
TAVILY_HINTS = ("research", "find information on", "look up", "tavily search for")
DEFAULT_PROVIDER_ORDER = ("tavily", "serper", "gemini")

TRANSIENT_MARKERS = (
    "network error",
    "socket hang up",
    "timeout",
    "etimedout",
    "econnreset",
    "service unavailable",
    "rate limit exceeded",
)
TRANSIENT_STATUSES = {429, 503, 504}
AUTH_MARKERS = (
    "api key not configured",
    "invalid api key",
    "api key invalid",
    "authentication failed",
    "unauthorized",
)
AUTH_STATUSES = {401, 403}
BAD_INPUT_MARKERS = (
    "bad request",
    "invalid parameter",
    "query format incorrect",
    "invalid input",
)
BAD_INPUT_STATUSES = {400}
SAFETY_MARKERS = (
    "blocked due to safety settings",
    "prompt blocked",
    "prompt was blocked",
    "promptfeedback.blockreason",
)

VALIDATION_RETRY_NOTES = {
    "refine_query": "with a refined query",
    "retry_task_new_params": "with new parameters",
    "alternative_source": "with an alternative source",
}


class TextGenerator(Protocol):
    async def generate(self, prompt: str, temperature: float = ..., max_tokens: int = ...) -> str:
        ...


class ValidationFailure(Exception):
    """Synthetic error raised for a result the validator rejected."""

    def __init__(self, outcome: ValidationOutcome):
        super().__init__(f"Validation failed: {outcome.critique or 'no critique provided'}")
        self.outcome = outcome


def backoff_delay_ms(retries: int) -> int:
    return BASE_DELAY_MS * (2 ** max(retries, 0))


def _status_of(error: Any) -> Optional[int]:
    if error is None or isinstance(error, str):
        return None
    if isinstance(error, dict):
        value = error.get("status", error.get("status_code"))
    else:
        value = getattr(error, "status", None)
        if value is None:
            value = getattr(error, "status_code", None)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _message_of(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or error).lower()
    return (str(error) or type(error).__name__).lower()


def _contains_any(text: str, markers: Sequence[str]) -> bool:
    return any(marker in text for marker in markers)


class DecisionEngine:
    """Provider selection and failure recovery, rule-based with an optional LLM override."""

    def __init__(self, llm: Optional[TextGenerator] = None):
        self.llm = llm

    @classmethod
    def from_settings(cls, settings: AppSettings, llm: Optional[TextGenerator]) -> "DecisionEngine":
        """Enable the LLM path only when decisions are switched on and the client has a key."""
        if settings.llm_enabled and llm is not None and getattr(llm, "enabled", True):
            return cls(llm=llm)
        return cls()

    @property
    def uses_llm(self) -> bool:
        return self.llm is not None

    async def choose_search_provider(self, description: str, available_providers: Sequence[str]) -> ProviderChoice:
        available = [p for p in available_providers if p in SEARCH_PROVIDERS]
        offered = [p for p in available if p != "none"]
        if not offered:
            return ProviderChoice(provider="none", reason="No suitable search providers available.")
        if self.llm is not None:
            choice = await self._llm_choose_provider(description, offered, available)
            if choice is not None:
                return choice
        return self.rule_based_provider(description, available)

    def rule_based_provider(self, description: str, available_providers: Sequence[str]) -> ProviderChoice:
        available = list(available_providers)
        lowered = (description or "").lower()
        if _contains_any(lowered, SERPER_HINTS):
            if "serper" in available:
                return ProviderChoice(provider="serper", reason="Rule: Task suggests a Google search; Serper chosen.")
            if "tavily" in available:
                return ProviderChoice(
                    provider="tavily",
                    reason="Rule: Google search suggested, but Serper unavailable; falling back to Tavily.",
                )
        elif _contains_any(lowered, TAVILY_HINTS):
            if "tavily" in available:
                return ProviderChoice(provider="tavily", reason="Rule: General research query; Tavily chosen.")
            if "serper" in available:
                return ProviderChoice(
                    provider="serper",
                    reason="Rule: General research query, but Tavily unavailable; falling back to Serper.",
                )
        for provider in DEFAULT_PROVIDER_ORDER:
            if provider in available:
                return ProviderChoice(provider=provider, reason=f"Rule Default: {provider} selected by preference order.")
        for provider in available:
            if provider != "none":
                return ProviderChoice(provider=provider, reason=f"Rule Default: Picked first available provider: {provider}.")
        return ProviderChoice(provider="none", reason="Rule Default: No suitable search providers available.")

    async def _llm_choose_provider(
        self,
        description: str,
        offered: List[str],
        available: List[str],
    ) -> Optional[ProviderChoice]:
        prompt = _provider_prompt(description, offered)
        try:
            raw = await self.llm.generate(prompt, temperature=0.2, max_tokens=150)
            data = extract_json(raw, expect=dict)
        except ModelOutputError as exc:
            logger.warning("Provider choice reply unusable, falling back to rules: %s", exc)
            return None
        except Exception as exc:
            logger.error("LLM provider choice failed, falling back to rules: %s", exc)
            return None
        provider = str(data.get("provider") or "").strip().lower()
        reason = data.get("reason")
        if not isinstance(reason, str) or not provider:
            logger.warning("Provider choice reply missing fields, falling back to rules: %s", data)
            return None
        if provider not in available or provider == "none":
            logger.warning("LLM chose unavailable provider %r (available: %s), falling back to rules", provider, available)
            return None
        return ProviderChoice(provider=provider, reason=f"LLM choice: {reason}")

    async def handle_failed_task(
        self,
        task: Task,
        error: Any = None,
        validation: Optional[ValidationOutcome] = None,
    ) -> FailureDecision:
        if isinstance(error, ValidationFailure) and validation is None:
            validation = error.outcome
        message = _message_of(error)
        if not message and validation is not None:
            message = f"validation failed: {validation.critique or ''}".lower()
        status = _status_of(error)
        if self.llm is not None:
            decision = await self._llm_failure_decision(task, message, status, validation)
            if decision is not None:
                return decision
        return self.rule_based_failure(task, message, status, validation)

    def rule_based_failure(
        self,
        task: Task,
        message: str,
        status: Optional[int] = None,
        validation: Optional[ValidationOutcome] = None,
    ) -> FailureDecision:
        retries = task.retries
        has_budget = retries < MAX_TASK_RETRIES
        if validation is not None:
            critique = validation.critique or "result rejected"
            if has_budget:
                note = VALIDATION_RETRY_NOTES.get(validation.suggested_action or "", "")
                reason = f"Validation failed ({critique}). Retrying {note}".strip() + "."
                return FailureDecision(action="retry", reason=reason, delay_ms=backoff_delay_ms(retries))
            return FailureDecision(
                action="abandon",
                reason=f"Validation failed ({critique}) and max retries ({MAX_TASK_RETRIES}) reached.",
            )
        if _contains_any(message, TRANSIENT_MARKERS) or status in TRANSIENT_STATUSES:
            if has_budget:
                return FailureDecision(
                    action="retry",
                    reason=f"Transient error detected; retrying (attempt {retries + 1} of {MAX_TASK_RETRIES}).",
                    delay_ms=backoff_delay_ms(retries),
                )
            return FailureDecision(
                action="abandon",
                reason=f"Transient error persisted after {MAX_TASK_RETRIES} retries.",
            )
        if _contains_any(message, AUTH_MARKERS) or status in AUTH_STATUSES:
            return FailureDecision(action="abandon", reason="Configuration or authentication error; retrying will not help.")
        if _contains_any(message, BAD_INPUT_MARKERS) or status in BAD_INPUT_STATUSES:
            return FailureDecision(action="abandon", reason="Request was rejected as invalid input.")
        if _contains_any(message, SAFETY_MARKERS):
            return FailureDecision(action="abandon", reason="Content was blocked by safety settings.")
        if not has_budget:
            return FailureDecision(action="abandon", reason=f"Max retries ({MAX_TASK_RETRIES}) reached.")
        return FailureDecision(
            action="retry",
            reason="Unclassified error; retrying with backoff.",
            delay_ms=backoff_delay_ms(retries),
        )

    async def _llm_failure_decision(
        self,
        task: Task,
        message: str,
        status: Optional[int],
        validation: Optional[ValidationOutcome],
    ) -> Optional[FailureDecision]:
        prompt = _failure_prompt(task, message, status, validation)
        try:
            raw = await self.llm.generate(prompt, temperature=0.3, max_tokens=250)
            data = extract_json(raw, expect=dict)
        except ModelOutputError as exc:
            logger.warning("Failure-handling reply unusable for task %s, falling back to rules: %s", task.id, exc)
            return None
        except Exception as exc:
            logger.error("LLM failure handling errored for task %s, falling back to rules: %s", task.id, exc)
            return None
        action = str(data.get("action") or "").strip().lower()
        reason = data.get("reason")
        if action not in FAILED_TASK_ACTIONS or not isinstance(reason, str):
            logger.warning("Failure-handling reply invalid for task %s, falling back to rules: %s", task.id, data)
            return None
        if action != "retry":
            return FailureDecision(action=action, reason=f"LLM decision: {reason}")
        if task.retries >= MAX_TASK_RETRIES:
            logger.warning("LLM suggested retry for task %s at max retries; abandoning", task.id)
            return FailureDecision(
                action="abandon",
                reason=f"LLM suggested retry, but max retries reached. LLM Reason: {reason}",
            )
        delay, valid_delay = _coerce_delay(data.get("delay_ms", data.get("delayMs")))
        if not valid_delay:
            delay = backoff_delay_ms(task.retries)
        return FailureDecision(action="retry", reason=f"LLM decision: {reason}", delay_ms=delay)


def _coerce_delay(value: Any) -> Tuple[int, bool]:
    if isinstance(value, bool) or value is None:
        return 0, False
    try:
        delay = int(value)
    except (TypeError, ValueError):
        return 0, False
    return delay, delay > 0


def _provider_prompt(description: str, offered: Sequence[str]) -> str:
    names = "', '".join(offered)
    return f"""You are an expert system helping an AI research agent decide which search provider to use for a given task.
Choose the single most suitable provider from the available options.
Available providers: '{names}'.

About the providers:
- 'tavily': comprehensive web research across diverse sources; good for "research X" or "find information about Y".
- 'serper': direct, quick Google searches; use when the task wants Google results or a targeted lookup.
- 'gemini': a generative model, not a search engine; use for explanation, synthesis or complex reasoning, at lower preference than 'tavily' or 'serper' for plain retrieval.

Return a VALID JSON object with two keys: "provider" (one of: '{names}') and "reason" (a brief explanation).
Do NOT output markdown. Output only the raw JSON object.

Task Description: "{description}"
"""


def _failure_prompt(
    task: Task,
    message: str,
    status: Optional[int],
    validation: Optional[ValidationOutcome],
) -> str:
    actions = "', '".join(FAILED_TASK_ACTIONS)
    kind = "result validation failure" if validation is not None else "execution error"
    suggestion = (validation.suggested_action if validation is not None else None) or "N/A"
    history = ""
    if task.failure_details and task.failure_details.original_error:
        history = f'Previous failure: "{task.failure_details.original_error}".\n'
    return f"""You are an expert AI system diagnosing task failures for a research agent.
Available actions are: '{actions}'.

- 'retry': transient problems (network issues, temporary unavailability, rate limits like 429) or a fixable result, while retries remain. Include "delay_ms" (1000 for the 1st retry, 2000 for the 2nd, 4000 for the 3rd).
- 'abandon': persistent problems (invalid API key 401/403, malformed request 400, content safety block) or max retries reached.
- 're-plan': the task is ill-defined or the approach needs rethinking.
- 'escalate': critical, unrecoverable system errors needing a human (rarely).

Return a VALID JSON object with keys "action" (one of: '{actions}'), "reason" (string) and "delay_ms" (integer > 0, required when action is 'retry').
Do NOT output markdown. Output only the raw JSON object.

Failed Task:
ID: {task.id}
Description: "{task.description}"
Failure kind: {kind}
Error Message: "{message}"
Error Status Code: {status if status is not None else 'N/A'}
Validator suggested action: {suggestion}
Retries so far: {task.retries}
Max retries: {MAX_TASK_RETRIES}
{history}"""
