import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .decision_engine import TextGenerator
from .llm_json import ModelOutputError, extract_json
from .schemas import LOG_LEVEL_MAP, Task


logger = logging.getLogger("missionagent")

LogSink = Callable[[str, str, Optional[Dict]], Awaitable[None]]

DECOMPOSE_PROMPT = """You are an expert task decomposition AI. Your role is to break down a complex research mission into a series of actionable, distinct, and parallelizable sub-tasks. Each task should be phrased as a research or investigation step.

Return the tasks as a valid JSON array of objects. Each object in the array must have ONLY a "description" field.
- Each description should clearly state the research action. For example, start with phrases like "Research and define...", "Find information on...", "Investigate the details of...", "Search for examples of...".
- Ensure the core of the original sub-task's meaning is preserved.
- Do NOT include any other fields like id, status, etc.
- Do NOT output markdown (e.g., ```json ... ```). Output only the raw JSON array.

Example Input Mission: "Understand the process of photosynthesis."
Example Output JSON:
[
  {"description": "Research and define: Photosynthesis, explaining the general process in simple terms."},
  {"description": "Find information on: The light-dependent reactions, including photosystems I and II, the electron transport chain, and ATP/NADPH production."},
  {"description": "Investigate the details of: The light-independent reactions (Calvin Cycle), covering carbon fixation, reduction, and RuBP regeneration."},
  {"description": "Search for information on: The key inputs (water, CO2, light) and outputs (glucose, oxygen) of photosynthesis."}
]

Example Input Mission: "Explore the impact of renewable energy sources on reducing carbon emissions."
Example Output JSON:
[
  {"description": "Research and identify: The main types of renewable energy sources (solar, wind, hydro, geothermal)."},
  {"description": "Find information on: How each type of renewable energy source contributes to reducing carbon emissions."},
  {"description": "Investigate: Case studies or reports detailing the measured impact of renewable energy adoption on emission levels in specific regions or countries."},
  {"description": "Search for data on: The current global capacity and generation of renewable energy sources."}
]

Okay, now decompose the following user request. Ensure your output is ONLY the JSON array as specified.

User Request:
Mission: "{goal}"
"""


def task_id_for(mission_id: str, index: int) -> str:
    return f"{mission_id}-task-{index + 1:03d}"


def fallback_task(mission_id: str, goal: str, reason: str) -> Task:
    return Task(
        id=f"{mission_id}-task-fallback",
        mission_id=mission_id,
        description=f'Fallback: Could not decompose mission "{goal}". Reason: {reason}',
    )


def parse_task_descriptions(raw: Optional[str]) -> List[str]:
    items = extract_json(raw, expect=list)
    if not items:
        raise ModelOutputError("Model returned an empty task list")
    descriptions: List[str] = []
    for item in items:
        if not isinstance(item, dict):
            raise ModelOutputError("Task list entries must be objects")
        description = item.get("description")
        if not isinstance(description, str) or not description.strip():
            raise ModelOutputError("Task list entry is missing a description")
        descriptions.append(description.strip())
    return descriptions


class TaskDecomposer:
    def __init__(self, llm: Optional[TextGenerator] = None, log_sink: Optional[LogSink] = None):
        self.llm = llm
        self.log_sink = log_sink

    async def _log(self, level: str, message: str, details: Optional[Dict] = None) -> None:
        logger.log(LOG_LEVEL_MAP.get(level, logging.INFO), message)
        if self.log_sink is not None:
            await self.log_sink(level, message, details)

    async def decompose_mission(self, mission_id: str, goal: str) -> List[Task]:
        """Split a goal into ordered tasks. Never raises; failures yield one fallback task."""
        await self._log("info", f"Decomposing mission {mission_id}", {"goal": goal})
        try:
            if self.llm is None:
                raise RuntimeError("No LLM client configured for task decomposition.")
            prompt = DECOMPOSE_PROMPT.replace("{goal}", goal)
            await self._log("debug", f"Sending decomposition prompt for mission {mission_id}", {"prompt": prompt[:250]})
            raw = await self.llm.generate(prompt, temperature=0.3, max_tokens=1024)
            await self._log("debug", f"Received decomposition reply for mission {mission_id}", {"summary": (raw or "")[:150]})
            descriptions = parse_task_descriptions(raw)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            await self._log("error", f"Error decomposing mission {mission_id}: {reason}", {"goal": goal})
            return [fallback_task(mission_id, goal, reason)]
        tasks = [
            Task(id=task_id_for(mission_id, idx), mission_id=mission_id, description=description)
            for idx, description in enumerate(descriptions)
        ]
        await self._log("info", f"Mission {mission_id} decomposed into {len(tasks)} tasks.")
        return tasks
