import json
import re
from typing import Any, Optional, Type, Union


_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")


class ModelOutputError(ValueError):
    """Raised when a model reply cannot be turned into the JSON shape we asked for."""


def strip_fences(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned, count=1)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned, count=1)
    return cleaned.strip()


def extract_json(text: Optional[str], expect: Union[Type[dict], Type[list]] = dict) -> Any:
    """Parse a model reply that should be a bare JSON object or array.

    Markdown code fences are tolerated; anything else around the payload is not.
    """
    if not text or not text.strip():
        raise ModelOutputError("Empty model response")
    cleaned = strip_fences(text)
    try:
        parsed = json.loads(cleaned)
    except ValueError as exc:
        raise ModelOutputError(f"Model response is not valid JSON: {exc}") from exc
    if not isinstance(parsed, expect):
        raise ModelOutputError(
            f"Model response is a JSON {type(parsed).__name__}, expected {expect.__name__}"
        )
    return parsed
