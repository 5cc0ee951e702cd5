from typing import Any, Dict, List, Optional

import httpx


GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
SUMMARY_LENGTHS = {
    "short": ("Summarize the following text concisely (1-2 sentences)", 100),
    "medium": ("Summarize the following text (around 3-5 sentences)", 250),
    "long": ("Summarize the following text in detail (multiple paragraphs if necessary)", 500),
}


class GeminiError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GeminiClient:
    """Minimal generateContent client. Used for decisions, decomposition and synthesis."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-1.5-flash",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.client = http_client or httpx.AsyncClient(timeout=60)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @property
    def endpoint(self) -> str:
        return f"{GEMINI_API_BASE}/models/{self.model}:generateContent"

    async def generate(self, prompt: str, temperature: float = 0.9, max_tokens: int = 2048) -> str:
        return "".join(_response_parts(await self._generate_content(prompt, temperature, max_tokens)))

    async def summarize(self, text: str, target_length: Optional[str] = None) -> str:
        """Summarize text at a short, medium (default) or long length. Errors are prefixed "Summarization failed"."""
        instruction, max_tokens = SUMMARY_LENGTHS.get(target_length or "medium", SUMMARY_LENGTHS["medium"])
        prompt = f"{instruction}:\n\n{text}"
        try:
            data = await self._generate_content(prompt, temperature=0.7, max_tokens=max_tokens)
            parts = _response_parts(data)
        except GeminiError as e:
            raise GeminiError(f"Summarization failed: {e}", status=e.status) from e
        summary = "\n".join(parts).strip()
        if not summary:
            raise GeminiError("Summarization failed: No text content found in Gemini response structure.")
        return summary

    async def _generate_content(self, prompt: str, temperature: float, max_tokens: int) -> Dict[str, Any]:
        if not self.enabled:
            raise GeminiError("Gemini API key not configured.", status=401)
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        try:
            resp = await self.client.post(self.endpoint, params={"key": self.api_key}, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                body = e.response.json()
                detail = (body.get("error") or {}).get("message") or body
            except (ValueError, AttributeError):
                detail = e.response.text
            raise GeminiError(
                f"Gemini API request failed with status {e.response.status_code}: {detail}",
                status=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise GeminiError(f"Gemini network error: {str(e) or type(e).__name__}") from e
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def _response_parts(data: Dict[str, Any]) -> List[str]:
    feedback = data.get("promptFeedback") or {}
    candidates = data.get("candidates") or []
    if not candidates:
        if feedback.get("blockReason"):
            message = feedback.get("blockReasonMessage") or ""
            raise GeminiError(f"Prompt was blocked: {feedback['blockReason']}. {message}".strip())
        raise GeminiError("No response received from Gemini API.")
    first = candidates[0] or {}
    parts = (first.get("content") or {}).get("parts") or []
    texts = [str(part.get("text")) for part in parts if isinstance(part, dict) and part.get("text")]
    if not texts and first.get("finishReason") == "SAFETY":
        raise GeminiError("Response blocked due to safety settings.")
    return texts
