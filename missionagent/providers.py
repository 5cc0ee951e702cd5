import logging
from typing import Any, Dict, List, Optional

from .config import AppSettings
from .gemini import GeminiClient, GeminiError
from .serper import SerperClient
from .tavily import TavilyClient


logger = logging.getLogger("missionagent")

SNIPPET_CHARS = 200
PROVIDER_LABELS = {"tavily": "Tavily", "serper": "Serper", "gemini": "Gemini"}


class ProviderError(RuntimeError):
    """A provider call that failed; status carries the HTTP status when there was one."""

    def __init__(self, message: str, status: Optional[int] = None, provider: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.provider = provider


def missing_key_text(provider: str) -> str:
    return f"Configuration error: {PROVIDER_LABELS.get(provider, provider)} API key not configured."


def _snippet(value: Any) -> str:
    text = str(value or "").strip().replace("\n", " ")
    if len(text) > SNIPPET_CHARS:
        return text[:SNIPPET_CHARS] + "..."
    return text


def _raise_for_error(provider: str, response: Dict[str, Any]) -> None:
    error = response.get("error")
    if not error:
        return
    label = PROVIDER_LABELS.get(provider, provider)
    if error == "http_status":
        status = response.get("status_code")
        detail = response.get("detail")
        if isinstance(detail, dict):
            detail = detail.get("detail") or detail.get("message") or detail.get("error") or detail
        raise ProviderError(
            f"{label} API request failed with status {status}: {detail}",
            status=status,
            provider=provider,
        )
    if error == "request_failed":
        raise ProviderError(f"{label} network error: {response.get('detail')}", provider=provider)
    raise ProviderError(f"{label} search failed: {error}", provider=provider)


def format_tavily(response: Dict[str, Any]) -> str:
    answer = response.get("answer")
    results = response.get("results") or []
    if not answer and not results:
        return "Tavily Search returned no meaningful results."
    lines: List[str] = []
    if answer:
        lines.append(f"Tavily Answer: {answer}")
        lines.append("")
    if results:
        lines.append("Search Results:")
        for idx, item in enumerate(results, start=1):
            lines.append(f"{idx}. {item.get('title') or 'Untitled'}")
            lines.append(f"   URL: {item.get('url') or ''}")
            lines.append(f"   Snippet: {_snippet(item.get('content'))}")
    return "Tavily Search Results:\n" + "\n".join(lines).strip()


def format_serper(response: Dict[str, Any]) -> str:
    organic = response.get("organic") or []
    if not organic:
        return "Serper Search returned no results."
    lines = ["Serper Search Results:"]
    for idx, item in enumerate(organic, start=1):
        lines.append(f"{idx}. {item.get('title') or 'Untitled'}")
        lines.append(f"   Link: {item.get('link') or ''}")
        lines.append(f"   Snippet: {_snippet(item.get('snippet'))}")
    return "\n".join(lines)


def synthesis_prompt(query: str) -> str:
    return (
        "You are a research assistant. Answer the following research request with a concise, "
        "factual synthesis of what is generally known. Use short paragraphs or bullet points and "
        "say so plainly when information is uncertain.\n\n"
        f"Request: {query}"
    )


class ProviderGateway:
    """Uniform `search(provider, query) -> text` over the configured search backends."""

    def __init__(
        self,
        tavily: Optional[TavilyClient] = None,
        serper: Optional[SerperClient] = None,
        gemini: Optional[GeminiClient] = None,
    ):
        self.tavily = tavily
        self.serper = serper
        self.gemini = gemini

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        tavily_client: Optional[TavilyClient] = None,
        serper_client: Optional[SerperClient] = None,
        gemini_client: Optional[GeminiClient] = None,
    ) -> "ProviderGateway":
        return cls(
            tavily=tavily_client or TavilyClient(settings.tavily_api_key),
            serper=serper_client or SerperClient(settings.serper_api_key),
            gemini=gemini_client or GeminiClient(settings.gemini_api_key, model=settings.gemini_model),
        )

    def available_providers(self) -> List[str]:
        providers: List[str] = []
        if self.tavily is not None and self.tavily.enabled:
            providers.append("tavily")
        if self.serper is not None and self.serper.enabled:
            providers.append("serper")
        if self.gemini is not None and self.gemini.enabled:
            providers.append("gemini")
        return providers

    async def search(self, provider: str, query: str) -> str:
        logger.debug("Searching %s for %r", provider, query)
        if provider == "tavily":
            if self.tavily is None or not self.tavily.enabled:
                return missing_key_text(provider)
            response = await self.tavily.search(query, search_depth="basic", max_results=3, include_answer=True)
            _raise_for_error(provider, response)
            return format_tavily(response)
        if provider == "serper":
            if self.serper is None or not self.serper.enabled:
                return missing_key_text(provider)
            response = await self.serper.search(query, num=3)
            _raise_for_error(provider, response)
            return format_serper(response)
        if provider == "gemini":
            if self.gemini is None or not self.gemini.enabled:
                return missing_key_text(provider)
            try:
                text = await self.gemini.generate(synthesis_prompt(query), temperature=0.4, max_tokens=1024)
            except GeminiError as exc:
                raise ProviderError(str(exc), status=exc.status, provider=provider) from exc
            text = text.strip()
            if not text:
                return "Gemini Search did not produce results."
            return f"Gemini Synthesized Answer:\n{text}"
        raise ProviderError(f"Unknown search provider: {provider}", provider=provider)

    async def close(self) -> None:
        for client in (self.tavily, self.serper, self.gemini):
            if client is not None:
                await client.close()
