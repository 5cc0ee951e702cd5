from typing import Any, Dict, Optional

import httpx


TAVILY_SEARCH_URL = "https://api.tavily.com/search"


class TavilyClient:
    def __init__(self, api_key: Optional[str], http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.client = http_client or httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 3,
        include_answer: bool = True,
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
        }
        if topic in {"general", "news", "finance"}:
            payload["topic"] = topic
        return await self._post(TAVILY_SEARCH_URL, payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Tavily accepts the key in the body; the header is kept for newer endpoints.
            payload = {**payload, "api_key": self.api_key}
            headers["X-API-Key"] = self.api_key
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e) or type(e).__name__}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
