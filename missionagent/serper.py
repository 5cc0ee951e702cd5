from typing import Any, Dict, Optional

import httpx


SERPER_SEARCH_URL = "https://google.serper.dev/search"


class SerperClient:
    """Google search through the Serper API. Errors come back as dicts, like TavilyClient."""

    def __init__(self, api_key: Optional[str], http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.client = http_client or httpx.AsyncClient(timeout=30)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, num: int = 3) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        headers = {"X-API-KEY": str(self.api_key), "Content-Type": "application/json"}
        try:
            resp = await self.client.post(SERPER_SEARCH_URL, json={"q": query, "num": num}, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                body = e.response.json()
                detail = body.get("message") if isinstance(body, dict) and body.get("message") else body
            except ValueError:
                detail = e.response.text or e.response.reason_phrase
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e) or type(e).__name__}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
