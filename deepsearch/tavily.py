from typing import Any, Dict, List, Optional

import httpx

from .errors import RetrievalError

SEARCH_URL = "https://api.tavily.com/search"
EXTRACT_URL = "https://api.tavily.com/extract"


class TavilyClient:
    def __init__(self, api_key: Optional[str], timeout: float = 60):
        self.api_key = api_key
        # Tune connection limits so parallel crawls share a pool instead of opening
        # a new TCP connection per URL.
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        max_results: int = 10,
        search_depth: str = "basic",
        topic: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        allowed_topics = {"general", "news", "finance"}
        if topic:
            cleaned = str(topic).strip().lower()
            topic = cleaned if cleaned in allowed_topics else None
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
        }
        if topic:
            payload["topic"] = topic
        data = await self._post(SEARCH_URL, payload)
        results = data.get("results")
        if not isinstance(results, list):
            raise RetrievalError("malformed_response", "search response has no results list")
        return [item for item in results if isinstance(item, dict)]

    async def extract(self, urls: List[str], extract_depth: str = "basic") -> Dict[str, Any]:
        payload = {"urls": urls, "extract_depth": extract_depth}
        return await self._post(EXTRACT_URL, payload)

    async def extract_page(self, url: str, extract_depth: str = "basic") -> str:
        """Fetch one page's readable content, raising RetrievalError when Tavily could not extract it."""
        data = await self.extract([url], extract_depth=extract_depth)
        for item in data.get("results") or []:
            if not isinstance(item, dict):
                continue
            content = item.get("raw_content") or item.get("content")
            if isinstance(content, str) and content.strip():
                return content
        for item in data.get("failed_results") or []:
            if isinstance(item, dict) and item.get("error"):
                raise RetrievalError("extract_failed", item["error"])
        raise RetrievalError("empty_content", url)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            raise RetrievalError("missing_api_key")
        headers = {"Content-Type": "application/json"}
        # Tavily's dev keys expect the key in the JSON payload; include it there and keep the header for compatibility.
        payload = {**payload, "api_key": self.api_key}
        headers["X-API-Key"] = str(self.api_key)
        try:
            resp = await self.client.post(
                url,
                json=payload,
                headers=headers,
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            raise RetrievalError("http_status", detail, status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            raise RetrievalError("request_failed", str(e)) from e
        except ValueError as e:
            raise RetrievalError("malformed_response", str(e)) from e
        if not isinstance(data, dict):
            raise RetrievalError("malformed_response", "expected a JSON object")
        return data

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
