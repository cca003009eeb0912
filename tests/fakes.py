import asyncio
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from deepsearch.errors import RetrievalError
from deepsearch.llm import TextDelta, ToolCallRequest


def text_step(*chunks: str) -> List[Any]:
    return [TextDelta(chunk) for chunk in chunks]


def tool_step(*calls: ToolCallRequest, text: str = "") -> List[Any]:
    items: List[Any] = [TextDelta(text)] if text else []
    items.extend(calls)
    return items


def search_call(call_id: str, query: str) -> ToolCallRequest:
    return ToolCallRequest(tool_call_id=call_id, tool_name="searchWeb", args={"query": query})


def scrape_call(call_id: str, urls: Sequence[str]) -> ToolCallRequest:
    return ToolCallRequest(tool_call_id=call_id, tool_name="scrapePages", args={"urls": list(urls)})


class FakeChatModel:
    """Replays scripted steps. A step is a list of model events; an exception in it is raised in place."""

    def __init__(
        self,
        steps: Optional[List[List[Any]]] = None,
        *,
        default_text: str = "Done.",
        delay_seconds: float = 0.0,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.steps = list(steps or [])
        self.default_text = default_text
        self.delay_seconds = delay_seconds
        self.gate = gate
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def stream_step(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]):
        self.calls.append({"messages": messages, "tools": tools})
        if self.gate is not None:
            await self.gate.wait()
        step = self.steps.pop(0) if self.steps else text_step(self.default_text)
        for item in step:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            if isinstance(item, BaseException):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True


class FakeTavilyClient:
    def __init__(
        self,
        api_key: Optional[str] = "test-key",
        *,
        search_results: Optional[List[Dict[str, Any]]] = None,
        pages: Optional[Dict[str, str]] = None,
        failing_urls: Optional[Sequence[str]] = None,
        flaky_urls: Optional[Dict[str, int]] = None,
        url_delays: Optional[Dict[str, float]] = None,
        search_delays: Optional[Dict[str, float]] = None,
        search_error: Optional[Exception] = None,
    ) -> None:
        self.api_key = api_key
        self.search_results = search_results
        self.pages = pages or {}
        self.failing_urls = set(failing_urls or [])
        self.flaky_urls = dict(flaky_urls or {})
        self.url_delays = url_delays or {}
        self.search_delays = search_delays or {}
        self.search_error = search_error
        self.search_calls: List[str] = []
        self.extract_calls: Counter = Counter()
        self.closed = False

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
        self.search_calls.append(query)
        delay = self.search_delays.get(query)
        if delay:
            await asyncio.sleep(delay)
        if self.search_error is not None:
            raise self.search_error
        if self.search_results is not None:
            return list(self.search_results)[:max_results]
        return [
            {
                "title": f"{query} result",
                "url": f"https://example.com/{query.replace(' ', '-')}",
                "content": f"About {query}",
                "published_date": "2024-05-01",
            }
        ][:max_results]

    async def extract_page(self, url: str, extract_depth: str = "basic") -> str:
        self.extract_calls[url] += 1
        delay = self.url_delays.get(url)
        if delay:
            await asyncio.sleep(delay)
        if url in self.failing_urls:
            raise RetrievalError("extract_failed", f"blocked {url}")
        if self.extract_calls[url] <= self.flaky_urls.get(url, 0):
            raise RetrievalError("request_failed", "connection reset")
        return self.pages.get(url, f"Content of {url}")

    async def close(self) -> None:
        self.closed = True
