import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Optional, Protocol, Type

from pydantic import BaseModel, ValidationError

from .concurrency import until_stopped
from .config import AppSettings
from .crawler import bulk_crawl
from .errors import RetrievalError
from .schemas import ScrapePagesArgs, SearchHit, SearchWebArgs, ToolInvocation
from .tavily import TavilyClient

logger = logging.getLogger("uvicorn.error")

SEARCH_TOOL = "searchWeb"
CRAWL_TOOL = "scrapePages"


class Tool(Protocol):
    name: str
    description: str
    args_model: Type[BaseModel]

    async def run(self, args: Any, stop_event: Optional[asyncio.Event]) -> Any:
        ...


def to_search_hit(item: Dict[str, Any]) -> SearchHit:
    return SearchHit(
        title=str(item.get("title") or ""),
        link=str(item.get("url") or item.get("link") or ""),
        snippet=str(item.get("content") or item.get("snippet") or ""),
        date=item.get("published_date") or item.get("date") or None,
    )


class SearchWebTool:
    name = SEARCH_TOOL
    description = "Search the web. Returns result titles, links, snippets and publication dates when known."
    args_model = SearchWebArgs

    def __init__(self, tavily: TavilyClient, result_count: int = 10):
        self.tavily = tavily
        self.result_count = result_count

    async def run(self, args: SearchWebArgs, stop_event: Optional[asyncio.Event]) -> List[Dict[str, Any]]:
        raw = await until_stopped(self.tavily.search(args.query, max_results=self.result_count), stop_event)
        return [to_search_hit(item).model_dump() for item in raw if item.get("url") or item.get("link")]


class ScrapePagesTool:
    name = CRAWL_TOOL
    description = (
        "Fetch the full readable content of web pages. Returns per-URL content; "
        "when some pages fail, the ones that succeeded are still returned."
    )
    args_model = ScrapePagesArgs

    def __init__(
        self,
        tavily: TavilyClient,
        *,
        extract_depth: str = "basic",
        max_attempts: int = 3,
        concurrency: int = 5,
        retry_delay_s: float = 0.5,
    ):
        self.tavily = tavily
        self.extract_depth = extract_depth
        self.max_attempts = max_attempts
        self.concurrency = concurrency
        self.retry_delay_s = retry_delay_s

    async def run(self, args: ScrapePagesArgs, stop_event: Optional[asyncio.Event]) -> Dict[str, Any]:
        result = await bulk_crawl(
            partial(self.tavily.extract_page, extract_depth=self.extract_depth),
            args.urls,
            max_attempts=self.max_attempts,
            concurrency=self.concurrency,
            retry_delay_s=self.retry_delay_s,
            stop_event=stop_event,
        )
        return result.model_dump(exclude_none=True)


class ToolRegistry:
    def __init__(self, tools: List[Tool]):
        self.tools: Dict[str, Tool] = {tool.name: tool for tool in tools}

    @classmethod
    def from_settings(cls, tavily: TavilyClient, settings: AppSettings) -> "ToolRegistry":
        return cls(
            [
                SearchWebTool(tavily, result_count=settings.search_result_count),
                ScrapePagesTool(
                    tavily,
                    extract_depth=settings.extract_depth,
                    max_attempts=settings.crawl_max_attempts,
                    concurrency=settings.crawl_concurrency,
                    retry_delay_s=settings.crawl_retry_delay_s,
                ),
            ]
        )

    def definitions(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.args_model.model_json_schema(),
                },
            }
            for tool in self.tools.values()
        ]

    async def execute(self, invocation: ToolInvocation, stop_event: Optional[asyncio.Event] = None) -> ToolInvocation:
        """Run one requested call. Failures come back as an `error` invocation, never as an exception."""
        tool = self.tools.get(invocation.tool_name)
        if tool is None:
            return invocation.with_error(f"Unknown tool: {invocation.tool_name}")
        try:
            args = tool.args_model.model_validate(invocation.args)
        except ValidationError as exc:
            return invocation.with_error(f"Invalid arguments for {tool.name}: {exc.errors(include_url=False)}")
        try:
            result = await tool.run(args, stop_event)
        except RetrievalError as exc:
            logger.warning("Tool %s (%s) failed: %s", tool.name, invocation.tool_call_id, exc)
            return invocation.with_error(str(exc))
        return invocation.with_result(result)
