import asyncio
import logging
from functools import partial
from typing import Awaitable, Callable, List, Optional

from .concurrency import Attempted, gather_settled, retry_async
from .errors import RetrievalError
from .schemas import CrawlEntry, CrawlResult

logger = logging.getLogger("uvicorn.error")

CANCELLED_REASON = "cancelled"

PageFetcher = Callable[[str], Awaitable[str]]


def describe_failure(error: Optional[BaseException]) -> str:
    if isinstance(error, RetrievalError):
        return str(error)
    if error is None:
        return "unknown error"
    return f"{type(error).__name__}: {error}"


def _entry(url: str, outcome: Optional[Attempted[str]]) -> CrawlEntry:
    if outcome is None:
        return CrawlEntry(url=url, success=False, error=CANCELLED_REASON)
    if outcome.ok:
        return CrawlEntry(url=url, success=True, content=outcome.value, attempts=outcome.attempts)
    return CrawlEntry(url=url, success=False, error=describe_failure(outcome.error), attempts=outcome.attempts)


async def bulk_crawl(
    fetch: PageFetcher,
    urls: List[str],
    *,
    max_attempts: int = 3,
    concurrency: int = 5,
    retry_delay_s: float = 0.0,
    stop_event: Optional[asyncio.Event] = None,
) -> CrawlResult:
    factories = [
        partial(retry_async, partial(fetch, url), attempts=max_attempts, delay=retry_delay_s)
        for url in urls
    ]
    settled = await gather_settled(factories, limit=concurrency, stop_event=stop_event)
    entries = [_entry(url, outcome) for url, outcome in zip(urls, settled)]
    failed = [entry for entry in entries if not entry.success]
    if not failed:
        return CrawlResult(success=True, results=entries)
    for entry in failed:
        logger.warning("Crawl of %s failed after %s attempt(s): %s", entry.url, entry.attempts, entry.error)
    details = "; ".join(f"{entry.url}: {entry.error}" for entry in failed)
    return CrawlResult(
        success=False,
        results=entries,
        error=f"Failed to crawl {len(failed)} of {len(entries)} URLs: {details}",
    )
