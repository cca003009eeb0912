import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from .errors import TurnCancelled

T = TypeVar("T")


@dataclass
class Attempted(Generic[T]):
    """Outcome of a retried call: the value, or the last error after every attempt failed."""

    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def _discard(awaitable: Awaitable[Any]) -> None:
    close = getattr(awaitable, "close", None)
    if callable(close):
        close()


async def until_stopped(awaitable: Awaitable[T], stop_event: Optional[asyncio.Event]) -> T:
    """Await `awaitable` unless `stop_event` fires first, in which case it is cancelled and TurnCancelled raised."""
    if stop_event is None:
        return await awaitable
    if stop_event.is_set():
        _discard(awaitable)
        raise TurnCancelled("stop requested")
    task = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        stopper.cancel()
        raise
    if task in done:
        stopper.cancel()
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise TurnCancelled("stop requested")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float = 0.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Attempted[T]:
    attempts = max(1, attempts)
    last: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return Attempted(value=await fn(), attempts=attempt)
        except retry_on as exc:
            last = exc
            if attempt < attempts and delay > 0:
                await asyncio.sleep(delay * attempt)
    return Attempted(error=last, attempts=attempts)


async def gather_settled(
    factories: Sequence[Callable[[], Awaitable[Attempted[T]]]],
    limit: int,
    stop_event: Optional[asyncio.Event] = None,
) -> List[Optional[Attempted[T]]]:
    """Run independent tasks with bounded concurrency and report each one's outcome in input order.

    A failing task never cancels its siblings. When `stop_event` fires, unfinished
    tasks are cancelled and reported as None while finished ones keep their outcome.
    """
    if not factories:
        return []
    sem = asyncio.Semaphore(max(1, limit))

    async def guarded(factory: Callable[[], Awaitable[Attempted[T]]]) -> Attempted[T]:
        async with sem:
            return await factory()

    tasks = [asyncio.ensure_future(guarded(factory)) for factory in factories]
    try:
        await until_stopped(asyncio.gather(*tasks, return_exceptions=True), stop_event)
    except TurnCancelled:
        pass
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise
    outcomes: List[Optional[Attempted[T]]] = []
    for task in tasks:
        if not task.done():
            task.cancel()
            outcomes.append(None)
        elif task.cancelled():
            outcomes.append(None)
        elif task.exception() is not None:
            outcomes.append(Attempted(error=task.exception(), attempts=1))
        else:
            outcomes.append(task.result())
    return outcomes
