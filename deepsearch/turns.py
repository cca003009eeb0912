import asyncio
import logging
from typing import Dict, Optional, Sequence

from .agent import AgentLoop, LoopOutcome, LoopState
from .db import Database
from .errors import OwnershipViolation, StorageError, TurnCancelled
from .messages import DEFAULT_TITLE, derive_title
from .schemas import ChatMessage
from .stream import TurnStream
from .tracing import TurnTrace

logger = logging.getLogger("uvicorn.error")

FINISH_CANCELLED = "cancelled"
FINISH_ERROR = "error"


class ConversationLocks:
    """One in-flight turn per conversation. A second turn is refused, not queued."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def busy(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    async def try_acquire(self, conversation_id: str) -> bool:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        if lock.locked():
            return False
        # An unlocked lock with no waiters is taken without suspending.
        await lock.acquire()
        return True

    def release(self, conversation_id: str) -> None:
        lock = self._locks.get(conversation_id)
        if lock is None or not lock.locked():
            return
        lock.release()
        self._locks.pop(conversation_id, None)


async def prepare_turn(
    db: Database,
    trace: TurnTrace,
    *,
    user_id: str,
    conversation_id: str,
    messages: Sequence[ChatMessage],
    title_max_length: int = 50,
) -> bool:
    """Persist the submitted history before the loop starts. Returns True when the conversation was created."""
    title = derive_title(messages, max_length=title_max_length)
    with trace.span("upsert-chat-transaction", messages=len(messages), title=title) as span:
        created = await db.upsert_conversation(user_id, conversation_id, title, messages)
        span.end({"success": True, "created": created})
    return created


def _steps_started(loop: AgentLoop) -> int:
    return loop.transitions.count(LoopState.GENERATING)


async def run_turn(
    loop: AgentLoop,
    db: Database,
    stream: TurnStream,
    trace: TurnTrace,
    *,
    user_id: str,
    conversation_id: str,
    history: Sequence[ChatMessage],
    stop_event: Optional[asyncio.Event] = None,
    title_max_length: int = 50,
) -> Optional[LoopOutcome]:
    """Run the agent loop, persist the final history, then close the stream.

    The stream is closed only after the post-turn write has finished, whatever
    its outcome. A cancelled turn keeps the pre-turn state and writes nothing.
    """
    try:
        try:
            outcome = await loop.run(history, stop_event)
        except TurnCancelled:
            logger.info("Turn for conversation %s cancelled", conversation_id)
            await stream.finish(FINISH_CANCELLED, persisted=False, steps=_steps_started(loop))
            return None
        except Exception:
            logger.exception("Turn for conversation %s failed", conversation_id)
            await stream.error()
            await stream.finish(FINISH_ERROR, persisted=False, steps=_steps_started(loop))
            return None

        fallback = derive_title(history, max_length=title_max_length) if history else DEFAULT_TITLE
        title = derive_title(outcome.messages, max_length=title_max_length, fallback=fallback)
        persisted = False
        try:
            with trace.span("update-chat-final", messages=len(outcome.messages), title=title):
                await db.upsert_conversation(user_id, conversation_id, title, outcome.messages)
            persisted = True
        except (StorageError, OwnershipViolation) as exc:
            logger.error("Failed to persist conversation %s after turn: %s", conversation_id, exc)
            if outcome.state != LoopState.FAILED:
                await stream.error()
        await stream.finish(outcome.stop_reason, persisted=persisted, steps=outcome.steps)
        return outcome
    finally:
        await stream.close()
