import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

from .schemas import ToolInvocation

NEW_CHAT_CREATED = "NEW_CHAT_CREATED"
GENERIC_ERROR_MESSAGE = "Oops, an error occurred!"

_CLOSED = object()


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=True)}\n\n"


class TurnStream:
    """Ordered, append-only event channel for a single turn with exactly one reader."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._published = 0
        self._control_sent = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def published(self) -> int:
        return self._published

    async def publish(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> dict:
        if self._closed:
            raise RuntimeError("turn stream is closed")
        event = {"type": event_type, **(payload or {})}
        self._published += 1
        await self._queue.put(event)
        return event

    async def new_conversation(self, conversation_id: str) -> dict:
        if self._control_sent:
            raise RuntimeError("new conversation event already sent")
        if self._published:
            raise RuntimeError("new conversation event must be the first event of the turn")
        self._control_sent = True
        return await self.publish("control", {"kind": NEW_CHAT_CREATED, "conversation_id": conversation_id})

    async def text_delta(self, text: str) -> dict:
        return await self.publish("text-delta", {"text": text})

    async def tool_call(self, invocation: ToolInvocation) -> dict:
        return await self.publish(
            "tool-call",
            {
                "tool_call_id": invocation.tool_call_id,
                "tool_name": invocation.tool_name,
                "args": invocation.args,
            },
        )

    async def tool_result(self, invocation: ToolInvocation) -> dict:
        payload: Dict[str, Any] = {
            "tool_call_id": invocation.tool_call_id,
            "tool_name": invocation.tool_name,
            "state": invocation.state,
        }
        if invocation.state == "error":
            payload["error"] = invocation.error
        else:
            payload["result"] = invocation.result
        return await self.publish("tool-result", payload)

    async def error(self, message: str = GENERIC_ERROR_MESSAGE) -> dict:
        return await self.publish("error", {"message": message})

    async def finish(self, reason: str, persisted: bool, steps: int) -> dict:
        return await self.publish("finish", {"reason": reason, "persisted": persisted, "steps": steps})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    async def events(self) -> AsyncIterator[dict]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
