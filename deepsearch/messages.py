import json
from typing import Any, Dict, List, Optional, Sequence

from .schemas import ChatMessage, MessagePart, TextPart, ToolInvocation, ToolInvocationPart

DEFAULT_TITLE = "New Chat"


def _unknown_part(part: Any) -> TypeError:
    return TypeError(f"Unsupported message part: {type(part).__name__}")


def message_text(message: ChatMessage) -> str:
    """Plain text of a message: its content, or its text parts joined when content is empty."""
    if message.content:
        return message.content
    texts: List[str] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            texts.append(part.text)
        elif isinstance(part, ToolInvocationPart):
            continue
        else:
            raise _unknown_part(part)
    return "".join(texts)


def derive_title(messages: Sequence[ChatMessage], max_length: int = 50, fallback: str = DEFAULT_TITLE) -> str:
    if not messages:
        return fallback
    text = message_text(messages[-1]).strip()
    return text[:max_length] or fallback


def tool_invocations(message: ChatMessage) -> List[ToolInvocation]:
    invocations: List[ToolInvocation] = []
    for part in message.parts:
        if isinstance(part, ToolInvocationPart):
            invocations.append(part.tool_invocation)
        elif isinstance(part, TextPart):
            continue
        else:
            raise _unknown_part(part)
    return invocations


def assistant_message(text: str, invocations: Sequence[ToolInvocation]) -> ChatMessage:
    parts: List[MessagePart] = []
    if text:
        parts.append(TextPart(text=text))
    parts.extend(ToolInvocationPart(tool_invocation=invocation) for invocation in invocations)
    return ChatMessage(role="assistant", content=text, parts=parts)


def tool_output(invocation: ToolInvocation) -> str:
    if invocation.state == "result":
        return json.dumps(invocation.result, ensure_ascii=True)
    if invocation.state == "error":
        return json.dumps({"error": invocation.error or "Tool failed"}, ensure_ascii=True)
    return json.dumps({"error": "Tool call did not complete"}, ensure_ascii=True)


def _tool_call(invocation: ToolInvocation) -> Dict[str, Any]:
    return {
        "id": invocation.tool_call_id,
        "type": "function",
        "function": {
            "name": invocation.tool_name,
            "arguments": json.dumps(invocation.args, ensure_ascii=True),
        },
    }


def to_model_messages(history: Sequence[ChatMessage], system_prompt: Optional[str] = None) -> List[Dict[str, Any]]:
    """Flatten stored chat messages into OpenAI-style chat messages.

    An assistant message carrying tool invocations becomes an assistant entry with
    `tool_calls` followed by one `tool` entry per invocation, in part order.
    """
    out: List[Dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for message in history:
        text = message_text(message)
        invocations = tool_invocations(message)
        if message.role == "user":
            out.append({"role": "user", "content": text})
        elif message.role == "assistant":
            if not invocations:
                out.append({"role": "assistant", "content": text})
                continue
            out.append(
                {
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": [_tool_call(invocation) for invocation in invocations],
                }
            )
            for invocation in invocations:
                out.append({"role": "tool", "tool_call_id": invocation.tool_call_id, "content": tool_output(invocation)})
        elif message.role == "tool":
            for invocation in invocations:
                out.append({"role": "tool", "tool_call_id": invocation.tool_call_id, "content": tool_output(invocation)})
        else:
            raise ValueError(f"Unsupported role: {message.role}")
    return out
