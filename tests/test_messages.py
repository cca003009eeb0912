import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from deepsearch.messages import DEFAULT_TITLE, assistant_message, derive_title, message_text, to_model_messages
from deepsearch.prompts import build_system_prompt
from deepsearch.schemas import ChatMessage, ChatRequest, TextPart, ToolInvocation, ToolInvocationPart


def _user(text: str) -> ChatMessage:
    return ChatMessage(role="user", content=text, parts=[TextPart(text=text)])


def test_derive_title_uses_last_message_truncated():
    long_text = "x" * 80
    assert derive_title([_user("first"), _user(long_text)]) == "x" * 50
    assert derive_title([_user("first"), _user("  short  ")]) == "short"


def test_derive_title_falls_back_when_empty():
    assert derive_title([]) == DEFAULT_TITLE
    assert derive_title([assistant_message("", [])], fallback="Earlier title") == "Earlier title"


def test_message_text_joins_text_parts_when_content_missing():
    message = ChatMessage(role="assistant", parts=[TextPart(text="Hello "), TextPart(text="there")])
    assert message_text(message) == "Hello there"


def test_assistant_message_orders_text_before_invocations():
    invocation = ToolInvocation(tool_call_id="call_1", tool_name="searchWeb", args={"query": "q"}).with_result([])
    message = assistant_message("Looking.", [invocation])
    assert [part.type for part in message.parts] == ["text", "tool-invocation"]
    assert message.content == "Looking."


def test_duplicate_tool_call_ids_rejected():
    invocation = ToolInvocation(tool_call_id="call_1", tool_name="searchWeb")
    with pytest.raises(ValidationError):
        ChatMessage(
            role="assistant",
            parts=[ToolInvocationPart(tool_invocation=invocation), ToolInvocationPart(tool_invocation=invocation)],
        )


def test_unknown_part_type_rejected():
    with pytest.raises(ValidationError):
        ChatMessage.model_validate({"role": "user", "parts": [{"type": "image", "url": "x"}]})


def test_chat_request_accepts_camel_case_id():
    request = ChatRequest.model_validate({"conversationId": "c1", "messages": [{"role": "user", "content": "hi"}]})
    assert request.conversation_id == "c1"
    assert request.messages[0].id


def test_to_model_messages_expands_tool_invocations():
    ok = ToolInvocation(tool_call_id="call_1", tool_name="searchWeb", args={"query": "q"}).with_result([{"link": "a"}])
    failed = ToolInvocation(tool_call_id="call_2", tool_name="scrapePages", args={"urls": ["u"]}).with_error("blocked")
    history = [_user("q"), assistant_message("", [ok, failed]), assistant_message("Answer", [])]

    out = to_model_messages(history, system_prompt="sys")
    assert [m["role"] for m in out] == ["system", "user", "assistant", "tool", "tool", "assistant"]
    assert out[2]["content"] is None
    assert [c["id"] for c in out[2]["tool_calls"]] == ["call_1", "call_2"]
    assert json.loads(out[2]["tool_calls"][0]["function"]["arguments"]) == {"query": "q"}
    assert json.loads(out[3]["content"]) == [{"link": "a"}]
    assert json.loads(out[4]["content"]) == {"error": "blocked"}
    assert out[5] == {"role": "assistant", "content": "Answer"}


def test_system_prompt_carries_date_and_tool_names():
    prompt = build_system_prompt(datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc))
    assert "Wednesday, May 01, 2024" in prompt
    assert "searchWeb" in prompt
    assert "scrapePages" in prompt
