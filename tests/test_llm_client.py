import json

import httpx
import pytest
import respx
from httpx import Response

from deepsearch.errors import ModelGenerationError
from deepsearch.llm import ChatModelClient, TextDelta, ToolCallRequest

URL = "http://model.test/v1/chat/completions"


def _sse(*chunks) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _delta(**delta):
    return {"choices": [{"index": 0, "delta": delta}]}


async def _collect(client, messages=None, tools=None):
    return [event async for event in client.stream_step(messages or [{"role": "user", "content": "hi"}], tools or [])]


@pytest.mark.asyncio
async def test_stream_step_yields_text_then_assembled_tool_calls():
    client = ChatModelClient("http://model.test/v1", "test-model", api_key="sk-test", max_output_tokens=256)
    captured = {}
    body = _sse(
        _delta(content="Let me "),
        _delta(content="check."),
        _delta(tool_calls=[{"index": 1, "id": "call_b", "function": {"name": "scrapePages", "arguments": ""}}]),
        _delta(tool_calls=[{"index": 0, "id": "call_a", "function": {"name": "searchWeb", "arguments": '{"que'}}]),
        _delta(tool_calls=[{"index": 0, "function": {"arguments": 'ry": "llamas"}'}}]),
        _delta(tool_calls=[{"index": 1, "function": {"arguments": '{"urls": ["https://a.test"]}'}}]),
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, content=body, headers={"Content-Type": "text/event-stream"})

            respx_mock.post(URL).mock(side_effect=handler)
            tools = [{"type": "function", "function": {"name": "searchWeb", "parameters": {}}}]
            events = await _collect(client, tools=tools)
    finally:
        await client.close()

    assert events == [
        TextDelta("Let me "),
        TextDelta("check."),
        ToolCallRequest(tool_call_id="call_a", tool_name="searchWeb", args={"query": "llamas"}),
        ToolCallRequest(tool_call_id="call_b", tool_name="scrapePages", args={"urls": ["https://a.test"]}),
    ]
    assert captured["json"]["stream"] is True
    assert captured["json"]["tool_choice"] == "auto"
    assert captured["json"]["max_tokens"] == 256
    assert captured["headers"]["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_stream_step_keeps_unparseable_arguments_for_validation():
    client = ChatModelClient("http://model.test/v1", "test-model")
    body = _sse(_delta(tool_calls=[{"index": 0, "function": {"name": "searchWeb", "arguments": "{broken"}}]))
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(200, content=body))
            events = await _collect(client)
    finally:
        await client.close()

    (call,) = events
    assert call.tool_name == "searchWeb"
    assert call.args == {"_raw_arguments": "{broken"}
    assert call.tool_call_id.startswith("call_")


@pytest.mark.asyncio
async def test_stream_step_http_error_raises_model_error():
    client = ChatModelClient("http://model.test/v1", "test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(500, json={"error": "model crashed"}))
            with pytest.raises(ModelGenerationError) as excinfo:
                await _collect(client)
            assert "500" in str(excinfo.value)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stream_step_connection_error_raises_model_error():
    client = ChatModelClient("http://model.test/v1", "test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ModelGenerationError):
                await _collect(client)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stream_step_error_chunk_raises_model_error():
    client = ChatModelClient("http://model.test/v1", "test-model")
    body = _sse(_delta(content="partial"), {"error": {"message": "context length exceeded"}})
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(200, content=body))
            seen = []
            with pytest.raises(ModelGenerationError):
                async for event in client.stream_step([{"role": "user", "content": "hi"}], []):
                    seen.append(event)
            assert seen == [TextDelta("partial")]
    finally:
        await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "bad_chunk",
    [
        {"choices": ["oops"]},
        {"choices": [{"index": 0, "delta": "oops"}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": "oops"}}]},
        ["not", "an", "object"],
    ],
)
async def test_stream_step_malformed_chunk_raises_model_error(bad_chunk):
    client = ChatModelClient("http://model.test/v1", "test-model")
    body = _sse(_delta(content="partial"), bad_chunk)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(200, content=body))
            seen = []
            with pytest.raises(ModelGenerationError):
                async for event in client.stream_step([{"role": "user", "content": "hi"}], []):
                    seen.append(event)
            assert seen == [TextDelta("partial")]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stream_step_ignores_malformed_tool_fragment_fields():
    client = ChatModelClient("http://model.test/v1", "test-model")
    body = _sse(
        _delta(tool_calls=[{"index": 0, "id": 7, "function": "oops"}]),
        _delta(tool_calls=[{"index": 0, "function": {"name": "searchWeb", "arguments": '{"query": "q"}'}}]),
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(200, content=body))
            (call,) = await _collect(client)
    finally:
        await client.close()

    assert call.tool_name == "searchWeb"
    assert call.args == {"query": "q"}
    assert call.tool_call_id.startswith("call_")


def test_build_payload_omits_tools_when_none():
    client = ChatModelClient("http://model.test/v1/", "test-model", temperature=0.5)
    payload = client.build_payload([{"role": "user", "content": "hi"}], [])
    assert "tools" not in payload
    assert "max_tokens" not in payload
    assert payload["temperature"] == 0.5
    assert client.base_url == "http://model.test/v1"
