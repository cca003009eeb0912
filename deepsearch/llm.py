import json
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

import httpx

from .errors import ModelGenerationError


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallRequest:
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)


ModelEvent = Union[TextDelta, ToolCallRequest]


class ChatModel(Protocol):
    def stream_step(
        self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelEvent]:
        ...

    async def close(self) -> None:
        ...


def _merge_tool_fragment(pending: Dict[int, Dict[str, Any]], fragment: Dict[str, Any]) -> None:
    index = fragment.get("index")
    if not isinstance(index, int):
        index = len(pending)
    slot = pending.setdefault(index, {"id": "", "name": "", "arguments": ""})
    if isinstance(fragment.get("id"), str) and fragment["id"]:
        slot["id"] = fragment["id"]
    function = fragment.get("function")
    if not isinstance(function, dict):
        return
    if isinstance(function.get("name"), str):
        slot["name"] += function["name"]
    if isinstance(function.get("arguments"), str):
        slot["arguments"] += function["arguments"]


def _finish_tool_call(slot: Dict[str, Any]) -> ToolCallRequest:
    raw = slot.get("arguments") or ""
    args: Dict[str, Any]
    try:
        parsed = json.loads(raw) if raw.strip() else {}
        args = parsed if isinstance(parsed, dict) else {"value": parsed}
    except ValueError:
        # Left for the tool registry to reject, so the model sees why.
        args = {"_raw_arguments": raw}
    return ToolCallRequest(
        tool_call_id=slot.get("id") or f"call_{uuid.uuid4().hex[:12]}",
        tool_name=slot.get("name") or "",
        args=args,
    )


def _chunk_delta(data: Any) -> Dict[str, Any]:
    """The first choice's delta of one stream chunk; empty when the chunk carries no choices."""
    if not isinstance(data, dict):
        raise ModelGenerationError(f"Malformed stream chunk: {data!r:.200}")
    if data.get("error"):
        raise ModelGenerationError(f"Model stream error: {data['error']}")
    choices = data.get("choices")
    if not choices:
        return {}
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise ModelGenerationError(f"Malformed choices in stream chunk: {choices!r:.200}")
    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        raise ModelGenerationError(f"Malformed delta in stream chunk: {delta!r:.200}")
    return delta


class ChatModelClient:
    """Streaming client for an OpenAI-compatible /chat/completions endpoint with function calling."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        temperature: float = 0.2,
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except ValueError:
            pass
        return response.text

    def build_payload(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if self.max_output_tokens:
            payload["max_tokens"] = self.max_output_tokens
        return payload

    async def stream_step(
        self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelEvent]:
        """Yield text deltas as they arrive, then the step's completed tool calls in request order."""
        url = f"{self.base_url}/chat/completions"
        payload = self.build_payload(messages, tools)
        pending: Dict[int, Dict[str, Any]] = {}
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    detail = self._extract_error_detail(resp)
                    raise ModelGenerationError(f"Model endpoint returned {resp.status_code}: {detail}")
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except ValueError:
                        continue
                    delta = _chunk_delta(data)
                    text = delta.get("content")
                    if isinstance(text, str) and text:
                        yield TextDelta(text)
                    fragments = delta.get("tool_calls") or []
                    if not isinstance(fragments, list):
                        raise ModelGenerationError(f"Malformed tool_calls in stream chunk: {chunk[:200]}")
                    for fragment in fragments:
                        if isinstance(fragment, dict):
                            _merge_tool_fragment(pending, fragment)
        except (httpx.HTTPError, httpx.StreamError) as exc:
            raise ModelGenerationError(f"Model request failed: {exc}") from exc
        for index in sorted(pending):
            yield _finish_tool_call(pending[index])

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
