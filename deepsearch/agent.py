import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .concurrency import until_stopped
from .errors import ModelGenerationError, TurnCancelled
from .llm import ChatModel, TextDelta, ToolCallRequest
from .messages import assistant_message, to_model_messages
from .prompts import build_system_prompt
from .schemas import ChatMessage, ToolInvocation
from .stream import TurnStream
from .tools import ToolRegistry
from .tracing import TurnTrace

logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_STEPS = 10

STOP_REASON_DONE = "stop"
STOP_REASON_STEP_LIMIT = "step_limit"
STOP_REASON_ERROR = "error"


class LoopState(str, Enum):
    GENERATING = "generating"
    AWAITING_TOOLS = "awaiting_tools"
    CONTINUING = "continuing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnStep:
    index: int
    text: str = ""
    requests: List[ToolInvocation] = field(default_factory=list)


@dataclass
class LoopOutcome:
    state: LoopState
    messages: List[ChatMessage]
    new_messages: List[ChatMessage]
    steps: int
    stop_reason: str
    final_text: str
    transitions: List[LoopState]
    error: Optional[BaseException] = None


class AgentLoop:
    """Drives the model through bounded generate -> tools -> continue steps for one turn.

    The loop never touches storage: it returns the merged history and the caller
    decides what to persist.
    """

    def __init__(
        self,
        model: ChatModel,
        tools: ToolRegistry,
        stream: TurnStream,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        trace: Optional[TurnTrace] = None,
        system_prompt: Optional[str] = None,
    ):
        self.model = model
        self.tools = tools
        self.stream = stream
        self.max_steps = max(1, max_steps)
        self.trace = trace
        self.system_prompt = system_prompt
        self.state = LoopState.GENERATING
        self.transitions: List[LoopState] = []

    def _enter(self, state: LoopState) -> None:
        self.state = state
        self.transitions.append(state)

    def _span(self, name: str, **inputs):
        if self.trace is None:
            return nullcontext()
        return self.trace.span(name, **inputs)

    async def run(
        self,
        history: Sequence[ChatMessage],
        stop_event: Optional[asyncio.Event] = None,
    ) -> LoopOutcome:
        working: List[ChatMessage] = list(history)
        appended: List[ChatMessage] = []
        self.transitions = []
        system_prompt = self.system_prompt or build_system_prompt()
        stop_reason = STOP_REASON_DONE
        final_text = ""
        step_index = 0

        def append(message: ChatMessage) -> None:
            working.append(message)
            appended.append(message)

        self._enter(LoopState.GENERATING)
        while True:
            step_index += 1
            step = TurnStep(index=step_index)
            try:
                with self._span("generate", step=step_index, history=len(working)):
                    await self._generate(step, working, system_prompt, stop_event)
            except ModelGenerationError as exc:
                logger.error("Model generation failed at step %s: %s", step_index, exc)
                self._enter(LoopState.FAILED)
                if step.text:
                    append(assistant_message(step.text, []))
                await self.stream.error()
                return LoopOutcome(
                    state=LoopState.FAILED,
                    messages=working,
                    new_messages=appended,
                    steps=step_index,
                    stop_reason=STOP_REASON_ERROR,
                    final_text=step.text,
                    transitions=list(self.transitions),
                    error=exc,
                )

            final_text = step.text
            if not step.requests:
                append(assistant_message(step.text, []))
                self._enter(LoopState.DONE)
                break

            self._enter(LoopState.AWAITING_TOOLS)
            with self._span("tools", step=step_index, calls=[r.tool_name for r in step.requests]):
                resolved = await self._run_tools(step, stop_event)
            self._enter(LoopState.CONTINUING)
            append(assistant_message(step.text, resolved))
            if step_index >= self.max_steps:
                logger.warning("Turn hit the %s step limit; finishing with the last step's text", self.max_steps)
                stop_reason = STOP_REASON_STEP_LIMIT
                self._enter(LoopState.DONE)
                break
            self._enter(LoopState.GENERATING)

        return LoopOutcome(
            state=LoopState.DONE,
            messages=working,
            new_messages=appended,
            steps=step_index,
            stop_reason=stop_reason,
            final_text=final_text,
            transitions=list(self.transitions),
        )

    async def _generate(
        self,
        step: TurnStep,
        working: List[ChatMessage],
        system_prompt: str,
        stop_event: Optional[asyncio.Event],
    ) -> None:
        if stop_event is not None and stop_event.is_set():
            raise TurnCancelled("stop requested")
        events = self.model.stream_step(to_model_messages(working, system_prompt), self.tools.definitions())
        seen_ids = set()
        try:
            while True:
                try:
                    event = await until_stopped(events.__anext__(), stop_event)
                except StopAsyncIteration:
                    break
                if isinstance(event, TextDelta):
                    step.text += event.text
                    await self.stream.text_delta(event.text)
                elif isinstance(event, ToolCallRequest):
                    call_id = event.tool_call_id
                    suffix = len(step.requests)
                    # The suffixed id can itself collide with one the model sent earlier.
                    while call_id in seen_ids:
                        call_id = f"{event.tool_call_id}_{suffix}"
                        suffix += 1
                    seen_ids.add(call_id)
                    step.requests.append(
                        ToolInvocation(tool_call_id=call_id, tool_name=event.tool_name, args=event.args)
                    )
                else:
                    raise TypeError(f"Unsupported model event: {type(event).__name__}")
        finally:
            await events.aclose()

    async def _run_tools(self, step: TurnStep, stop_event: Optional[asyncio.Event]) -> List[ToolInvocation]:
        for request in step.requests:
            await self.stream.tool_call(request)
        outcomes = await asyncio.gather(
            *(self.tools.execute(request, stop_event) for request in step.requests),
            return_exceptions=True,
        )
        by_call_id: Dict[str, ToolInvocation] = {}
        for request, outcome in zip(step.requests, outcomes):
            if isinstance(outcome, TurnCancelled):
                raise outcome
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Tool %s crashed", request.tool_name, exc_info=outcome)
                outcome = request.with_error("Tool execution failed")
            by_call_id[outcome.tool_call_id] = outcome
        if stop_event is not None and stop_event.is_set():
            raise TurnCancelled("stop requested")
        # Attach in request order regardless of which call finished first.
        resolved = [by_call_id[request.tool_call_id] for request in step.requests]
        for invocation in resolved:
            await self.stream.tool_result(invocation)
        return resolved
