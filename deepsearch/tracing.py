import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger("uvicorn.error")


@dataclass
class Span:
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    started_at: float = field(default_factory=time.monotonic)
    duration_ms: Optional[float] = None

    def end(self, output: Dict[str, Any]) -> None:
        if self.duration_ms is not None:
            return
        self.output = output
        self.duration_ms = (time.monotonic() - self.started_at) * 1000.0


class TurnTrace:
    """Spans for one turn. Built per request and handed to the runner and agent loop."""

    def __init__(self, user_id: str, conversation_id: str, name: str = "chat"):
        self.trace_id = uuid.uuid4().hex
        self.name = name
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.spans: List[Span] = []

    @contextmanager
    def span(self, name: str, **inputs: Any) -> Iterator[Span]:
        span = Span(name=name, input=dict(inputs))
        self.spans.append(span)
        try:
            yield span
        except BaseException as exc:
            span.end({"success": False, "error": str(exc) or type(exc).__name__})
            self._log(span)
            raise
        span.end(span.output if span.output is not None else {"success": True})
        self._log(span)

    def find(self, name: str) -> List[Span]:
        return [span for span in self.spans if span.name == name]

    def _log(self, span: Span) -> None:
        logger.info(
            "trace=%s conversation=%s span=%s duration_ms=%.1f input=%s output=%s",
            self.trace_id,
            self.conversation_id,
            span.name,
            span.duration_ms or 0.0,
            span.input,
            span.output,
        )
