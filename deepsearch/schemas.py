import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


Role = Literal["user", "assistant", "tool"]
ToolState = Literal["pending", "result", "error"]


def new_id() -> str:
    return uuid.uuid4().hex


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolInvocation(BaseModel):
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    state: ToolState = "pending"
    result: Any = None
    error: Optional[str] = None

    def with_result(self, result: Any) -> "ToolInvocation":
        return self.model_copy(update={"state": "result", "result": result, "error": None})

    def with_error(self, error: str) -> "ToolInvocation":
        return self.model_copy(update={"state": "error", "result": None, "error": error})


class ToolInvocationPart(BaseModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_invocation: ToolInvocation


MessagePart = Annotated[Union[TextPart, ToolInvocationPart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Role
    content: str = ""
    parts: List[MessagePart] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_tool_call_ids(self) -> "ChatMessage":
        seen = set()
        for part in self.parts:
            if isinstance(part, ToolInvocationPart):
                call_id = part.tool_invocation.tool_call_id
                if call_id in seen:
                    raise ValueError(f"duplicate tool_call_id {call_id!r} in message {self.id}")
                seen.add(call_id)
        return self


class StoredMessage(ChatMessage):
    ordinal: int
    created_at: str


class ConversationSummary(BaseModel):
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str


class Conversation(ConversationSummary):
    messages: List[StoredMessage] = Field(default_factory=list)


class ChatRequest(BaseModel):
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    messages: List[ChatMessage]

    model_config = {"populate_by_name": True}


class SearchHit(BaseModel):
    title: str = ""
    link: str
    snippet: str = ""
    date: Optional[str] = None


class CrawlEntry(BaseModel):
    url: str
    success: bool
    content: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


class CrawlResult(BaseModel):
    success: bool
    results: List[CrawlEntry] = Field(default_factory=list)
    error: Optional[str] = None


class SearchWebArgs(BaseModel):
    query: str = Field(min_length=1, description="The query to search the web for")


class ScrapePagesArgs(BaseModel):
    urls: List[str] = Field(min_length=1, description="The URLs to scrape for full content")
