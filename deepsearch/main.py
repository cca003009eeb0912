import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .agent import AgentLoop
from .auth import get_current_user
from .config import AppSettings, load_settings
from .db import Database
from .errors import OwnershipViolation, StorageError
from .llm import ChatModel, ChatModelClient
from .schemas import ChatRequest, new_id
from .stream import GENERIC_ERROR_MESSAGE, TurnStream, sse_format
from .tavily import TavilyClient
from .tools import ToolRegistry
from .tracing import TurnTrace
from .turns import ConversationLocks, prepare_turn, run_turn

logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_model_client(request: Request) -> ChatModel:
    return request.app.state.model_client


def get_tool_registry(request: Request) -> ToolRegistry:
    return request.app.state.tools


def get_locks(request: Request) -> ConversationLocks:
    return request.app.state.locks


def get_turn_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.turn_tasks


def get_turn_stop_events(request: Request) -> Dict[str, asyncio.Event]:
    return request.app.state.turn_stop_events


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/api/chat")
async def chat(
    payload: ChatRequest,
    user_id: str = Depends(get_current_user),
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    model_client: ChatModel = Depends(get_model_client),
    tools: ToolRegistry = Depends(get_tool_registry),
    locks: ConversationLocks = Depends(get_locks),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
    turn_stop_events: Dict[str, asyncio.Event] = Depends(get_turn_stop_events),
):
    if not payload.messages:
        raise HTTPException(status_code=400, detail="Messages are required.")
    conversation_id = payload.conversation_id or new_id()
    if not await locks.try_acquire(conversation_id):
        raise HTTPException(status_code=409, detail="A turn is already running for this conversation.")

    trace = TurnTrace(user_id, conversation_id)
    try:
        created = await prepare_turn(
            db,
            trace,
            user_id=user_id,
            conversation_id=conversation_id,
            messages=payload.messages,
            title_max_length=settings.title_max_length,
        )
    except OwnershipViolation:
        locks.release(conversation_id)
        logger.warning("User %s tried to write conversation %s they do not own", user_id, conversation_id)
        raise HTTPException(status_code=404, detail="Conversation not found")
    except StorageError:
        locks.release(conversation_id)
        logger.exception("Pre-turn save failed for conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail=GENERIC_ERROR_MESSAGE)
    except BaseException:
        locks.release(conversation_id)
        raise

    stream = TurnStream()
    if created:
        await stream.new_conversation(conversation_id)
    stop_event = asyncio.Event()
    turn_stop_events[conversation_id] = stop_event
    loop = AgentLoop(model_client, tools, stream, max_steps=settings.max_steps, trace=trace)

    async def run_and_cleanup() -> None:
        try:
            await run_turn(
                loop,
                db,
                stream,
                trace,
                user_id=user_id,
                conversation_id=conversation_id,
                history=payload.messages,
                stop_event=stop_event,
                title_max_length=settings.title_max_length,
            )
        finally:
            turn_tasks.pop(conversation_id, None)
            turn_stop_events.pop(conversation_id, None)
            locks.release(conversation_id)

    task = asyncio.create_task(run_and_cleanup())
    turn_tasks[conversation_id] = task

    async def event_generator():
        try:
            async for event in stream.events():
                yield sse_format(event)
        finally:
            # Reader went away before the turn finished.
            if not task.done() and not stop_event.is_set():
                logger.info("Client left conversation %s mid-turn; stopping", conversation_id)
                stop_event.set()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.post("/api/chats/{conversation_id}/stop")
async def stop_chat(
    conversation_id: str,
    user_id: str = Depends(get_current_user),
    db: Database = Depends(get_db),
    turn_stop_events: Dict[str, asyncio.Event] = Depends(get_turn_stop_events),
):
    convo = await db.get_conversation(user_id, conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    stop_event = turn_stop_events.get(conversation_id)
    if stop_event is None:
        return {"ok": True, "status": "idle"}
    if not stop_event.is_set():
        stop_event.set()
    return {"ok": True, "status": "stopping"}


@router.get("/api/chats")
async def list_chats(user_id: str = Depends(get_current_user), db: Database = Depends(get_db)):
    conversations = await db.list_conversations(user_id)
    return {"conversations": [c.model_dump() for c in conversations]}


@router.get("/api/chats/{conversation_id}")
async def get_chat(conversation_id: str, user_id: str = Depends(get_current_user), db: Database = Depends(get_db)):
    convo = await db.get_conversation(user_id, conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": convo.model_dump()}


@router.delete("/api/chats/{conversation_id}")
async def delete_chat(
    conversation_id: str,
    user_id: str = Depends(get_current_user),
    db: Database = Depends(get_db),
    locks: ConversationLocks = Depends(get_locks),
):
    if locks.busy(conversation_id):
        raise HTTPException(status_code=409, detail="A turn is already running for this conversation.")
    deleted = await db.delete_conversation(user_id, conversation_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    model_client: Optional[ChatModel] = None,
    tavily_client: Optional[TavilyClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        if not app.state.tavily_client.enabled:
            logger.warning("TAVILY_API_KEY is not set; web search and page extraction will fail")
        if not app.state.settings.api_tokens:
            logger.warning("No API tokens configured; every chat request will be rejected")
        try:
            yield
        finally:
            for stop_event in list(app.state.turn_stop_events.values()):
                stop_event.set()
            pending = list(app.state.turn_tasks.values())
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await app.state.model_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="DeepSearch Chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.model_client = model_client or ChatModelClient(
        settings.model_base_url,
        settings.model_id,
        api_key=settings.model_api_key,
        max_output_tokens=settings.max_output_tokens,
        temperature=settings.temperature,
        timeout=settings.model_timeout_s,
    )
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key)
    app.state.tools = ToolRegistry.from_settings(app.state.tavily_client, settings)
    app.state.locks = ConversationLocks()
    app.state.turn_tasks = {}
    app.state.turn_stop_events = {}

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("DEEPSEARCH_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "deepsearch.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
