import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .cache import ResponseCache, TTLCache
from .compressor import CompressionConfig, HistoryCompressor
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .context import ContextBuilder
from .coordinator import Coordinator, OrchestrationError
from .db import Database
from .llm import ProviderClient
from .memory import MemoryExtractor
from .model_resolver import AGENT_TYPES, ModelResolver
from .quality import FeedbackSignal, FeedbackTracker
from .router import Router
from .schemas import ChatRequest, DocumentCreate, FeedbackRequest, MemoryCreate, ThreadCreate
from .tool_executor import ToolExecutor
from .tools import HomeAssistantClient, WeatherClient, build_default_registry
from .topic_tracker import TopicTracker, utc_now

logger = logging.getLogger("uvicorn.error")


def default_location(settings: AppSettings) -> Optional[Dict[str, float]]:
    if settings.weather.default_lat is None or settings.weather.default_lon is None:
        return None
    return {"lat": settings.weather.default_lat, "lon": settings.weather.default_lon}


def build_coordinator(app: FastAPI) -> Coordinator:
    """Wire the orchestration services from the current app.state settings and clients."""
    state = app.state
    settings: AppSettings = state.settings
    location = default_location(settings)
    resolver = ModelResolver(settings.provider_credentials(), settings.model_overrides)
    utility_agents = None
    if not settings.personality_tools_enabled:
        utility_agents = [agent for agent in AGENT_TYPES if agent != "personality"]
    registry = build_default_registry(
        state.weather_client,
        state.home_client,
        default_timezone=settings.default_timezone,
        default_location=location,
        utility_agents=utility_agents,
    )
    response_cache = None
    if settings.response_cache_enabled:
        response_cache = ResponseCache(TTLCache(max_size=settings.response_cache_size))
    context_builder = ContextBuilder(
        state.db,
        weather=state.weather_client,
        default_timezone=settings.default_timezone,
        default_location=location,
        memory_limit=settings.memory_limit,
        document_chars=settings.document_context_chars,
        clock=state.clock,
        home=state.home_client,
        device_cache=state.device_cache,
    )
    feedback_tracker = FeedbackTracker(state.db)
    state.resolver = resolver
    state.feedback_tracker = feedback_tracker
    state.response_cache = response_cache
    return Coordinator(
        settings,
        state.db,
        state.lm_client,
        resolver,
        Router(),
        TopicTracker(state.db, clock=state.clock),
        ToolExecutor(registry, timeouts=settings.tool_timeouts_ms, max_concurrency=settings.tool_max_concurrency),
        registry,
        feedback_tracker,
        response_cache=response_cache,
        context_builder=context_builder,
        memory_extractor=MemoryExtractor(state.lm_client, resolver, state.db),
        history_compressor=HistoryCompressor(
            state.lm_client,
            resolver,
            CompressionConfig(
                max_tokens=settings.history_max_tokens,
                recent_messages=settings.history_recent_messages,
            ),
        ),
        wall_clock=state.clock,
    )


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_coordinator(request: Request) -> Coordinator:
    return request.app.state.coordinator


def get_resolver(request: Request) -> ModelResolver:
    return request.app.state.resolver


def get_feedback_tracker(request: Request) -> FeedbackTracker:
    return request.app.state.feedback_tracker


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


def require_agent(agent: str) -> str:
    if agent not in AGENT_TYPES:
        raise HTTPException(status_code=404, detail=f"Unknown agent: {agent}")
    return agent


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    request.app.state.settings = new_settings
    request.app.state.weather_client.api_key = new_settings.weather.api_key
    request.app.state.home_client.base_url = (new_settings.home_assistant.base_url or "").rstrip("/")
    request.app.state.home_client.token = new_settings.home_assistant.token
    request.app.state.device_cache.clear()
    await request.app.state.coordinator.drain()
    request.app.state.coordinator = build_coordinator(request.app)
    logger.info("Settings updated; coordinator rebuilt")
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/chat")
async def chat(payload: ChatRequest, coordinator: Coordinator = Depends(get_coordinator)):
    try:
        return await coordinator.run(payload)
    except OrchestrationError as exc:
        raise HTTPException(status_code=502, detail=str(exc))


@router.post("/api/chat/stream")
async def chat_stream(payload: ChatRequest, coordinator: Coordinator = Depends(get_coordinator)):
    async def event_generator():
        try:
            async for event in coordinator.stream(payload):
                yield sse_format(event)
        except asyncio.CancelledError:
            logger.info("Chat stream cancelled by client")
            raise

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/threads")
async def list_threads(user_id: str = "default", limit: int = 50, db: Database = Depends(get_db)):
    return {"threads": await db.list_threads(user_id, limit=limit)}


@router.post("/api/threads")
async def create_thread(payload: ThreadCreate, db: Database = Depends(get_db)):
    return await db.create_thread(payload.user_id, title=payload.title)


@router.get("/api/threads/{thread_id}")
async def get_thread(thread_id: str, db: Database = Depends(get_db)):
    thread = await db.get_thread(thread_id)
    if not thread:
        raise HTTPException(status_code=404, detail="Thread not found")
    return thread


@router.get("/api/threads/{thread_id}/messages")
async def get_thread_messages(thread_id: str, limit: int = 200, db: Database = Depends(get_db)):
    if not await db.get_thread(thread_id):
        raise HTTPException(status_code=404, detail="Thread not found")
    return {"messages": await db.list_messages(thread_id, limit=limit)}


@router.get("/api/threads/{thread_id}/routing")
async def get_thread_routing(thread_id: str, db: Database = Depends(get_db)):
    if not await db.get_thread(thread_id):
        raise HTTPException(status_code=404, detail="Thread not found")
    return {"routing": await db.list_routing_telemetry(thread_id)}


@router.post("/api/routing/feedback")
async def routing_feedback(
    payload: FeedbackRequest,
    tracker: FeedbackTracker = Depends(get_feedback_tracker),
):
    signal = FeedbackSignal("explicit", payload.signal, payload.source, payload.strength)
    await tracker.record_feedback(payload.user_id, payload.message_id, signal, agent=payload.agent)
    return {"ok": True, "feedback": signal.to_dict()}


@router.get("/api/agents/{agent}/metrics")
async def agent_metrics(
    agent: str,
    days: Optional[int] = None,
    tracker: FeedbackTracker = Depends(get_feedback_tracker),
):
    require_agent(agent)
    return {"agent": agent, "metrics": await tracker.get_agent_metrics(agent, days=days)}


@router.get("/api/agents/{agent}/models")
async def agent_models(agent: str, resolver: ModelResolver = Depends(get_resolver)):
    require_agent(agent)
    return {
        "agent": agent,
        "selected": resolver.resolve(agent).to_dict(),
        "chain": [config.to_dict() for config in resolver.model_chain(agent)],
        "available": [config.to_dict() for config in resolver.available_models(agent)],
    }


@router.get("/api/health")
async def health(request: Request, resolver: ModelResolver = Depends(get_resolver)):
    cache = request.app.state.response_cache
    return {
        "ok": True,
        "agents": resolver.health_check(),
        "tools": {
            "weather": request.app.state.weather_client.enabled,
            "home_assistant": request.app.state.home_client.enabled,
        },
        "response_cache": cache.stats() if cache is not None else None,
    }


@router.get("/api/memory")
async def list_memory(user_id: str = "default", limit: int = 50, db: Database = Depends(get_db)):
    return {"items": await db.list_memories(user_id, limit=limit)}


@router.post("/api/memory")
async def create_memory(item: MemoryCreate, db: Database = Depends(get_db)):
    content = item.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Memory content is required.")
    memory_id = await db.add_memory(item.user_id, item.memory_type, content, importance=item.importance)
    return {"id": memory_id}


@router.delete("/api/memory/{memory_id}")
async def delete_memory(memory_id: int, user_id: str = "default", db: Database = Depends(get_db)):
    if not await db.delete_memory(user_id, memory_id):
        raise HTTPException(status_code=404, detail="Memory not found")
    return {"ok": True}


@router.post("/api/documents")
async def create_document(doc: DocumentCreate, db: Database = Depends(get_db)):
    if not doc.content.strip():
        raise HTTPException(status_code=400, detail="Document content is required.")
    doc_id = await db.add_document(doc.user_id, doc.title, doc.content)
    return {"id": doc_id}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    lm_client: Optional[ProviderClient] = None,
    home_client: Optional[HomeAssistantClient] = None,
    weather_client: Optional[WeatherClient] = None,
    config_path: Optional[Path] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            await app.state.coordinator.drain()
            await app.state.lm_client.close()
            await app.state.weather_client.close()
            await app.state.home_client.close()

    app = FastAPI(title="Switchboard Agent Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.lm_client = lm_client or ProviderClient()
    app.state.weather_client = weather_client or WeatherClient(
        settings.weather.api_key,
        TTLCache(default_ttl=settings.weather.cache_ttl_s),
        base_url=settings.weather.base_url,
        units=settings.weather.units,
        cache_ttl_s=settings.weather.cache_ttl_s,
    )
    app.state.home_client = home_client or HomeAssistantClient(
        settings.home_assistant.base_url, settings.home_assistant.token
    )
    app.state.clock = clock or utc_now
    app.state.device_cache = TTLCache(default_ttl=settings.home_assistant.device_cache_ttl_s)
    app.state.config_path = config_path or CONFIG_PATH
    app.state.coordinator = build_coordinator(app)

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("SWITCHBOARD_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "switchboard.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
