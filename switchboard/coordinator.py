import asyncio
import json
import logging
import re
import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Set

from .agents import HANDOFF_GUIDE, VOICE_WRAP_SYSTEM, agent_prompt
from .compressor import HistoryCompressor
from .config import AppSettings
from .context import ContextBuilder, PromptContext, build_system_prompt
from .handoff import (
    HandoffStreamFilter,
    build_handoff_context,
    detect_handoff_signal,
    is_valid_handoff,
    strip_handoff_markers,
)
from .model_resolver import ModelConfig, ModelResolver
from .quality import FeedbackTracker
from .router import DEFAULT_AGENT, Router, parse_agent_mention
from .schemas import ChatRequest, ChatResponse, RoutingDecision, SwitchBack, ToolEvent
from .tool_executor import ToolCall, ToolExecutor, ToolRegistry, ToolResult, parse_tool_calls
from .topic_tracker import RoutingContext, TopicTracker, check_switch_back_suggestion

logger = logging.getLogger("uvicorn.error")

EMPTY_RESPONSE = "Sorry, I received an empty response. Please try again."
EMPTY_STREAM_RESPONSE = "I apologize, but I couldn't generate a response. Please try again."
TOOLS_DONE_RESPONSE = "I executed the requested actions."
NEED_MORE_INFO_RESPONSE = "I need more information to help with that."
_CHUNK_RE = re.compile(r"\S+\s*|\s+")


class OrchestrationError(RuntimeError):
    pass


def chunk_words(text: str) -> List[str]:
    return _CHUNK_RE.findall(text or "")


def _message_content(resp: Dict[str, Any]) -> Dict[str, Any]:
    choices = resp.get("choices") or []
    if not choices:
        return {}
    return choices[0].get("message") or {}


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class Coordinator:
    def __init__(
        self,
        settings: AppSettings,
        db: Any,
        lm_client: Any,
        resolver: ModelResolver,
        router: Router,
        topic_tracker: TopicTracker,
        tool_executor: ToolExecutor,
        tool_registry: ToolRegistry,
        feedback_tracker: FeedbackTracker,
        response_cache: Any = None,
        context_builder: Optional[ContextBuilder] = None,
        memory_extractor: Any = None,
        history_compressor: Optional[HistoryCompressor] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.db = db
        self.lm_client = lm_client
        self.resolver = resolver
        self.router = router
        self.topic_tracker = topic_tracker
        self.tool_executor = tool_executor
        self.tool_registry = tool_registry
        self.feedback_tracker = feedback_tracker
        self.response_cache = response_cache
        self.context_builder = context_builder or ContextBuilder(db)
        self.memory_extractor = memory_extractor
        self.history_compressor = history_compressor
        self.clock = clock
        self.wall_clock = wall_clock
        self._background: Set["asyncio.Task[Any]"] = set()

    # Background work

    async def _guard(self, coro: Any, label: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Background task %s failed", label)

    def _spawn(self, coro: Any, label: str) -> None:
        task = asyncio.create_task(self._guard(coro, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Steps

    async def _record_implicit_feedback(self, user_id: str, thread_id: str, message: str) -> None:
        try:
            last = await self.db.get_last_assistant_message(thread_id)
            if not last:
                return
            sent_at = _parse_ts(last.get("created_at"))
            elapsed_ms = (self.wall_clock() - sent_at).total_seconds() * 1000 if sent_at else float("inf")
            signal = self.feedback_tracker.scorer.detect_implicit_feedback(message, last.get("content") or "", elapsed_ms)
            if signal:
                await self.feedback_tracker.record_feedback(user_id, str(last["id"]), signal, agent=last.get("agent"))
        except Exception as exc:
            logger.warning("Implicit feedback detection failed for %s: %s", thread_id, exc)

    async def _decide(self, message: str, routing_ctx: RoutingContext, force_agent: Optional[str]) -> RoutingDecision:
        decision = self.router.route(message, routing_ctx.topic_context, force_agent)
        if decision.source == "fallback" and self.settings.llm_routing_enabled:
            decision = await self.router.refine_with_llm(
                decision, message, self.lm_client, self.resolver.resolve("orchestrator")
            )
        return decision

    def _build_messages(
        self,
        agent: str,
        prompt_ctx: PromptContext,
        history: List[Dict[str, Any]],
        handoff_context: Optional[str],
        sections: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        extra = [HANDOFF_GUIDE.strip()]
        extra.extend(section for section in sections or [] if section)
        if handoff_context:
            extra.append(handoff_context)
        system_prompt = build_system_prompt(agent_prompt(agent), prompt_ctx, extra)
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for item in history:
            if item.get("role") in ("user", "assistant") and item.get("content"):
                messages.append({"role": item["role"], "content": item["content"]})
        return messages

    async def voice_wrap(self, agent: str, content: str) -> str:
        """Rewrite a specialist answer in the personality voice; returns `content` unchanged on any failure."""
        if not self.settings.voice_wrap_enabled or agent == DEFAULT_AGENT:
            return content
        if len(content) < self.settings.voice_wrap_min_chars:
            return content
        config = self.resolver.resolve(DEFAULT_AGENT)
        if not config.api_key:
            return content
        messages = [
            {"role": "system", "content": VOICE_WRAP_SYSTEM.format(agent=agent).strip()},
            {"role": "user", "content": content},
        ]
        try:
            resp = await self.lm_client.chat_completion(
                config, messages, max_tokens=self.settings.max_completion_tokens
            )
            wrapped = (_message_content(resp).get("content") or "").strip()
        except Exception as exc:
            logger.warning("Voice wrap failed for %s; using raw content: %s", agent, exc)
            return content
        return wrapped or content

    async def _score_and_cache(
        self,
        user_id: str,
        thread_id: str,
        message_id: Optional[int],
        agent: str,
        query: str,
        response: str,
        latency_ms: int,
        cacheable: bool,
    ) -> None:
        score = await self.feedback_tracker.record_quality(
            user_id, thread_id, str(message_id) if message_id else None, agent, query, response, latency_ms
        )
        if cacheable and self.response_cache is not None and self.feedback_tracker.scorer.is_worth_caching(score):
            self.response_cache.put(user_id, agent, query, response, score.overall)

    # Pipeline

    async def _run_tools(
        self,
        agent: str,
        calls: List[ToolCall],
        caller_id: str,
        events: List[Dict[str, Any]],
    ) -> AsyncGenerator[Dict[str, Any], None]:
        """Execute tool calls concurrently, yielding tool_start/tool_end events as they happen."""
        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

        async def on_start(call: ToolCall) -> None:
            await queue.put(
                {
                    "type": "tool_start",
                    "tool": call.name,
                    "args": call.args,
                    "id": call.id,
                    "startedAt": self.wall_clock().timestamp(),
                }
            )

        async def on_end(call: ToolCall, result: ToolResult) -> None:
            await queue.put(
                {
                    "type": "tool_end",
                    "tool": call.name,
                    "success": result.success,
                    "result": result.to_dict(),
                    "id": call.id,
                    "duration": result.meta.get("durationMs"),
                    "completedAt": self.wall_clock().timestamp(),
                }
            )

        task = asyncio.create_task(
            self.tool_executor.execute_many(agent, calls, caller_id, on_start=on_start, on_end=on_end)
        )
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield queue.get_nowait()
            events.append({"type": "results", "results": task.result()})
        finally:
            if not task.done():
                task.cancel()

    async def _pipeline(self, request: ChatRequest, live_stream: bool) -> AsyncGenerator[Dict[str, Any], None]:
        started = self.clock()
        user_id = request.user_id
        mention_agent, message = parse_agent_mention(request.message)
        if not message.strip():
            message = request.message.strip()
        force_agent = request.force_agent or mention_agent

        # THREAD_RESOLVED
        try:
            thread = await self.db.get_thread(request.thread_id) if request.thread_id else None
            is_new_thread = thread is None
            if thread is None:
                thread = await self.db.create_thread(user_id, title=message[:60], thread_id=request.thread_id)
        except Exception as exc:
            logger.exception("Failed to resolve thread")
            yield {"type": "error", "message": f"Failed to resolve thread: {exc}", "recoverable": True}
            return
        thread_id = thread["id"]
        if is_new_thread:
            yield {"type": "thread_created", "threadId": thread_id}

        try:
            if not is_new_thread:
                await self._record_implicit_feedback(user_id, thread_id, message)
            await self.db.add_message(thread_id, user_id, "user", message)

            # CONTEXT_BUILT
            routing_ctx, prompt_ctx, history = await asyncio.gather(
                self.topic_tracker.get_routing_context(None if is_new_thread else thread_id, message),
                self.context_builder.gather(user_id, message, request.user_profile),
                self.db.list_messages(thread_id, limit=self.settings.history_limit),
            )

            # ROUTED
            decision = await self._decide(message, routing_ctx, force_agent)
            agent = decision.agent
            logger.info(
                "Routed thread %s to %s (source=%s confidence=%.2f): %s",
                thread_id,
                agent,
                decision.source,
                decision.confidence,
                decision.rationale,
            )
            yield {"type": "routing", "decision": decision.model_dump()}
            yield {"type": "agent_start", "agent": agent}

            # MODEL_RESOLVED
            config: ModelConfig = self.resolver.resolve(agent)
            if not config.api_key:
                yield {
                    "type": "error",
                    "message": f"⚠️ API key not configured for {agent}",
                    "recoverable": False,
                    "agent": agent,
                    "threadId": thread_id,
                }
                return
            yield {"type": "model", "model": config.model, "provider": config.provider, "isFallback": config.is_fallback}

            metadata = thread.get("metadata") or {}
            pending_handoff = metadata.get("pending_handoff")
            handoff_context = None
            if pending_handoff and pending_handoff.get("to") == agent:
                handoff_context = pending_handoff.get("context")

            content = ""
            streamed_live = False
            cached = False
            tool_results: List[Dict[str, Any]] = []
            cached_entry = None
            if self.response_cache is not None and not force_agent:
                cached_entry = self.response_cache.get(user_id, agent, message)
            if cached_entry:
                content = cached_entry["content"]
                cached = True
            else:
                # PROMPT_BUILT
                sections: List[str] = []
                if agent == "home":
                    sections.append(await self.context_builder.device_context())
                if self.history_compressor is not None:
                    compressed = await self.history_compressor.compress(history)
                    history = compressed.messages
                    sections.append(self.history_compressor.context_block(compressed))
                messages = self._build_messages(agent, prompt_ctx, history, handoff_context, sections)
                tools = self.tool_registry.openai_tools(agent)
                max_tokens = self.settings.max_completion_tokens

                if not tools:
                    if live_stream and agent == DEFAULT_AGENT:
                        parts: List[str] = []
                        marker_filter = HandoffStreamFilter()
                        async for delta in self.lm_client.stream_text(config, messages, max_tokens=max_tokens):
                            parts.append(delta)
                            visible = marker_filter.feed(delta)
                            if visible:
                                yield {"type": "content", "delta": visible}
                        tail = marker_filter.flush()
                        if tail:
                            yield {"type": "content", "delta": tail}
                        content = "".join(parts)
                        streamed_live = True
                        if not content.strip():
                            content = EMPTY_STREAM_RESPONSE
                            yield {"type": "content", "delta": content}
                    else:
                        resp = await self.lm_client.chat_completion(config, messages, max_tokens=max_tokens)
                        content = _message_content(resp).get("content") or EMPTY_RESPONSE
                else:
                    # TOOL_LOOP
                    resp = await self.lm_client.chat_completion(
                        config, messages, tools=tools, tool_choice="auto", max_tokens=max_tokens
                    )
                    first = _message_content(resp)
                    raw_calls = first.get("tool_calls") or []
                    if raw_calls:
                        calls = parse_tool_calls(raw_calls)
                        sink: List[Dict[str, Any]] = []
                        async for event in self._run_tools(agent, calls, user_id, sink):
                            yield event
                        results: List[ToolResult] = sink[-1]["results"]
                        follow_up = list(messages)
                        follow_up.append({"role": "assistant", "content": None, "tool_calls": raw_calls})
                        for call, result in zip(calls, results):
                            tool_results.append({"tool": call.name, "success": result.success, "result": result.to_dict()})
                            follow_up.append(
                                {
                                    "role": "tool",
                                    "tool_call_id": call.id,
                                    "content": json.dumps(result.to_dict(), default=str),
                                }
                            )
                        second = await self.lm_client.chat_completion(config, follow_up, max_tokens=max_tokens)
                        content = _message_content(second).get("content") or TOOLS_DONE_RESPONSE
                    else:
                        content = first.get("content") or NEED_MORE_INFO_RESPONSE

            # RESPONSE_FINALIZED
            handoff_event = None
            next_pending = pending_handoff if pending_handoff and pending_handoff.get("to") != agent else None
            signal = detect_handoff_signal(content)
            if signal is not None:
                recent = list(reversed(routing_ctx.topic_context.recent_agents)) if routing_ctx.topic_context else []
                valid, why = is_valid_handoff(agent, signal.target, recent)
                if valid:
                    handoff_event = {"type": "handoff", "from": agent, "to": signal.target, "reason": signal.reason}
                    history_for_handoff = history + [{"role": "assistant", "content": content, "agent": agent}]
                    next_pending = {
                        "from": agent,
                        "to": signal.target,
                        "reason": signal.reason,
                        "context": build_handoff_context(
                            agent,
                            signal.target,
                            history_for_handoff,
                            signal.reason,
                            tool_executions=tool_results or None,
                            original_intent=message,
                        ),
                    }
                    yield handoff_event
                else:
                    logger.info("Ignoring hand-off from %s to %s: %s", agent, signal.target, why)
            display = strip_handoff_markers(content)
            if not display:
                display = f"Let me bring in the {signal.target} agent for this." if signal else EMPTY_RESPONSE
            final = display
            if not cached and not streamed_live:
                final = await self.voice_wrap(agent, display)
            if not streamed_live:
                for piece in chunk_words(final):
                    yield {"type": "content", "delta": piece}
            elif not strip_handoff_markers(content):
                # The stream held nothing but a marker.
                yield {"type": "content", "delta": final}

            latency_ms = int((self.clock() - started) * 1000)

            # PERSISTED
            saved = await self.db.add_message(
                thread_id,
                user_id,
                "assistant",
                final,
                agent=agent,
                metadata={
                    "routing": decision.model_dump(),
                    "model": config.model,
                    "provider": config.provider,
                    "tools": [item["tool"] for item in tool_results],
                    "handoff": {k: v for k, v in handoff_event.items() if k != "type"} if handoff_event else None,
                    "cached": cached,
                },
            )

            # TELEMETRY_LOGGED
            try:
                await self.db.add_routing_telemetry(
                    user_id,
                    thread_id,
                    saved.get("id"),
                    decision.model_dump(),
                    latency_ms,
                    [item["tool"] for item in tool_results],
                    config.is_fallback,
                )
            except Exception as exc:
                logger.warning("Failed to log routing telemetry for %s: %s", thread_id, exc)

            # TOPIC_UPDATED
            switch_back = None
            try:
                updated = await self.topic_tracker.update(
                    thread_id, agent, message, routing_ctx.topic_context, expected_version=routing_ctx.version
                )
                suggestion = check_switch_back_suggestion(updated, agent, self.wall_clock())
                if suggestion:
                    switch_back = SwitchBack(**asdict(suggestion)).model_dump()
                if next_pending != pending_handoff:
                    await self.db.update_thread_metadata(thread_id, {"pending_handoff": next_pending})
            except Exception as exc:
                logger.warning("Failed to update topic context for %s: %s", thread_id, exc)

            self._spawn(
                self._score_and_cache(
                    user_id, thread_id, saved.get("id"), agent, message, final, latency_ms, cacheable=not cached
                ),
                "quality",
            )
            if self.memory_extractor is not None and self.settings.memory_extraction_enabled and not cached:
                self._spawn(self.memory_extractor.extract(user_id, thread_id, message, final), "memory")

            # DONE
            done: Dict[str, Any] = {
                "type": "done",
                "fullContent": final,
                "agent": agent,
                "threadId": thread_id,
                "messageId": saved.get("id"),
                "cached": cached,
            }
            if switch_back:
                done["switchBack"] = switch_back
            yield done
        except Exception as exc:
            logger.exception("Orchestration failed for thread %s", thread_id)
            yield {"type": "error", "message": str(exc) or type(exc).__name__, "recoverable": True, "threadId": thread_id}

    async def stream(self, request: ChatRequest) -> AsyncGenerator[Dict[str, Any], None]:
        async for event in self._pipeline(request, live_stream=True):
            if event["type"] in ("tool_start", "tool_end") and not request.show_tool_executions:
                continue
            if event["type"] == "model":
                continue
            yield event

    async def run(self, request: ChatRequest) -> ChatResponse:
        thread_id: Optional[str] = request.thread_id
        decision: Optional[RoutingDecision] = None
        model: Dict[str, Any] = {}
        tools: Dict[str, ToolEvent] = {}
        handoff: Optional[Dict[str, Any]] = None
        async for event in self._pipeline(request, live_stream=False):
            etype = event["type"]
            if etype == "thread_created":
                thread_id = event["threadId"]
            elif etype == "routing":
                decision = RoutingDecision(**event["decision"])
            elif etype == "model":
                model = event
            elif etype == "tool_start":
                tools[event["id"]] = ToolEvent(
                    id=event["id"], tool=event["tool"], args=event["args"], started_at=event.get("startedAt")
                )
            elif etype == "tool_end":
                item = tools.get(event["id"]) or ToolEvent(id=event["id"], tool=event["tool"])
                tools[event["id"]] = item.model_copy(
                    update={
                        "status": "completed" if event["success"] else "failed",
                        "result": event["result"],
                        "duration_ms": event["duration"],
                        "completed_at": event.get("completedAt"),
                    }
                )
            elif etype == "handoff":
                handoff = {k: v for k, v in event.items() if k != "type"}
            elif etype == "error":
                if event.get("recoverable") or decision is None:
                    raise OrchestrationError(event["message"])
                return ChatResponse(
                    content=event["message"],
                    agent=decision.agent,
                    thread_id=event.get("threadId") or thread_id or "",
                    routing=decision,
                    tool_executions=list(tools.values()),
                    error=event["message"],
                )
            elif etype == "done":
                return ChatResponse(
                    content=event["fullContent"],
                    agent=event["agent"],
                    thread_id=event["threadId"],
                    routing=decision,
                    model=model.get("model"),
                    provider=model.get("provider"),
                    tool_executions=list(tools.values()),
                    handoff=handoff,
                    switch_back=event.get("switchBack"),
                    cached=event.get("cached", False),
                )
        raise OrchestrationError("Orchestration ended without a response")
