import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import httpx

logger = logging.getLogger("uvicorn.error")

# Per-tool timeouts in milliseconds. External APIs get longer budgets than local utilities.
TOOL_TIMEOUTS_MS: Dict[str, int] = {
    "github_search_code": 15000,
    "github_get_file": 10000,
    "github_list_prs": 10000,
    "github_create_issue": 15000,
    "github_create_pr": 20000,
    "supabase_run_sql": 30000,
    "supabase_get_schema": 10000,
    "supabase_vector_search": 15000,
    "gmail_list_messages": 15000,
    "gmail_send_message": 20000,
    "calendar_list_events": 10000,
    "calendar_create_event": 15000,
    "drive_search_files": 15000,
    "control_device": 5000,
    "set_climate": 5000,
    "activate_scene": 5000,
    "get_device_state": 5000,
    "get_current_datetime": 1000,
    "calculate": 1000,
    "get_weather": 10000,
}
DEFAULT_TOOL_TIMEOUT_MS = 10000

CONFIRMATION_REQUIRED_TOOLS = {
    "gmail_send_message",
    "github_create_issue",
    "github_create_pr",
    "calendar_delete_event",
    "supabase_run_sql",
}
DESTRUCTIVE_SQL_RE = re.compile(r"\b(DELETE|DROP|TRUNCATE|ALTER|UPDATE)\b", re.IGNORECASE)

ToolHandler = Callable[..., Awaitable[Any]]


class ToolValidationError(ValueError):
    pass


class ToolTimeoutError(asyncio.TimeoutError):
    pass


@dataclass(frozen=True)
class ErrorRule:
    code: str
    recoverable: bool
    markers: Tuple[str, ...] = ()
    exception_types: Tuple[type, ...] = ()
    status_codes: Tuple[int, ...] = ()


ERROR_RULES: Tuple[ErrorRule, ...] = (
    ErrorRule(
        "TIMEOUT",
        True,
        markers=("timed out", "timeout"),
        exception_types=(asyncio.TimeoutError, httpx.TimeoutException),
        status_codes=(408, 504),
    ),
    ErrorRule(
        "CONNECTION_ERROR",
        True,
        markers=("failed to fetch", "econnrefused", "connection refused", "connecterror", "name or service not known"),
        exception_types=(httpx.ConnectError, httpx.NetworkError, ConnectionError),
    ),
    ErrorRule("NOT_FOUND", False, markers=("not found", "404"), status_codes=(404,)),
    ErrorRule(
        "AUTH_ERROR",
        False,
        markers=("unauthorized", "forbidden", "401", "403"),
        status_codes=(401, 403),
    ),
    ErrorRule("RATE_LIMITED", True, markers=("rate limit", "429"), status_codes=(429,)),
    ErrorRule(
        "VALIDATION_ERROR",
        False,
        markers=("validation", "invalid"),
        exception_types=(ToolValidationError, json.JSONDecodeError),
        status_codes=(400, 422),
    ),
)
UNKNOWN_ERROR = ("UNKNOWN_ERROR", False)


def classify_error(error: Any, rules: Sequence[ErrorRule] = ERROR_RULES) -> Tuple[str, bool]:
    """Map an exception (or message) to (code, recoverable).

    Exception type and HTTP status are checked across all rules before falling back to message text,
    so a 404 response whose URL happens to contain "timeout" is still NOT_FOUND.
    """
    status: Optional[int] = None
    if isinstance(error, httpx.HTTPStatusError) and error.response is not None:
        status = error.response.status_code
    if isinstance(error, BaseException):
        for rule in rules:
            if rule.exception_types and isinstance(error, rule.exception_types):
                return rule.code, rule.recoverable
            if status is not None and status in rule.status_codes:
                return rule.code, rule.recoverable
    text = str(error).lower()
    for rule in rules:
        if any(marker in text for marker in rule.markers):
            return rule.code, rule.recoverable
    return UNKNOWN_ERROR


def timeout_for(tool: str, overrides: Optional[Mapping[str, int]] = None) -> int:
    value = None
    if overrides:
        value = overrides.get(tool)
    if not value:
        value = TOOL_TIMEOUTS_MS.get(tool)
    if not value or value <= 0:
        return DEFAULT_TOOL_TIMEOUT_MS
    return int(value)


def requires_confirmation(tool: str, args: Optional[Mapping[str, Any]]) -> bool:
    if tool not in CONFIRMATION_REQUIRED_TOOLS:
        return False
    if tool == "supabase_run_sql":
        query = str((args or {}).get("query") or "")
        return bool(DESTRUCTIVE_SQL_RE.search(query))
    return True


@dataclass
class ToolResult:
    success: bool
    message: str
    data: Any = None
    error: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message, "meta": dict(self.meta)}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = dict(self.error)
        return payload


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    def openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


@dataclass
class ToolCall:
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    parse_error: Optional[str] = None


def parse_tool_calls(raw_calls: Optional[Iterable[Dict[str, Any]]]) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for idx, raw in enumerate(raw_calls or []):
        if not isinstance(raw, dict):
            continue
        fn = raw.get("function") or {}
        name = str(fn.get("name") or "").strip()
        call_id = str(raw.get("id") or f"call_{idx}")
        arguments = fn.get("arguments")
        if isinstance(arguments, dict):
            calls.append(ToolCall(id=call_id, name=name, args=arguments))
            continue
        try:
            parsed = json.loads(arguments or "{}")
        except (TypeError, ValueError) as exc:
            calls.append(ToolCall(id=call_id, name=name, parse_error=f"Invalid tool arguments: {exc}"))
            continue
        if not isinstance(parsed, dict):
            calls.append(ToolCall(id=call_id, name=name, parse_error="Invalid tool arguments: expected an object"))
            continue
        calls.append(ToolCall(id=call_id, name=name, args=parsed))
    return calls


class ToolRegistry:
    """Dispatch table: agent -> tool name -> spec. Shared tools are visible to every agent."""

    def __init__(self):
        self._shared: Dict[str, ToolSpec] = {}
        self._by_agent: Dict[str, Dict[str, ToolSpec]] = {}

    def register(self, spec: ToolSpec, agents: Optional[Iterable[str]] = None) -> None:
        if agents is None:
            self._shared[spec.name] = spec
            return
        for agent in agents:
            self._by_agent.setdefault(agent, {})[spec.name] = spec

    def tools_for(self, agent: str) -> List[ToolSpec]:
        merged = dict(self._shared)
        merged.update(self._by_agent.get(agent, {}))
        return list(merged.values())

    def handler_for(self, agent: str, name: str) -> Optional[ToolSpec]:
        spec = self._by_agent.get(agent, {}).get(name)
        return spec or self._shared.get(name)

    def openai_tools(self, agent: str) -> List[Dict[str, Any]]:
        return [spec.openai_schema() for spec in self.tools_for(agent)]


def _discard_result(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()


def _normalize_result(raw: Any) -> ToolResult:
    if isinstance(raw, ToolResult):
        return raw
    if isinstance(raw, dict):
        return ToolResult(
            success=bool(raw.get("success", True)),
            message=str(raw.get("message") or ""),
            data=raw.get("data"),
            error=raw.get("error"),
        )
    return ToolResult(success=True, message="", data=raw)


class ToolExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        timeouts: Optional[Mapping[str, int]] = None,
        max_concurrency: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.timeouts = dict(timeouts or {})
        self.max_concurrency = max(1, int(max_concurrency or 1))
        self.clock = clock

    async def _invoke(self, spec: ToolSpec, args: Dict[str, Any], caller_id: str, timeout_ms: int) -> Any:
        cancel = asyncio.Event()
        task = asyncio.ensure_future(spec.handler(args, cancel=cancel, caller_id=caller_id))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
        except asyncio.CancelledError:
            cancel.set()
            task.cancel()
            raise
        if task in done:
            return task.result()
        # Signal the back-end first so it can stop outbound work, then cancel the coroutine itself.
        cancel.set()
        task.cancel()
        task.add_done_callback(_discard_result)
        raise ToolTimeoutError(f"Tool '{spec.name}' timed out after {timeout_ms}ms")

    async def execute(
        self,
        agent: str,
        tool: str,
        args: Optional[Dict[str, Any]],
        caller_id: str,
    ) -> ToolResult:
        started = self.clock()
        timeout_ms = timeout_for(tool, self.timeouts)
        trace_id = f"{agent}-{tool}-{int(time.time() * 1000)}"
        logger.info("Tool %s starting (agent=%s trace=%s timeout=%sms)", tool, agent, trace_id, timeout_ms)
        try:
            spec = self.registry.handler_for(agent, tool)
            if spec is None:
                raise ToolValidationError(f"Invalid tool '{tool}' for agent '{agent}'")
            raw = await self._invoke(spec, dict(args or {}), caller_id, timeout_ms)
            result = _normalize_result(raw)
            duration_ms = int((self.clock() - started) * 1000)
            logger.info(
                "Tool %s finished (trace=%s success=%s duration=%sms)", tool, trace_id, result.success, duration_ms
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            duration_ms = int((self.clock() - started) * 1000)
            code, recoverable = classify_error(exc)
            logger.warning(
                "Tool %s failed (trace=%s code=%s recoverable=%s duration=%sms): %s",
                tool,
                trace_id,
                code,
                recoverable,
                duration_ms,
                exc,
            )
            result = ToolResult(
                success=False,
                message=f"Tool '{tool}' failed: {exc}",
                error={"code": code, "recoverable": recoverable, "details": f"{type(exc).__name__}: {exc}"},
            )
        result.meta = {**(result.meta or {}), "durationMs": duration_ms, "source": agent, "traceId": trace_id}
        return result

    def _rejected(self, agent: str, call: ToolCall) -> ToolResult:
        return ToolResult(
            success=False,
            message=f"Tool '{call.name}' failed: {call.parse_error}",
            error={"code": "VALIDATION_ERROR", "recoverable": False, "details": call.parse_error},
            meta={"durationMs": 0, "source": agent, "traceId": f"{agent}-{call.name}-{int(time.time() * 1000)}"},
        )

    async def execute_many(
        self,
        agent: str,
        calls: Sequence[ToolCall],
        caller_id: str,
        on_start: Optional[Callable[[ToolCall], Awaitable[None]]] = None,
        on_end: Optional[Callable[[ToolCall, ToolResult], Awaitable[None]]] = None,
    ) -> List[ToolResult]:
        """Run every call concurrently (bounded), returning results in call order."""
        sem = asyncio.Semaphore(self.max_concurrency)

        async def run_one(call: ToolCall) -> ToolResult:
            async with sem:
                if on_start:
                    await on_start(call)
                if call.parse_error:
                    result = self._rejected(agent, call)
                else:
                    result = await self.execute(agent, call.name, call.args, caller_id)
                if on_end:
                    await on_end(call, result)
                return result

        results = await asyncio.gather(*(run_one(call) for call in calls))
        return list(results)
