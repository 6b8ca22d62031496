import asyncio
import json
from typing import Any, Dict, List, Optional, Union


def completion(content: Optional[str] = None, tool_calls: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}]}


def tool_call(call_id: str, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}


def _system_text(messages: List[Dict[str, Any]]) -> str:
    if messages and messages[0].get("role") == "system":
        return str(messages[0].get("content") or "")
    return ""


class FakeProviderClient:
    """Scripted stand-in for ProviderClient.

    Agent completions are served from `responses` in order; voice-wrap, memory
    extraction and history summary passes are answered separately so scripts only
    describe agent turns.
    """

    def __init__(
        self,
        responses: Optional[List[Union[str, Dict[str, Any], Exception]]] = None,
        stream_chunks: Optional[List[str]] = None,
        voice_response: Optional[Union[str, Exception]] = None,
        memory_response: str = '{"memories": []}',
        summary_response: Union[str, Exception] = "The user and assistant discussed earlier plans.",
        delay_seconds: float = 0.0,
    ) -> None:
        self.responses = list(responses or [])
        self.stream_chunks = list(stream_chunks or [])
        self.voice_response = voice_response
        self.memory_response = memory_response
        self.summary_response = summary_response
        self.delay_seconds = delay_seconds
        self.calls: List[Dict[str, Any]] = []
        self.voice_calls: List[Dict[str, Any]] = []
        self.memory_calls: List[Dict[str, Any]] = []
        self.summary_calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.closed = False

    async def chat_completion(
        self,
        config: Any,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        call = {
            "model": config.model,
            "provider": config.provider,
            "messages": messages,
            "tools": tools,
            "tool_choice": tool_choice,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        system_text = _system_text(messages)
        if "single voice" in system_text:
            self.voice_calls.append(call)
            if isinstance(self.voice_response, Exception):
                raise self.voice_response
            if self.voice_response is None:
                return completion(messages[-1]["content"])
            return completion(self.voice_response)
        if "Extract durable facts" in system_text:
            self.memory_calls.append(call)
            return completion(self.memory_response)
        if "Summarize this conversation" in system_text:
            self.summary_calls.append(call)
            if isinstance(self.summary_response, Exception):
                raise self.summary_response
            return completion(self.summary_response)
        self.calls.append(call)
        if not self.responses:
            return completion("ok")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return completion(item)
        return item

    async def stream_text(
        self,
        config: Any,
        messages: List[Dict[str, Any]],
        max_tokens: int = 1000,
        temperature: Optional[float] = None,
    ):
        self.stream_calls.append({"model": config.model, "provider": config.provider, "messages": messages})
        for chunk in self.stream_chunks:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield chunk

    async def close(self) -> None:
        self.closed = True


class FakeWeatherClient:
    def __init__(self, data: Optional[Dict[str, Any]] = None, enabled: bool = True) -> None:
        self.data = data or {
            "temp": 68.4,
            "feels_like": 67.0,
            "humidity": 40,
            "condition": "Clear",
            "description": "clear sky",
            "city": "Testville",
        }
        self._enabled = enabled
        self.api_key = "weather-test" if enabled else None
        self.calls: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def current(self, lat: float, lon: float, cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        self.calls.append({"lat": lat, "lon": lon})
        return dict(self.data)

    async def close(self) -> None:
        return None


class FakeHomeClient:
    def __init__(
        self,
        enabled: bool = True,
        delay_seconds: float = 0.0,
        fail_paths: Optional[List[str]] = None,
        states: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self._enabled = enabled
        self.base_url = "http://ha.test"
        self.token = "ha-token" if enabled else None
        self.delay_seconds = delay_seconds
        self.fail_paths = set(fail_paths or [])
        self.states = list(states or [])
        self.calls: List[Dict[str, Any]] = []
        # /states reads for the device summary, kept apart from tool calls.
        self.state_reads = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def request(
        self,
        path: str,
        method: str = "GET",
        payload: Optional[Dict[str, Any]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Any:
        if path == "/states":
            self.state_reads += 1
            if path in self.fail_paths:
                raise RuntimeError("503 Service Unavailable")
            return list(self.states)
        self.calls.append({"path": path, "method": method, "payload": payload})
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if path in self.fail_paths:
            raise RuntimeError("503 Service Unavailable")
        if method == "GET":
            entity = path.rsplit("/", 1)[-1]
            return {"entity_id": entity, "state": "on", "attributes": {}}
        return []

    async def close(self) -> None:
        return None
