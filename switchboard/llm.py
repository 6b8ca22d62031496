import json
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from .model_resolver import ModelConfig

OPENAI_BASE_URL = "https://api.openai.com/v1"
ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


class ProviderError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


def uses_completion_tokens(config: ModelConfig) -> bool:
    """OpenAI-hosted chat models take max_completion_tokens and reject custom temperatures."""
    return config.provider == "openai"


class ProviderClient:
    """Chat completions against any OpenAI-compatible provider endpoint."""

    def __init__(self, timeout: float = 60.0, default_base_url: str = OPENAI_BASE_URL):
        self.default_base_url = default_base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    def _url(self, config: ModelConfig) -> str:
        base = (config.base_url or self.default_base_url).rstrip("/")
        return f"{base}/chat/completions"

    def _headers(self, config: ModelConfig) -> Dict[str, str]:
        if not config.api_key:
            raise ProviderError(f"API key not configured for provider {config.provider}")
        return {"Authorization": f"Bearer {config.api_key}", "Content-Type": "application/json"}

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if role == "assistant" and msg.get("tool_calls"):
                sanitized.append({"role": role, "content": content, "tool_calls": msg["tool_calls"]})
                continue
            if role == "tool":
                if not msg.get("tool_call_id"):
                    continue
                if not isinstance(content, str):
                    content = json.dumps(content, ensure_ascii=True)
                sanitized.append({"role": role, "tool_call_id": msg["tool_call_id"], "content": content})
                continue
            if content is None:
                continue
            if isinstance(content, str):
                if not content.strip():
                    continue
                cleaned_content: Any = content
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": cleaned_content})
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    def build_payload(
        self,
        config: ModelConfig,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: Optional[float] = None,
        stream: bool = False,
    ) -> Dict[str, Any]:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        payload: Dict[str, Any] = {"model": config.model, "messages": cleaned, "stream": stream}
        if uses_completion_tokens(config):
            payload["max_completion_tokens"] = max_tokens
        else:
            payload["max_tokens"] = max_tokens
            payload["temperature"] = 0.7 if temperature is None else temperature
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"
        return payload

    async def chat_completion(
        self,
        config: ModelConfig,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        payload = self.build_payload(config, messages, tools, tool_choice, max_tokens, temperature)
        try:
            resp = await self.client.post(self._url(config), json=payload, headers=self._headers(config))
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise ProviderError(
                f"{config.provider} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
                detail=detail,
            ) from exc
        data = resp.json()
        choices = (data.get("choices") or []) if isinstance(data, dict) else []
        if choices:
            message = choices[0].get("message") or {}
            if not message.get("content") and message.get("reasoning_content"):
                message["content"] = message["reasoning_content"]
                choices[0]["message"] = message
        return data

    async def stream_text(
        self,
        config: ModelConfig,
        messages: List[Dict[str, Any]],
        max_tokens: int = 1000,
        temperature: Optional[float] = None,
    ) -> AsyncGenerator[str, None]:
        payload = self.build_payload(config, messages, max_tokens=max_tokens, temperature=temperature, stream=True)
        async with self.client.stream(
            "POST", self._url(config), json=payload, headers=self._headers(config)
        ) as response:
            if response.is_error:
                await response.aread()
                raise ProviderError(
                    f"{config.provider} returned {response.status_code}",
                    status_code=response.status_code,
                    detail=self._extract_error_detail(response),
                )
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = line.replace("data:", "", 1).strip()
                if chunk == "[DONE]":
                    break
                try:
                    data = json.loads(chunk)
                except ValueError:
                    continue
                delta = (data.get("choices") or [{}])[0].get("delta") or {}
                text = delta.get("content")
                if text:
                    yield text

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
