import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger("uvicorn.error")

AGENT_TYPES = (
    "orchestrator",
    "coder",
    "researcher",
    "secretary",
    "personality",
    "home",
    "finance",
    "imagegen",
)

PROVIDER_BASE_URLS: Dict[str, Optional[str]] = {
    "openai": None,
    "anthropic": "https://api.anthropic.com/v1/",
    "perplexity": "https://api.perplexity.ai",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai/",
    "xai": "https://api.x.ai/v1",
}

PRIMARY_MODELS: Dict[str, Tuple[str, str]] = {
    "orchestrator": ("gpt-5.1-chat-latest", "openai"),
    "coder": ("claude-opus-4-5-20250514", "anthropic"),
    "researcher": ("sonar-pro", "perplexity"),
    "secretary": ("gemini-2.5-pro-preview-06-05", "google"),
    "personality": ("grok-4-1-fast-non-reasoning", "xai"),
    "home": ("gpt-5.1-chat-latest", "openai"),
    "finance": ("gemini-2.5-pro-preview-06-05", "google"),
    "imagegen": ("gpt-4o", "openai"),
}

FALLBACK_CHAINS: Dict[str, List[Tuple[str, str]]] = {
    "orchestrator": [("gpt-4o", "openai"), ("gpt-4o-mini", "openai")],
    "coder": [("claude-sonnet-4-5-20250514", "anthropic"), ("gpt-4o", "openai")],
    "researcher": [("sonar", "perplexity"), ("gpt-4o", "openai")],
    "secretary": [("gemini-2.0-flash", "google"), ("gpt-4o", "openai")],
    "personality": [("gpt-4o", "openai"), ("gpt-4o-mini", "openai")],
    "home": [("gpt-4o", "openai"), ("gpt-4o-mini", "openai")],
    "finance": [("gemini-2.0-flash", "google"), ("gpt-4o", "openai")],
    "imagegen": [("gpt-4o-mini", "openai")],
}


@dataclass(frozen=True)
class ModelConfig:
    model: str
    provider: str
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "model": self.model,
            "provider": self.provider,
            "base_url": self.base_url,
            "is_fallback": self.is_fallback,
            "has_credential": bool(self.api_key),
        }


def parse_override(value: Optional[str]) -> Optional[Tuple[str, str]]:
    """Parse "provider:model" (bare model means openai); None when malformed."""
    if not value or not str(value).strip():
        return None
    text = str(value).strip()
    if ":" not in text:
        return "openai", text
    provider, model = text.split(":", 1)
    provider = provider.strip().lower()
    model = model.strip()
    if not provider or not model or provider not in PROVIDER_BASE_URLS:
        return None
    return provider, model


class ModelResolver:
    def __init__(
        self,
        credentials: Mapping[str, Optional[str]],
        overrides: Optional[Mapping[str, str]] = None,
    ):
        self.credentials = dict(credentials)
        self.overrides = dict(overrides or {})

    def _config(self, model: str, provider: str, is_fallback: bool = False) -> ModelConfig:
        return ModelConfig(
            model=model,
            provider=provider,
            base_url=PROVIDER_BASE_URLS.get(provider),
            api_key=self.credentials.get(provider) or None,
            is_fallback=is_fallback,
        )

    def _check_agent(self, agent: str) -> None:
        if agent not in PRIMARY_MODELS:
            raise ValueError(f"Unknown agent type: {agent}")

    def model_chain(self, agent: str) -> List[ModelConfig]:
        self._check_agent(agent)
        chain: List[ModelConfig] = []
        seen = set()

        def push(config: ModelConfig) -> None:
            key = (config.model, config.provider)
            if key in seen:
                return
            seen.add(key)
            chain.append(config)

        raw_override = self.overrides.get(agent)
        if raw_override:
            parsed = parse_override(raw_override)
            if parsed:
                provider, model = parsed
                push(self._config(model, provider))
            else:
                logger.warning("Ignoring malformed model override for %s: %r", agent, raw_override)
        model, provider = PRIMARY_MODELS[agent]
        push(self._config(model, provider))
        for model, provider in FALLBACK_CHAINS.get(agent, []):
            push(self._config(model, provider, is_fallback=True))
        return chain

    def resolve(self, agent: str) -> ModelConfig:
        chain = self.model_chain(agent)
        primary_model, primary_provider = PRIMARY_MODELS[agent]
        for config in chain:
            if config.api_key:
                return config
            if not config.is_fallback and (config.model, config.provider) != (primary_model, primary_provider):
                logger.info(
                    "Model override %s:%s for %s has no credential; skipping",
                    config.provider,
                    config.model,
                    agent,
                )
        primary = self._config(primary_model, primary_provider)
        logger.warning("No credential available for %s; returning primary %s", agent, primary.model)
        return replace(primary, api_key=None)

    def available_models(self, agent: str) -> List[ModelConfig]:
        return [config for config in self.model_chain(agent) if config.api_key]

    def health_check(self) -> Dict[str, Dict[str, object]]:
        report: Dict[str, Dict[str, object]] = {}
        for agent in AGENT_TYPES:
            config = self.resolve(agent)
            report[agent] = {
                "available": bool(config.api_key),
                "model": config.model,
                "provider": config.provider,
            }
        return report
