import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SWITCHBOARD_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MODEL_OVERRIDE_AGENTS = (
    "orchestrator",
    "coder",
    "researcher",
    "secretary",
    "personality",
    "home",
    "finance",
    "imagegen",
)
CREDENTIAL_FIELDS = (
    "openai_api_key",
    "anthropic_api_key",
    "perplexity_api_key",
    "google_api_key",
    "xai_api_key",
)
MASK = "********"


class HomeAssistantConfig(BaseModel):
    base_url: Optional[str] = None
    token: Optional[str] = None
    device_cache_ttl_s: int = 300

    model_config = {"protected_namespaces": ()}


class WeatherConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: str = "https://api.openweathermap.org/data/2.5"
    units: str = "imperial"
    default_lat: Optional[float] = None
    default_lon: Optional[float] = None
    cache_ttl_s: int = 600

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    # Provider credentials
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    perplexity_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    xai_api_key: Optional[str] = None
    # agent -> "provider:model" (or bare model for openai)
    model_overrides: Dict[str, str] = Field(default_factory=dict)

    database_path: str = "switchboard.db"
    host: str = "0.0.0.0"
    port: int = 8000
    default_timezone: str = "UTC"

    max_completion_tokens: int = 1000
    history_limit: int = 20
    history_max_tokens: int = 4000
    history_recent_messages: int = 6
    memory_limit: int = 10
    document_context_chars: int = 4000
    tool_timeouts_ms: Dict[str, int] = Field(default_factory=dict)
    tool_max_concurrency: int = 4
    personality_tools_enabled: bool = True
    voice_wrap_enabled: bool = True
    voice_wrap_min_chars: int = 50
    llm_routing_enabled: bool = False
    memory_extraction_enabled: bool = True
    response_cache_enabled: bool = True
    response_cache_size: int = 500

    home_assistant: HomeAssistantConfig = Field(default_factory=HomeAssistantConfig)
    weather: WeatherConfig = Field(default_factory=WeatherConfig)

    def provider_credentials(self) -> Dict[str, Optional[str]]:
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "perplexity": self.perplexity_api_key,
            "google": self.google_api_key,
            "xai": self.xai_api_key,
        }

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in CREDENTIAL_FIELDS:
            if data.get(key):
                data[key] = MASK
        if data["home_assistant"].get("token"):
            data["home_assistant"]["token"] = MASK
        if data["weather"].get("api_key"):
            data["weather"]["api_key"] = MASK
        return data

    model_config = {"protected_namespaces": ()}


def _truthy(value: Any) -> bool:
    return str(value).strip().lower() in ENV_OVERRIDE_TRUE


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY"),
        "perplexity_api_key": os.getenv("PERPLEXITY_API_KEY"),
        "google_api_key": os.getenv("GOOGLE_GENERATIVE_AI_KEY"),
        "xai_api_key": os.getenv("XAI_API_KEY"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "default_timezone": os.getenv("DEFAULT_TIMEZONE"),
        "max_completion_tokens": os.getenv("MAX_COMPLETION_TOKENS"),
        "history_limit": os.getenv("HISTORY_LIMIT"),
        "history_max_tokens": os.getenv("HISTORY_MAX_TOKENS"),
        "tool_max_concurrency": os.getenv("TOOL_MAX_CONCURRENCY"),
        "personality_tools_enabled": os.getenv("PERSONALITY_TOOLS_ENABLED"),
        "voice_wrap_enabled": os.getenv("VOICE_WRAP_ENABLED"),
        "llm_routing_enabled": os.getenv("LLM_ROUTING_ENABLED"),
        "memory_extraction_enabled": os.getenv("MEMORY_EXTRACTION_ENABLED"),
        "response_cache_enabled": os.getenv("RESPONSE_CACHE_ENABLED"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in (
        "port",
        "max_completion_tokens",
        "history_limit",
        "history_max_tokens",
        "tool_max_concurrency",
    ):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in (
        "personality_tools_enabled",
        "voice_wrap_enabled",
        "llm_routing_enabled",
        "memory_extraction_enabled",
        "response_cache_enabled",
    ):
        if key in cleaned:
            cleaned[key] = _truthy(cleaned[key])

    overrides = {}
    for agent in MODEL_OVERRIDE_AGENTS:
        value = os.getenv(f"SWITCHBOARD_{agent.upper()}_MODEL")
        if value:
            overrides[agent] = value.strip()
    if overrides:
        cleaned["model_overrides"] = overrides

    home = {
        "base_url": os.getenv("HOME_ASSISTANT_URL"),
        "token": os.getenv("HOME_ASSISTANT_TOKEN"),
    }
    home = {k: v for k, v in home.items() if v}
    if home:
        cleaned["home_assistant"] = home
    weather: Dict[str, Any] = {
        "api_key": os.getenv("OPENWEATHER_API_KEY"),
        "default_lat": os.getenv("WEATHER_DEFAULT_LAT"),
        "default_lon": os.getenv("WEATHER_DEFAULT_LON"),
    }
    weather = {k: v for k, v in weather.items() if v not in (None, "")}
    for key in ("default_lat", "default_lon"):
        if key in weather:
            weather[key] = float(weather[key])
    if weather:
        cleaned["weather"] = weather
    return cleaned


def _env_overrides_config() -> bool:
    return _truthy(os.getenv(ENV_OVERRIDE_KEY, ""))


def _merge_section(file_value: Any, env_value: Any, env_wins: bool) -> Any:
    if not isinstance(file_value, dict) or not isinstance(env_value, dict):
        return env_value if env_wins or file_value is None else file_value
    if env_wins:
        return {**file_value, **env_value}
    return {**env_value, **file_value}


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for key in ("model_overrides", "home_assistant", "weather"):
        if key in file_data and key in env_data:
            merged[key] = _merge_section(file_data[key], env_data[key], allow_env_overrides)
    # Credentials left blank in config.json are always backfilled from the environment.
    for key in CREDENTIAL_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
