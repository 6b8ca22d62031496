import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .cache import TTLCache
from .schemas import UserProfile
from .topic_tracker import extract_keywords

logger = logging.getLogger("uvicorn.error")

DOCUMENT_HEADER = (
    "## Relevant Documents\n"
    "The following content is from the user's uploaded documents and knowledge base. "
    "Use this information to provide more accurate and contextual responses:\n\n"
)
MEMORY_HEADER = "## User Context (from memory)\n"


def get_time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def get_greeting(time_of_day: str) -> str:
    return {
        "morning": "Good morning",
        "afternoon": "Good afternoon",
        "evening": "Good evening",
        "night": "Good night",
    }.get(time_of_day, "Hello")


def _zone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; using UTC", name)
        return timezone.utc


def build_context_summary(ctx: Dict[str, Any]) -> str:
    lines: List[str] = ["## Current Context", "", "### Time & Date"]
    weekend = " (Weekend)" if ctx.get("is_weekend") else ""
    lines.append(f"- **Current Time**: {ctx['local_time']}")
    lines.append(f"- **Date**: {ctx['local_date']}")
    lines.append(f"- **Day**: {ctx['day_of_week']}{weekend}")
    lines.append(f"- **Time of Day**: {ctx['time_of_day']}")
    lines.append(f"- **Timezone**: {ctx['timezone']}")
    lines.append("")
    weather = ctx.get("weather")
    if weather:
        lines.append("### Weather")
        if weather.get("temp") is not None:
            lines.append(f"- **Temperature**: {round(weather['temp'])}° (feels like {round(weather.get('feels_like') or weather['temp'])}°)")
        lines.append(f"- **Condition**: {weather.get('description', 'Unknown')}")
        if weather.get("humidity") is not None:
            lines.append(f"- **Humidity**: {weather['humidity']}%")
        lines.append("")
    lines.append("### User")
    lines.append(f"- **Name**: {ctx.get('user_name') or 'User'}")
    lines.append(f"- **Preferred Style**: {ctx.get('communication_style') or 'concise'}")
    lines.append("")
    return "\n".join(lines)


CONTROLLABLE_DOMAINS = (
    "light",
    "switch",
    "fan",
    "cover",
    "lock",
    "climate",
    "media_player",
    "scene",
    "automation",
    "script",
)
KEY_SENSOR_TERMS = ("temperature", "humidity", "motion")
NO_DEVICES_TEXT = "No Home Assistant devices available. Check HOME_ASSISTANT_TOKEN and HOME_ASSISTANT_URL configuration."
DEVICE_CACHE_KEY = "home:states"


def _friendly_name(entity: Dict[str, Any]) -> str:
    return (entity.get("attributes") or {}).get("friendly_name") or entity.get("entity_id", "")


def build_device_summary(entities: List[Dict[str, Any]], per_domain: int = 50, max_sensors: int = 20) -> str:
    """Markdown listing of controllable entities grouped by domain, plus a few key sensors."""
    if not entities:
        return NO_DEVICES_TEXT
    by_domain: Dict[str, List[Dict[str, Any]]] = {}
    sensors: List[Dict[str, Any]] = []
    for entity in entities:
        entity_id = str(entity.get("entity_id") or "")
        domain = entity_id.split(".", 1)[0]
        if domain in CONTROLLABLE_DOMAINS:
            by_domain.setdefault(domain, []).append(entity)
        elif domain == "sensor" and any(term in entity_id for term in KEY_SENSOR_TERMS):
            sensors.append(entity)

    lines = ["## Available Smart Home Devices", ""]
    for domain in CONTROLLABLE_DOMAINS:
        items = by_domain.get(domain)
        if not items:
            continue
        title = domain.replace("_", " ").title()
        lines.append(f"### {title}s ({len(items)})")
        for entity in items[:per_domain]:
            lines.append(f"- **{_friendly_name(entity)}** (`{entity['entity_id']}`): {entity.get('state')}")
        if len(items) > per_domain:
            lines.append(f"- ... and {len(items) - per_domain} more")
        lines.append("")
    if sensors:
        lines.append("### Key Sensors")
        for entity in sensors[:max_sensors]:
            unit = (entity.get("attributes") or {}).get("unit_of_measurement") or ""
            lines.append(f"- **{_friendly_name(entity)}**: {entity.get('state')}{unit}")
        lines.append("")
    return "\n".join(lines).rstrip()


@dataclass
class PromptContext:
    enriched: Dict[str, Any]
    memories: str = ""
    documents: str = ""


class ContextBuilder:
    def __init__(
        self,
        db: Any,
        weather: Any = None,
        default_timezone: str = "UTC",
        default_location: Optional[Dict[str, float]] = None,
        memory_limit: int = 10,
        document_chars: int = 4000,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        home: Any = None,
        device_cache: Optional[TTLCache] = None,
    ):
        self.db = db
        self.weather = weather
        self.default_timezone = default_timezone
        self.default_location = default_location
        self.memory_limit = memory_limit
        self.document_chars = document_chars
        self.clock = clock
        self.home = home
        self.device_cache = device_cache if device_cache is not None else TTLCache(default_ttl=300)

    async def build(self, profile: Optional[UserProfile] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        profile = profile or UserProfile()
        tz_name = profile.timezone or self.default_timezone
        local = (now or self.clock()).astimezone(_zone(tz_name))
        time_of_day = get_time_of_day(local.hour)
        ctx: Dict[str, Any] = {
            "timezone": tz_name,
            "local_time": local.strftime("%I:%M %p").lstrip("0"),
            "local_date": local.strftime("%A, %B %d, %Y"),
            "day_of_week": local.strftime("%A"),
            "is_weekend": local.weekday() >= 5,
            "time_of_day": time_of_day,
            "greeting": get_greeting(time_of_day),
            "user_name": profile.name,
            "communication_style": profile.communication_style,
            "weather": None,
        }
        location = self.default_location
        if profile.lat is not None and profile.lon is not None:
            location = {"lat": profile.lat, "lon": profile.lon}
        if location and self.weather is not None and self.weather.enabled:
            try:
                ctx["weather"] = await self.weather.current(location["lat"], location["lon"])
            except Exception as exc:
                logger.warning("Weather enrichment failed: %s", exc)
        return ctx

    async def memory_context(self, user_id: str) -> str:
        memories = await self.db.list_memories(user_id, limit=self.memory_limit)
        if not memories:
            return ""
        return MEMORY_HEADER + "\n".join(f"- [{m['memory_type']}] {m['content']}" for m in memories)

    async def document_context(self, user_id: str, message: str) -> str:
        docs = await self.db.search_documents(user_id, extract_keywords(message), limit=5)
        if not docs:
            return ""
        remaining = self.document_chars
        chunks: List[str] = []
        for doc in docs:
            if remaining <= 0:
                break
            text = f"### {doc['title']}\n{doc['content']}"[:remaining]
            chunks.append(text)
            remaining -= len(text)
        return DOCUMENT_HEADER + "\n\n".join(chunks)

    async def device_context(self) -> str:
        """Home Assistant device summary for the home agent; empty when Home Assistant is unavailable."""
        if self.home is None or not self.home.enabled:
            return ""
        cached = self.device_cache.get(DEVICE_CACHE_KEY)
        if cached is not None:
            return cached
        try:
            entities = await self.home.request("/states")
        except Exception as exc:
            logger.warning("Failed to fetch Home Assistant states: %s", exc)
            return ""
        summary = build_device_summary(entities if isinstance(entities, list) else [])
        self.device_cache.set(DEVICE_CACHE_KEY, summary)
        return summary

    async def gather(
        self,
        user_id: str,
        message: str,
        profile: Optional[UserProfile] = None,
    ) -> PromptContext:
        """Fetch enrichment, memories and documents concurrently; each failure degrades to empty."""
        enriched, memories, documents = await asyncio.gather(
            self.build(profile),
            self.memory_context(user_id),
            self.document_context(user_id, message),
            return_exceptions=True,
        )
        if isinstance(enriched, BaseException):
            logger.warning("Context enrichment failed: %s", enriched)
            enriched = await self.build(UserProfile())
        if isinstance(memories, BaseException):
            logger.warning("Failed to fetch memories for %s: %s", user_id, memories)
            memories = ""
        if isinstance(documents, BaseException):
            logger.warning("Failed to fetch document context for %s: %s", user_id, documents)
            documents = ""
        return PromptContext(enriched=enriched, memories=memories, documents=documents)


def build_system_prompt(base_prompt: str, ctx: PromptContext, extra: Optional[List[str]] = None) -> str:
    parts = [base_prompt, f"{ctx.enriched.get('greeting', 'Hello')}!", build_context_summary(ctx.enriched)]
    parts.extend(extra or [])
    if ctx.memories:
        parts.append(ctx.memories)
    if ctx.documents:
        parts.append(ctx.documents)
    return "\n\n".join(part for part in parts if part)
