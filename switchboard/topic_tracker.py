import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("uvicorn.error")

DEFAULT_AGENT = "personality"
RECENT_AGENTS_LIMIT = 5
TOPIC_KEYWORDS_LIMIT = 10
MESSAGE_KEYWORDS_LIMIT = 5
SWITCH_BACK_WINDOW_MINUTES = 30
CONTINUE_OVERLAP = 0.3
SWITCH_OVERLAP = 0.1

SWITCH_INDICATORS: Tuple[str, ...] = (
    "by the way",
    "btw",
    "changing topic",
    "different question",
    "unrelated",
    "also",
    "another thing",
    "speaking of",
    "on another note",
    "quick question",
)

AGENT_TOPICS: Dict[str, str] = {
    "coder": "coding/development",
    "researcher": "research/information",
    "secretary": "productivity/scheduling",
    "home": "smart home",
    "finance": "finances/money",
    "personality": "general chat",
    "orchestrator": "general",
    "imagegen": "image generation",
}

AGENT_LABELS: Dict[str, str] = {
    "coder": "coding",
    "researcher": "research",
    "secretary": "scheduling",
    "home": "smart home",
    "finance": "finances",
    "personality": "chat",
    "orchestrator": "general",
    "imagegen": "images",
}

STOPWORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will would could should may might
    must shall can need dare ought used to of in for on with at by from as into through during before
    after above below between under again further then once here there when where why how all each few
    more most other some such no nor not only own same so than too very just and but if or because until
    while although though i me my myself we our ours ourselves you your yours yourself yourselves he him
    his himself she her hers herself it its itself they them their theirs themselves what which who whom
    this that these those am please thanks thank hello hi hey okay ok yes yeah yep nope
    """.split()
)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class InterruptedTask:
    agent: str
    topic: str
    keywords: List[str]
    interrupted_at: str
    last_user_message: str
    message_count: int

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["InterruptedTask"]:
        if not isinstance(data, dict) or not data.get("agent"):
            return None
        return cls(
            agent=str(data["agent"]),
            topic=str(data.get("topic") or ""),
            keywords=list(data.get("keywords") or []),
            interrupted_at=str(data.get("interrupted_at") or ""),
            last_user_message=str(data.get("last_user_message") or ""),
            message_count=int(data.get("message_count") or 0),
        )


@dataclass
class TopicContext:
    current_topic: str = ""
    last_agent: str = DEFAULT_AGENT
    recent_agents: List[str] = field(default_factory=list)
    topic_keywords: List[str] = field(default_factory=list)
    topic_continuity: int = 0
    last_updated: str = ""
    last_user_message: str = ""
    interrupted_task: Optional[InterruptedTask] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TopicContext"]:
        if not isinstance(data, dict):
            return None
        return cls(
            current_topic=str(data.get("current_topic") or ""),
            last_agent=str(data.get("last_agent") or DEFAULT_AGENT),
            recent_agents=list(data.get("recent_agents") or [])[:RECENT_AGENTS_LIMIT],
            topic_keywords=list(data.get("topic_keywords") or [])[:TOPIC_KEYWORDS_LIMIT],
            topic_continuity=int(data.get("topic_continuity") or 0),
            last_updated=str(data.get("last_updated") or ""),
            last_user_message=str(data.get("last_user_message") or ""),
            interrupted_task=InterruptedTask.from_dict(data.get("interrupted_task")),
        )


@dataclass
class TopicSwitch:
    is_switch: bool
    suggested_agent: Optional[str]
    confidence: float
    reason: str
    overlap_ratio: float = 0.0
    explicit: bool = False


@dataclass
class SwitchBackSuggestion:
    agent: str
    topic: str
    prompt: str
    minutes_ago: int


@dataclass
class RoutingContext:
    topic_context: Optional[TopicContext]
    topic_switch: TopicSwitch
    switch_back: Optional[SwitchBackSuggestion] = None
    version: Optional[int] = None


def extract_keywords(message: str, limit: int = MESSAGE_KEYWORDS_LIMIT) -> List[str]:
    words = _NON_ALNUM_RE.sub(" ", (message or "").lower()).split()
    unique: List[str] = []
    for word in words:
        if len(word) > 2 and word not in STOPWORDS and word not in unique:
            unique.append(word)
    return sorted(unique, key=len, reverse=True)[:limit]


def detect_topic_switch(
    message: str,
    context: Optional[TopicContext],
    indicators: Tuple[str, ...] = SWITCH_INDICATORS,
) -> TopicSwitch:
    if context is None or context.topic_continuity == 0:
        return TopicSwitch(False, None, 0.0, "No topic history")
    lowered = (message or "").lower()
    explicit = any(indicator in lowered for indicator in indicators)
    message_keywords = set(extract_keywords(message))
    topic_keywords = set(context.topic_keywords)
    overlap = len(message_keywords & topic_keywords)
    ratio = overlap / len(message_keywords) if message_keywords else 0.0
    if ratio > CONTINUE_OVERLAP and not explicit:
        return TopicSwitch(
            False,
            context.last_agent,
            0.6 + ratio * 0.3,
            f"Continuing {context.current_topic or context.last_agent} (keyword overlap: {round(ratio * 100)}%)",
            overlap_ratio=ratio,
        )
    if explicit or ratio < SWITCH_OVERLAP:
        return TopicSwitch(
            True,
            None,
            0.8 if explicit else 0.5,
            "Explicit topic switch detected" if explicit else "Low keyword overlap with current topic",
            overlap_ratio=ratio,
            explicit=explicit,
        )
    return TopicSwitch(
        False,
        context.last_agent,
        0.4,
        "Ambiguous - slight bias toward current agent",
        overlap_ratio=ratio,
    )


def build_topic_summary(agent: str, keywords: List[str], previous_topic: str, is_switch: bool) -> str:
    agent_topic = AGENT_TOPICS.get(agent, "general")
    if is_switch or not previous_topic:
        keyword_str = ", ".join(keywords[:3])
        return f"{agent_topic}: {keyword_str}" if keyword_str else agent_topic
    return previous_topic


def update_topic_context(
    context: Optional[TopicContext],
    agent: str,
    message: str,
    now: Optional[datetime] = None,
) -> TopicContext:
    previous = context or TopicContext()
    stamp = _iso(now or utc_now())
    recent_agents = [agent, *previous.recent_agents][:RECENT_AGENTS_LIMIT]
    is_switch = previous.last_agent != agent and DEFAULT_AGENT not in (previous.last_agent, agent)
    new_keywords = extract_keywords(message)
    keywords: List[str] = []
    for word in [*new_keywords, *previous.topic_keywords]:
        if word not in keywords:
            keywords.append(word)
    keywords = keywords[:TOPIC_KEYWORDS_LIMIT]
    continuity = 1 if is_switch else previous.topic_continuity + 1
    current_topic = build_topic_summary(agent, keywords, previous.current_topic, is_switch)

    interrupted = previous.interrupted_task
    if is_switch and previous.topic_continuity >= 2:
        interrupted = InterruptedTask(
            agent=previous.last_agent,
            topic=previous.current_topic,
            keywords=previous.topic_keywords[:MESSAGE_KEYWORDS_LIMIT],
            interrupted_at=stamp,
            last_user_message=previous.last_user_message,
            message_count=previous.topic_continuity,
        )
    if interrupted is not None and interrupted.agent == agent:
        interrupted = None

    return TopicContext(
        current_topic=current_topic,
        last_agent=agent,
        recent_agents=recent_agents,
        topic_keywords=keywords,
        topic_continuity=continuity,
        last_updated=stamp,
        last_user_message=message,
        interrupted_task=interrupted,
    )


def check_switch_back_suggestion(
    context: Optional[TopicContext],
    current_agent: str,
    now: Optional[datetime] = None,
) -> Optional[SwitchBackSuggestion]:
    if context is None or context.interrupted_task is None:
        return None
    task = context.interrupted_task
    if current_agent == task.agent:
        return None
    interrupted_at = _parse_iso(task.interrupted_at)
    if interrupted_at is None:
        return None
    elapsed = (now or utc_now()) - interrupted_at
    minutes = int(round(elapsed.total_seconds() / 60))
    if minutes > SWITCH_BACK_WINDOW_MINUTES:
        return None
    # Both the interrupted topic and the current tangent need at least two turns.
    if task.message_count < 2 or context.topic_continuity < 2:
        return None
    label = AGENT_LABELS.get(task.agent, task.agent)
    topic = task.topic or label
    return SwitchBackSuggestion(
        agent=task.agent,
        topic=topic,
        prompt=f"Would you like to continue with {label}?",
        minutes_ago=minutes,
    )


class TopicTracker:
    """Reads and writes TopicContext stored in thread metadata."""

    def __init__(self, db: Any, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def load(self, thread_id: str) -> Tuple[Optional[TopicContext], Optional[int]]:
        thread = await self.db.get_thread(thread_id)
        if not thread:
            return None, None
        metadata = thread.get("metadata") or {}
        return TopicContext.from_dict(metadata.get("topic_context")), thread.get("version")

    async def get_routing_context(self, thread_id: Optional[str], message: str) -> RoutingContext:
        if not thread_id:
            return RoutingContext(None, TopicSwitch(False, None, 0.0, "New thread"))
        context, version = await self.load(thread_id)
        topic_switch = detect_topic_switch(message, context)
        switch_back = None
        if not topic_switch.is_switch and context is not None:
            switch_back = check_switch_back_suggestion(context, context.last_agent, self.clock())
        return RoutingContext(context, topic_switch, switch_back, version)

    async def update(
        self,
        thread_id: str,
        agent: str,
        message: str,
        previous: Optional[TopicContext],
        expected_version: Optional[int] = None,
    ) -> TopicContext:
        updated = update_topic_context(previous, agent, message, self.clock())
        saved = await self.db.update_thread_metadata(
            thread_id, {"topic_context": updated.to_dict()}, expected_version=expected_version
        )
        if saved or expected_version is None:
            return updated
        # Lost the compare-and-swap: re-read the winner's state and apply this turn on top once.
        logger.info("Topic context for %s changed concurrently; re-applying", thread_id)
        latest, version = await self.load(thread_id)
        updated = update_topic_context(latest, agent, message, self.clock())
        saved = await self.db.update_thread_metadata(
            thread_id, {"topic_context": updated.to_dict()}, expected_version=version
        )
        if not saved:
            logger.warning("Topic context for %s not saved after retry", thread_id)
        return updated
