import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .agents import ROUTING_PROMPT
from .model_resolver import AGENT_TYPES
from .schemas import RoutingDecision
from .topic_tracker import DEFAULT_AGENT, TopicContext, detect_topic_switch

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class RoutingRule:
    agent: str
    terms: Tuple[str, ...]
    label: str = ""


@dataclass(frozen=True)
class RuleMatch:
    agent: str
    terms: Tuple[str, ...]
    label: str = ""


# Priority order: first rule with a hit wins.
DEFAULT_RULES: Tuple[RoutingRule, ...] = (
    RoutingRule(
        "coder",
        (
            "code", "coding", "bug", "debug", "github", "pr", "pull request", "repo", "repository",
            "commit", "implement", "function", "refactor", "compile", "stack trace", "exception",
            "typescript", "javascript", "python", "sql", "api endpoint", "unit test",
        ),
        "coding",
    ),
    RoutingRule(
        "researcher",
        (
            "search", "research", "look up", "lookup", "news", "latest", "weather", "forecast",
        ),
        "research",
    ),
    RoutingRule(
        "secretary",
        (
            "calendar", "schedule", "email", "emails", "inbox", "meeting", "meetings", "appointment",
            "remind me", "reminder", "agenda", "drive", "document", "availability",
        ),
        "scheduling",
    ),
    RoutingRule(
        "home",
        (
            "light", "lights", "lamp", "lamps", "thermostat", "temperature", "turn on", "turn off",
            "home", "lock", "unlock", "door", "blinds", "fan", "hvac", "scene", "automation",
        ),
        "home",
    ),
    RoutingRule(
        "finance",
        (
            "budget", "spend", "spent", "spending", "balance", "bank", "transaction", "transactions",
            "subscription", "subscriptions", "bill", "bills", "net worth", "afford", "invest",
            "investment", "savings", "money", "finance", "finances", "expense", "expenses", "income",
        ),
        "finance",
    ),
    RoutingRule(
        "imagegen",
        ("generate an image", "draw", "picture of", "image of", "illustration", "render", "logo"),
        "image generation",
    ),
    # Generic question phrasing only decides when no domain rule matched.
    RoutingRule(
        "researcher",
        ("find", "what is", "who is", "tell me about", "explain", "compare"),
        "general question",
    ),
)

MENTIONS: Dict[str, str] = {
    "@coder": "coder",
    "@devbot": "coder",
    "@dev": "coder",
    "@researcher": "researcher",
    "@research": "researcher",
    "@secretary": "secretary",
    "@calendar": "secretary",
    "@home": "home",
    "@smarthome": "home",
    "@homebot": "home",
    "@finance": "finance",
    "@money": "finance",
    "@imagegen": "imagegen",
    "@image": "imagegen",
    "@personality": "personality",
    "@q8": "personality",
}

_TERM_PATTERNS: Dict[str, "re.Pattern[str]"] = {}


def _term_pattern(term: str) -> "re.Pattern[str]":
    pattern = _TERM_PATTERNS.get(term)
    if pattern is None:
        words = r"\s+".join(re.escape(part) for part in term.split())
        pattern = re.compile(rf"\b{words}\b", re.IGNORECASE)
        _TERM_PATTERNS[term] = pattern
    return pattern


def classify(message: str, rules: Sequence[RoutingRule] = DEFAULT_RULES) -> Optional[RuleMatch]:
    text = message or ""
    for rule in rules:
        hits = tuple(term for term in rule.terms if _term_pattern(term).search(text))
        if hits:
            return RuleMatch(rule.agent, hits, rule.label or rule.agent)
    return None


def parse_agent_mention(message: str, mentions: Dict[str, str] = MENTIONS) -> Tuple[Optional[str], str]:
    """Return (agent, message without the mention) for a leading @mention, else (None, message)."""
    stripped = (message or "").strip()
    lowered = stripped.lower()
    # Longest first so "@homebot" is not read as "@home".
    for mention in sorted(mentions, key=len, reverse=True):
        if lowered == mention:
            return mentions[mention], ""
        if lowered.startswith(mention) and lowered[len(mention) : len(mention) + 1].isspace():
            return mentions[mention], stripped[len(mention) :].strip()
    return None, message


@dataclass(frozen=True)
class RoutingConfidence:
    heuristic_base: float = 0.75
    heuristic_step: float = 0.05
    heuristic_cap: float = 0.95
    continuation_base: float = 0.6
    continuation_scale: float = 0.3
    fallback: float = 0.3
    llm_floor: float = 0.5


class Router:
    def __init__(
        self,
        rules: Sequence[RoutingRule] = DEFAULT_RULES,
        confidence: RoutingConfidence = RoutingConfidence(),
    ):
        self.rules = tuple(rules)
        self.confidence = confidence

    def route(
        self,
        message: str,
        topic_context: Optional[TopicContext] = None,
        force_agent: Optional[str] = None,
    ) -> RoutingDecision:
        if force_agent:
            return RoutingDecision(
                agent=force_agent,
                confidence=1.0,
                rationale="User-specified agent",
                source="user-forced",
            )

        match = classify(message, self.rules)
        if match is not None:
            score = self.confidence.heuristic_base + self.confidence.heuristic_step * (len(match.terms) - 1)
            return RoutingDecision(
                agent=match.agent,
                confidence=min(self.confidence.heuristic_cap, score),
                rationale=f"Matched {match.label} keywords: {', '.join(match.terms)}",
                source="heuristic",
            )

        switch = detect_topic_switch(message, topic_context)
        if (
            topic_context is not None
            and not switch.is_switch
            and switch.suggested_agent
            and switch.overlap_ratio > 0.3
        ):
            score = self.confidence.continuation_base + switch.overlap_ratio * self.confidence.continuation_scale
            return RoutingDecision(
                agent=switch.suggested_agent,
                confidence=min(1.0, score),
                rationale=switch.reason,
                source="heuristic",
            )

        rationale = "No specialist keywords matched; using default agent"
        if switch.is_switch:
            rationale = f"{switch.reason}; using default agent"
        return RoutingDecision(
            agent=DEFAULT_AGENT,
            confidence=self.confidence.fallback,
            rationale=rationale,
            source="fallback",
        )

    async def refine_with_llm(
        self,
        decision: RoutingDecision,
        message: str,
        lm_client: Any,
        model_config: Any,
    ) -> RoutingDecision:
        """Ask the orchestrator model to pick an agent for a fallback decision. Errors keep `decision`."""
        if decision.source != "fallback" or not getattr(model_config, "api_key", None):
            return decision
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": ROUTING_PROMPT},
            {"role": "user", "content": message},
        ]
        try:
            resp = await lm_client.chat_completion(model_config, messages, max_tokens=100, temperature=0.0)
            content = resp["choices"][0]["message"].get("content") or ""
            match = re.search(r"\{.*\}", content, re.DOTALL)
            parsed = json.loads(match.group(0) if match else content)
            agent = str(parsed.get("agent") or "").strip().lower()
            if agent not in AGENT_TYPES or agent == "orchestrator":
                return decision
            confidence = float(parsed.get("confidence") or self.confidence.llm_floor)
            return RoutingDecision(
                agent=agent,
                confidence=max(0.0, min(1.0, confidence)),
                rationale=str(parsed.get("reason") or "LLM routing"),
                source="llm",
            )
        except Exception as exc:
            logger.warning("LLM routing failed, keeping fallback: %s", exc)
            return decision
