import logging
import re
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger("uvicorn.error")

ACTIONABLE_RE = re.compile(r"\b(click|open|run|execute|install|create|update|delete|visit|try)\b", re.IGNORECASE)
STRUCTURED_RE = re.compile(r"^(\d+\.|[-*])\s", re.MULTILINE)
CITATION_RE = re.compile(r"\[[\d\w]+\]|\(\d{4}\)|https?://")
CODE_RE = re.compile(r"```|`[^`]+`")
HEDGING_RE = re.compile(r"\b(maybe|perhaps|might|possibly|I think|not sure)\b", re.IGNORECASE)
CONFIDENT_RE = re.compile(r"\b(definitely|certainly|absolutely|clearly|obviously)\b", re.IGNORECASE)
LIST_ITEM_RE = re.compile(r"^[\s]*[-*•]\s+", re.MULTILINE)
REFUSAL_RE = re.compile(r"I (can't|cannot|won't|am unable)", re.IGNORECASE)
SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
PROPER_ENDING_RE = re.compile(r"[.!?]\s*$")

REGENERATE_RE = re.compile(r"\b(again|retry|regenerate|try again|redo)\b")
POSITIVE_RE = re.compile(r"\b(thanks|perfect|great|awesome|helpful|exactly)\b")
NEGATIVE_RE = re.compile(r"\b(wrong|incorrect|no|not what|doesn't work|useless)\b")
FOLLOWUP_WINDOW_MS = 60000
TREND_THRESHOLD = 0.05

WEIGHTS = {
    "relevance": 0.25,
    "completeness": 0.2,
    "clarity": 0.15,
    "accuracy": 0.2,
    "helpfulness": 0.2,
}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class QualityConfig:
    min_score_for_cache: float = 0.7
    regeneration_penalty: float = 0.15
    positive_feedback_boost: float = 0.1
    decay_factor: float = 0.95
    trend_window_days: int = 7


@dataclass
class QualityScore:
    overall: float
    dimensions: Dict[str, float]
    flags: Dict[str, bool]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FeedbackSignal:
    type: str  # explicit | implicit
    signal: str  # positive | negative | neutral
    source: str  # thumbs | regenerate | followup | abandon | sentiment
    strength: float
    timestamp: float = field(default_factory=lambda: time.time() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QualityScorer:
    def __init__(self, config: Optional[QualityConfig] = None):
        self.config = config or QualityConfig()

    def score_relevance(self, response: str, query: str) -> float:
        query_words = {word for word in query.lower().split() if len(word) > 3}
        if not query_words:
            return 0.5
        lowered = response.lower()
        matches = sum(1 for word in query_words if word in lowered)
        return min(1.0, matches / len(query_words) + 0.3)

    def score_completeness(self, response: str, query: str) -> float:
        score = 0.5
        if PROPER_ENDING_RE.search(response):
            score += 0.15
        words = len(response.split())
        if 20 <= words <= 500:
            score += 0.15
        elif words < 10:
            score -= 0.2
        if "?" in query and "?" not in response:
            score += 0.1
        if "for example" in response or "such as" in response:
            score += 0.1
        return _clamp(score)

    def score_clarity(self, response: str) -> float:
        score = 0.6
        score -= len(HEDGING_RE.findall(response)) * 0.05
        if CONFIDENT_RE.search(response):
            score += 0.1
        if STRUCTURED_RE.search(response):
            score += 0.1
        sentences = SENTENCE_SPLIT_RE.split(response)
        if len(response) / (len(sentences) or 1) > 200:
            score -= 0.1
        return _clamp(score)

    def score_helpfulness(self, response: str) -> float:
        score = 0.5
        if ACTIONABLE_RE.search(response):
            score += 0.15
        if CODE_RE.search(response):
            score += 0.1
        if CITATION_RE.search(response):
            score += 0.1
        if len(LIST_ITEM_RE.findall(response)) >= 2:
            score += 0.1
        if REFUSAL_RE.search(response):
            score -= 0.2
        return _clamp(score)

    def score(self, response: str, query: str) -> QualityScore:
        response = response or ""
        query = query or ""
        dims = {
            "relevance": self.score_relevance(response, query),
            "completeness": self.score_completeness(response, query),
            "clarity": self.score_clarity(response),
            "helpfulness": self.score_helpfulness(response),
        }
        # No ground truth; accuracy is approximated from relevance and completeness.
        dims["accuracy"] = (dims["relevance"] + dims["completeness"]) / 2
        overall = sum(dims[name] * weight for name, weight in WEIGHTS.items())
        return QualityScore(
            overall=_clamp(overall),
            dimensions=dims,
            flags={
                "contains_code": bool(CODE_RE.search(response)),
                "contains_citations": bool(CITATION_RE.search(response)),
                "is_structured": bool(STRUCTURED_RE.search(response)),
                "is_actionable": bool(ACTIONABLE_RE.search(response)),
            },
        )

    def detect_implicit_feedback(
        self,
        next_message: str,
        previous_response: str,
        elapsed_ms: float,
    ) -> Optional[FeedbackSignal]:
        lowered = (next_message or "").lower()
        if REGENERATE_RE.search(lowered):
            return FeedbackSignal("implicit", "negative", "regenerate", 0.7)
        if "?" in (next_message or "") and elapsed_ms < FOLLOWUP_WINDOW_MS:
            return FeedbackSignal("implicit", "neutral", "followup", 0.3)
        if POSITIVE_RE.search(lowered):
            return FeedbackSignal("implicit", "positive", "sentiment", 0.6)
        if NEGATIVE_RE.search(lowered):
            return FeedbackSignal("implicit", "negative", "sentiment", 0.6)
        return None

    def is_worth_caching(self, score: QualityScore) -> bool:
        return score.overall >= self.config.min_score_for_cache

    def adjust_score_with_feedback(self, score: QualityScore, signal: FeedbackSignal) -> QualityScore:
        adjustment = 0.0
        if signal.signal == "positive":
            adjustment = self.config.positive_feedback_boost * signal.strength
        elif signal.signal == "negative":
            adjustment = -self.config.regeneration_penalty * signal.strength
        return replace(score, overall=_clamp(score.overall + adjustment))


def _trend(values: List[float]) -> str:
    midpoint = len(values) // 2
    first, second = values[:midpoint], values[midpoint:]
    first_avg = sum(first) / (len(first) or 1)
    second_avg = sum(second) / (len(second) or 1)
    if second_avg - first_avg > TREND_THRESHOLD:
        return "improving"
    if first_avg - second_avg > TREND_THRESHOLD:
        return "declining"
    return "stable"


class FeedbackTracker:
    """Persists quality scores and feedback signals; storage failures are logged and swallowed."""

    def __init__(self, db: Any, scorer: Optional[QualityScorer] = None):
        self.db = db
        self.scorer = scorer or QualityScorer()

    async def record_quality(
        self,
        user_id: str,
        thread_id: str,
        message_id: Optional[str],
        agent: str,
        query: str,
        response: str,
        latency_ms: int,
    ) -> QualityScore:
        score = self.scorer.score(response, query)
        try:
            await self.db.add_response_quality(
                user_id=user_id,
                thread_id=thread_id,
                message_id=message_id,
                agent=agent,
                score=score.to_dict(),
                latency_ms=latency_ms,
            )
        except Exception as exc:
            logger.warning("Failed to record quality for %s: %s", agent, exc)
        return score

    async def record_feedback(
        self,
        user_id: str,
        message_id: Optional[str],
        signal: FeedbackSignal,
        agent: Optional[str] = None,
    ) -> None:
        try:
            await self.db.add_response_feedback(
                user_id=user_id,
                message_id=message_id,
                agent=agent,
                feedback=signal.to_dict(),
            )
        except Exception as exc:
            logger.warning("Failed to record feedback: %s", exc)

    async def get_agent_metrics(self, agent: str, days: Optional[int] = None) -> Optional[Dict[str, Any]]:
        window = days if days is not None else self.scorer.config.trend_window_days
        since = (datetime.now(timezone.utc) - timedelta(days=window)).isoformat().replace("+00:00", "Z")
        try:
            rows = await self.db.list_response_quality(agent, since)
            feedback = await self.db.list_response_feedback(agent, since)
        except Exception as exc:
            logger.warning("Failed to load metrics for %s: %s", agent, exc)
            return None
        if not rows:
            return None
        qualities = [float(row.get("quality_overall") or 0) for row in rows]
        latencies = [float(row.get("latency_ms") or 0) for row in rows]
        positive = sum(1 for row in feedback if row.get("feedback_signal") == "positive")
        negative = sum(1 for row in feedback if row.get("feedback_signal") == "negative")
        regenerations = sum(1 for row in feedback if row.get("feedback_source") == "regenerate")
        return {
            "agent": agent,
            "avg_quality": sum(qualities) / len(qualities),
            "response_count": len(rows),
            "positive_feedback": positive,
            "negative_feedback": negative,
            "regeneration_rate": regenerations / len(rows),
            "avg_latency": sum(latencies) / len(latencies),
            "trend": _trend(qualities),
        }
