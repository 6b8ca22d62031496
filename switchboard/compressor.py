import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .agents import HISTORY_SUMMARY_SYSTEM

logger = logging.getLogger("uvicorn.error")

CHARS_PER_TOKEN = 4
ROLE_TOKENS = 4
SUMMARY_INPUT_CHARS = 12000
FALLBACK_MESSAGES = 5

_QUESTION_BONUS = 0.1
_DECISION_RE = re.compile(r"\b(decided|agreed|will|must|should|important|remember)\b")
_PERSONAL_RE = re.compile(r"\b(my name|i am|i live|i work|i like|my favorite)\b")
_CODE_RE = re.compile(r"```|function|class|const|let|var|import")
_FIRST_SENTENCE_RE = re.compile(r"^[^.!?]+[.!?]")


@dataclass(frozen=True)
class CompressionConfig:
    max_tokens: int = 4000
    recent_messages: int = 6
    summary_max_tokens: int = 500
    importance_threshold: float = 0.7


@dataclass
class CompressedHistory:
    messages: List[Dict[str, Any]]
    summary: str = ""
    original_tokens: int = 0
    compressed_tokens: int = 0

    @property
    def ratio(self) -> float:
        if not self.original_tokens:
            return 1.0
        return self.compressed_tokens / self.original_tokens


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: List[Dict[str, Any]]) -> int:
    return sum(estimate_tokens(str(m.get("content") or "")) + ROLE_TOKENS for m in messages)


def message_importance(message: Dict[str, Any]) -> float:
    raw = str(message.get("content") or "")
    content = raw.lower()
    score = 0.5
    if "?" in content:
        score += _QUESTION_BONUS
    if _DECISION_RE.search(content):
        score += 0.15
    if _PERSONAL_RE.search(content):
        score += 0.2
    if _CODE_RE.search(raw):
        score += 0.1
    if message.get("role") == "user":
        score += 0.1
    return min(1.0, score)


def fallback_summary(messages: List[Dict[str, Any]]) -> str:
    parts = []
    for msg in messages[:FALLBACK_MESSAGES]:
        content = str(msg.get("content") or "")
        match = _FIRST_SENTENCE_RE.match(content)
        sentence = match.group(0) if match else content[:100]
        speaker = "User" if msg.get("role") == "user" else "Assistant"
        parts.append(f"{speaker}: {sentence}")
    return "Previous conversation summary:\n" + "\n".join(parts)


class HistoryCompressor:
    """Keeps long thread history under a token budget.

    Older turns are folded into a summary (written by the orchestrator model when one
    is configured, else a first-sentence digest); recent turns and important older
    turns are kept verbatim.
    """

    def __init__(self, lm_client: Any = None, resolver: Any = None, config: Optional[CompressionConfig] = None):
        self.lm_client = lm_client
        self.resolver = resolver
        self.config = config or CompressionConfig()

    def needs_compression(self, messages: List[Dict[str, Any]]) -> bool:
        return estimate_messages_tokens(messages) > self.config.max_tokens

    async def summarize(self, messages: List[Dict[str, Any]]) -> str:
        if not messages or self.lm_client is None or self.resolver is None:
            return fallback_summary(messages)
        model_config = self.resolver.resolve("orchestrator")
        if not model_config.api_key:
            return fallback_summary(messages)
        lines = []
        for msg in messages:
            agent = f" ({msg['agent']})" if msg.get("agent") else ""
            lines.append(f"{msg.get('role')}{agent}: {msg.get('content') or ''}")
        prompt = [
            {"role": "system", "content": HISTORY_SUMMARY_SYSTEM.strip()},
            {"role": "user", "content": "\n".join(lines)[:SUMMARY_INPUT_CHARS]},
        ]
        try:
            resp = await self.lm_client.chat_completion(
                model_config, prompt, max_tokens=self.config.summary_max_tokens, temperature=0.3
            )
            summary = (resp["choices"][0]["message"].get("content") or "").strip()
        except Exception as exc:
            logger.warning("History summary failed; using fallback: %s", exc)
            return fallback_summary(messages)
        return summary or fallback_summary(messages)

    async def compress(self, messages: List[Dict[str, Any]]) -> CompressedHistory:
        original = estimate_messages_tokens(messages)
        if original <= self.config.max_tokens or len(messages) <= self.config.recent_messages:
            return CompressedHistory(messages=list(messages), original_tokens=original, compressed_tokens=original)

        split = len(messages) - self.config.recent_messages
        older, recent = messages[:split], messages[split:]
        kept_older = [m for m in older if message_importance(m) >= self.config.importance_threshold]
        summary = await self.summarize(older)
        kept = kept_older + recent
        compressed = estimate_tokens(summary) + estimate_messages_tokens(kept)
        logger.info(
            "Compressed history from %s to %s tokens (%s -> %s messages)",
            original,
            compressed,
            len(messages),
            len(kept),
        )
        return CompressedHistory(
            messages=kept,
            summary=summary,
            original_tokens=original,
            compressed_tokens=compressed,
        )

    @staticmethod
    def context_block(history: CompressedHistory) -> str:
        if not history.summary:
            return ""
        return f"## Conversation Summary\n{history.summary}"
