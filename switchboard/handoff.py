import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

AGENT_NAME_MAP: Dict[str, str] = {
    "devbot": "coder",
    "dev": "coder",
    "coder": "coder",
    "developer": "coder",
    "code": "coder",
    "programming": "coder",
    "github": "coder",
    "researchbot": "researcher",
    "research": "researcher",
    "researcher": "researcher",
    "search": "researcher",
    "lookup": "researcher",
    "find": "researcher",
    "secretary": "secretary",
    "secretarybot": "secretary",
    "calendar": "secretary",
    "email": "secretary",
    "schedule": "secretary",
    "meeting": "secretary",
    "homebot": "home",
    "home": "home",
    "smarthome": "home",
    "lights": "home",
    "thermostat": "home",
    "home assistant": "home",
    "finance": "finance",
    "financebot": "finance",
    "advisor": "finance",
    "money": "finance",
    "budget": "finance",
    "financial": "finance",
    "q8": "personality",
    "personality": "personality",
    "chat": "personality",
    "talk": "personality",
    "imagegen": "imagegen",
    "image": "imagegen",
    "picture": "imagegen",
    "photo": "imagegen",
    "generate": "imagegen",
}

EXPLICIT_MARKER_RE = re.compile(r"\[HANDOFF:(\w+)\](?:\s*(.+))?", re.IGNORECASE)
STRIP_MARKER_RE = re.compile(r"\[HANDOFF:\w+\](?:\s*[^\n]*)?", re.IGNORECASE)

HANDOFF_PHRASES: Tuple["re.Pattern[str]", ...] = (
    re.compile(r"let me (?:pass|transfer|hand) (?:this |it )?(?:over )?to (\w+)", re.IGNORECASE),
    re.compile(r"I(?:'ll| will) (?:get|have|ask) (\w+) to (?:help|handle|take care)", re.IGNORECASE),
    re.compile(r"(\w+) (?:would be|is) better suited (?:for|to handle) this", re.IGNORECASE),
    re.compile(r"this (?:requires|needs) (\w+)(?:'s)? (?:expertise|help|capabilities)", re.IGNORECASE),
    re.compile(r"transferring (?:you )?to (\w+)", re.IGNORECASE),
)

_LIMITATION = r"I (?:can't|cannot|don't have access to|am not able to) .*"
LIMITATION_RULES: Tuple[Tuple["re.Pattern[str]", str], ...] = (
    (re.compile(_LIMITATION + r"(?:code|program|github)", re.IGNORECASE), "coder"),
    (re.compile(_LIMITATION + r"(?:search|web|internet|current)", re.IGNORECASE), "researcher"),
    (re.compile(_LIMITATION + r"(?:calendar|email|schedule)", re.IGNORECASE), "secretary"),
    (re.compile(_LIMITATION + r"(?:smart home|lights|thermostat)", re.IGNORECASE), "home"),
)

CIRCULAR_WINDOW = 3
HISTORY_WINDOW = 6
HISTORY_CHARS = 400
TOOL_PREVIEW_CHARS = 100


@dataclass(frozen=True)
class HandoffSignal:
    target: str
    reason: str
    kind: str = "explicit"  # explicit | phrase | limitation


def map_name_to_agent(name: str, names: Dict[str, str] = AGENT_NAME_MAP) -> Optional[str]:
    return names.get((name or "").strip().lower())


def detect_handoff_signal(
    response: str,
    phrases: Sequence["re.Pattern[str]"] = HANDOFF_PHRASES,
    limitations: Sequence[Tuple["re.Pattern[str]", str]] = LIMITATION_RULES,
) -> Optional[HandoffSignal]:
    text = response or ""
    explicit = EXPLICIT_MARKER_RE.search(text)
    if explicit:
        target = map_name_to_agent(explicit.group(1))
        if target:
            reason = (explicit.group(2) or "").strip() or "Explicit hand-off requested"
            return HandoffSignal(target, reason, "explicit")

    for pattern in phrases:
        match = pattern.search(text)
        if match:
            target = map_name_to_agent(match.group(1))
            if target:
                return HandoffSignal(target, match.group(0), "phrase")

    for pattern, target in limitations:
        if pattern.search(text):
            return HandoffSignal(target, "Agent indicated capability limitation", "limitation")
    return None


def strip_handoff_markers(response: str) -> str:
    return STRIP_MARKER_RE.sub("", response or "").strip()


MARKER_PREFIX = "[handoff:"
_MARKER_START_RE = re.compile(r"\[HANDOFF:\w+\]", re.IGNORECASE)


class HandoffStreamFilter:
    """Incremental strip_handoff_markers for live deltas.

    Text that could still become a marker is held back until it either
    completes one (then the marker line is dropped) or diverges from it.
    """

    def __init__(self):
        self._pending = ""
        self._suppressing = False

    def feed(self, delta: str) -> str:
        self._pending += delta or ""
        visible: List[str] = []
        while self._pending:
            if self._suppressing:
                newline = self._pending.find("\n")
                if newline < 0:
                    self._pending = ""
                    break
                self._pending = self._pending[newline:]
                self._suppressing = False
                continue
            start = self._pending.find("[")
            if start < 0:
                visible.append(self._pending)
                self._pending = ""
                break
            visible.append(self._pending[:start])
            self._pending = self._pending[start:]
            match = _MARKER_START_RE.match(self._pending)
            if match:
                self._pending = self._pending[match.end():]
                self._suppressing = True
                continue
            if self._could_become_marker(self._pending):
                break
            visible.append(self._pending[0])
            self._pending = self._pending[1:]
        return "".join(visible)

    def flush(self) -> str:
        tail = "" if self._suppressing else self._pending
        self._pending = ""
        self._suppressing = False
        return tail

    @staticmethod
    def _could_become_marker(text: str) -> bool:
        lowered = text.lower()
        if len(lowered) <= len(MARKER_PREFIX):
            return MARKER_PREFIX.startswith(lowered)
        if not lowered.startswith(MARKER_PREFIX):
            return False
        name = lowered[len(MARKER_PREFIX):]
        return bool(re.fullmatch(r"\w*", name))


def create_handoff_marker(target: str, reason: Optional[str] = None) -> str:
    return f"[HANDOFF:{target}]" + (f" {reason}" if reason else "")


def is_valid_handoff(from_agent: str, to_agent: str, recent_agents: Iterable[str]) -> Tuple[bool, Optional[str]]:
    if from_agent == to_agent:
        return False, "Cannot hand off to the same agent"
    recent = list(recent_agents)[-CIRCULAR_WINDOW:]
    if recent.count(to_agent) >= 2:
        return False, "Circular hand-off detected - agent was recently active"
    return True, None


def _preview(value: Any) -> str:
    text = json.dumps(value, default=str)
    if len(text) > TOOL_PREVIEW_CHARS:
        return text[:TOOL_PREVIEW_CHARS] + "..."
    return text


def build_handoff_context(
    from_agent: str,
    to_agent: str,
    history: Sequence[Dict[str, Any]],
    reason: str,
    partial_results: Any = None,
    tool_executions: Optional[Sequence[Dict[str, Any]]] = None,
    original_intent: Optional[str] = None,
    interrupted_topic: Optional[str] = None,
) -> str:
    """Prompt section handed to the receiving agent."""
    lines: List[str] = []
    for msg in list(history)[-HISTORY_WINDOW:]:
        content = str(msg.get("content") or "")
        if len(content) > HISTORY_CHARS:
            content = content[:HISTORY_CHARS] + "..."
        agent_tag = f" [{msg['agent']}]" if msg.get("agent") else ""
        lines.append(f"**{msg.get('role', 'user')}{agent_tag}**: {content}")

    parts = [
        "## Hand-off Context",
        f"You are receiving a hand-off from **{from_agent}**.",
        f"**Reason for hand-off**: {reason}",
    ]
    if original_intent:
        parts.append(f"**Original user intent**: {original_intent}")
    parts.append("### Recent Conversation\n" + "\n\n".join(lines))
    if tool_executions:
        tool_lines = []
        for item in tool_executions:
            status = "✓" if item.get("success") else "✗"
            preview = f" → {_preview(item['result'])}" if item.get("result") else ""
            tool_lines.append(f"- {status} {item.get('tool')}{preview}")
        parts.append("### Tool Executions by Previous Agent\n" + "\n".join(tool_lines))
    if partial_results is not None:
        parts.append(
            "### Partial Results from Previous Agent\n```json\n"
            + json.dumps(partial_results, indent=2, default=str)
            + "\n```"
        )
    if interrupted_topic:
        parts.append(f'**Note**: The user may want to return to "{interrupted_topic}" after this.')
    parts.append(
        "### Your Task\n"
        f"Continue the conversation naturally as the {to_agent} agent. "
        "Address the user's needs using your specialized capabilities.\n\n"
        "**Important Guidelines**:\n"
        "- Do NOT repeat what the previous agent already said\n"
        "- Do NOT introduce yourself unless contextually appropriate\n"
        "- Pick up where the conversation left off\n"
        "- If you have the information/capability needed, provide it directly\n"
        "- Use any partial results provided to build upon previous work"
    )
    return "\n\n".join(parts)
