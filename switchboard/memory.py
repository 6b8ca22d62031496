import json
import logging
import re
from typing import Any, Dict, List

from .agents import MEMORY_EXTRACTION_SYSTEM

logger = logging.getLogger("uvicorn.error")

MEMORY_TYPES = {"fact", "preference", "goal", "relationship", "context"}
MAX_MEMORIES_PER_TURN = 5
MIN_MESSAGE_CHARS = 12


def parse_memories(text: str) -> List[Dict[str, Any]]:
    match = re.search(r"\{.*\}", text or "", re.DOTALL)
    if not match:
        return []
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return []
    items = data.get("memories") if isinstance(data, dict) else None
    memories: List[Dict[str, Any]] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        memory_type = str(item.get("type") or "fact").lower()
        if memory_type not in MEMORY_TYPES:
            memory_type = "fact"
        try:
            importance = float(item.get("importance", 0.5))
        except (TypeError, ValueError):
            importance = 0.5
        memories.append({"type": memory_type, "content": content, "importance": max(0.0, min(1.0, importance))})
    return memories[:MAX_MEMORIES_PER_TURN]


class MemoryExtractor:
    """Asks the orchestrator model for durable user facts from one exchange and stores them."""

    def __init__(self, lm_client: Any, resolver: Any, db: Any):
        self.lm_client = lm_client
        self.resolver = resolver
        self.db = db

    async def extract(self, user_id: str, thread_id: str, user_message: str, assistant_message: str) -> int:
        if len((user_message or "").strip()) < MIN_MESSAGE_CHARS:
            return 0
        config = self.resolver.resolve("orchestrator")
        if not config.api_key:
            return 0
        messages = [
            {"role": "system", "content": MEMORY_EXTRACTION_SYSTEM.strip()},
            {"role": "user", "content": f"User: {user_message}\n\nAssistant: {assistant_message}"},
        ]
        resp = await self.lm_client.chat_completion(config, messages, max_tokens=300, temperature=0.0)
        content = resp["choices"][0]["message"].get("content") or ""
        memories = parse_memories(content)
        for memory in memories:
            await self.db.add_memory(
                user_id,
                memory["type"],
                memory["content"],
                importance=memory["importance"],
                source_thread_id=thread_id,
            )
        if memories:
            logger.info("Stored %s memories for %s", len(memories), user_id)
        return len(memories)
