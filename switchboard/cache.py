import re
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Protocol, Tuple


class Cache(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class TTLCache:
    """Last-writer-wins key/value cache with per-entry expiry and an injectable clock."""

    def __init__(
        self,
        default_ttl: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        max_size: Optional[int] = None,
    ):
        self.default_ttl = default_ttl
        self.clock = clock
        self.max_size = max_size
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        self._entries[key] = (self.clock() + lifetime, value)
        self._entries.move_to_end(key)
        if self.max_size and len(self._entries) > self.max_size:
            self._prune()
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _prune(self) -> None:
        now = self.clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        self._prune()
        return len(self._entries)


# Only short, repeatable queries are worth answering from cache.
COMMON_QUERY_PATTERNS: Tuple[Tuple[re.Pattern, float], ...] = (
    (re.compile(r"^(hi|hello|hey|good morning|good afternoon|good evening)\b", re.IGNORECASE), 60.0),
    (re.compile(r"^what('s| is) the (weather|time|date)\b", re.IGNORECASE), 300.0),
    (re.compile(r"^(thanks|thank you|bye|goodbye)\b", re.IGNORECASE), 60.0),
    (re.compile(r"^how are you\b", re.IGNORECASE), 60.0),
)


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", (query or "").strip().lower())


class ResponseCache:
    def __init__(self, cache: Cache, patterns: Tuple[Tuple[re.Pattern, float], ...] = COMMON_QUERY_PATTERNS):
        self.cache = cache
        self.patterns = patterns
        self.hits = 0
        self.misses = 0

    def ttl_for(self, query: str) -> Optional[float]:
        text = (query or "").strip()
        for pattern, ttl in self.patterns:
            if pattern.search(text):
                return ttl
        return None

    def _key(self, user_id: str, agent: str, query: str) -> str:
        return f"{user_id}:{agent}:{normalize_query(query)}"

    def get(self, user_id: str, agent: str, query: str) -> Optional[Dict[str, Any]]:
        if self.ttl_for(query) is None:
            return None
        entry = self.cache.get(self._key(user_id, agent, query))
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def put(self, user_id: str, agent: str, query: str, content: str, quality: float) -> bool:
        ttl = self.ttl_for(query)
        if ttl is None:
            return False
        self.cache.set(
            self._key(user_id, agent, query),
            {"content": content, "agent": agent, "quality": quality},
            ttl=ttl,
        )
        return True

    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses}
