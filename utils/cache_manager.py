import time
from typing import Any, Optional, Dict


class CacheManager:
    """Small TTL cache for values fetched from rate-limited third-party APIs"""

    def __init__(self, ttl: int = 60):
        self.cache: Dict[str, tuple[Any, float]] = {}
        self.ttl = ttl

    def get(self, key: str) -> Optional[Any]:
        if key in self.cache:
            value, expires_at = self.cache[key]
            if time.time() < expires_at:
                return value
            del self.cache[key]
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.ttl if ttl is None else ttl
        self.cache[key] = (value, time.time() + ttl)

    def clear(self) -> None:
        self.cache.clear()
