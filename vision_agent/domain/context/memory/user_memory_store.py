from typing import Callable, Dict, List, Any
import asyncio
from datetime import datetime, timedelta, timezone


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UserMemoryStore:
    """Long-term facts about a user, each with its own TTL"""

    def __init__(self, default_ttl: int = 30 * 24 * 3600, clock: Callable[[], datetime] = _now):
        self.memories: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = asyncio.Lock()

    async def remember(self, user_id: str, key: str, fact: str, ttl: int = None, source: str = None) -> None:
        """Store or replace a fact under key"""

        async with self._lock:
            expires_at = self._clock() + timedelta(seconds=ttl if ttl is not None else self.default_ttl)
            self.memories.setdefault(user_id, {})[key] = {
                "fact": fact,
                "source": source or f"user_memory:{user_id}:{key}",
                "expires_at": expires_at
            }

    async def recall(self, user_id: str) -> List[Dict[str, Any]]:
        """Live facts for a user, in insertion order; expired entries are evicted"""

        async with self._lock:
            entries = self.memories.get(user_id, {})
            now = self._clock()

            expired = [key for key, entry in entries.items() if now > entry["expires_at"]]
            for key in expired:
                del entries[key]

            return [
                {"key": key, "fact": entry["fact"], "source": entry["source"]}
                for key, entry in entries.items()
            ]

    async def forget(self, user_id: str, key: str) -> bool:
        async with self._lock:
            entries = self.memories.get(user_id, {})
            if key in entries:
                del entries[key]
                return True
            return False

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            now = self._clock()
            count = 0
            for entries in self.memories.values():
                expired = [key for key, entry in entries.items() if now > entry["expires_at"]]
                for key in expired:
                    del entries[key]
                count += len(expired)
            return count

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            now = self._clock()
            total = sum(len(entries) for entries in self.memories.values())
            active = sum(
                1 for entries in self.memories.values()
                for entry in entries.values()
                if now <= entry["expires_at"]
            )
            return {"users": len(self.memories), "total_keys": total, "active_keys": active}
