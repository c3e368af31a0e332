from typing import Dict, List, Any, Optional
from datetime import datetime, timezone
import asyncio
from collections import defaultdict

MAX_TURNS = 100


class RuntimeMemory:
    """Recent conversation turns per session"""

    def __init__(self, max_turns: int = MAX_TURNS):
        self.conversations: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.max_turns = max_turns
        self._lock = asyncio.Lock()

    async def add_turn(self, session_id: str, speaker: str, content: str, source: Optional[str] = None):
        """Append a turn, keeping only the newest max_turns"""

        async with self._lock:
            self.conversations[session_id].append({
                "speaker": speaker,
                "content": content,
                "source": source or f"conversation:{session_id}",
                "timestamp": datetime.now(timezone.utc).isoformat()
            })

            if len(self.conversations[session_id]) > self.max_turns:
                self.conversations[session_id] = self.conversations[session_id][-self.max_turns:]

    async def get_turns(self, session_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            turns = list(self.conversations.get(session_id, []))
        return turns[-limit:] if limit else turns

    async def recent_messages(self, session_id: str, limit: int = 3) -> List[str]:
        """Raw text of the last few turns, oldest first"""
        return [turn["content"] for turn in await self.get_turns(session_id, limit)]

    async def format_recent(self, session_id: str, limit: Optional[int] = None) -> str:
        turns = await self.get_turns(session_id, limit)
        return "\n".join(f"[{turn['speaker']}]: {turn['content']}" for turn in turns)

    async def clear_session(self, session_id: str):
        async with self._lock:
            self.conversations.pop(session_id, None)
