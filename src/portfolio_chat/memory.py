"""Per-session conversation memory on top of a key-value store (bounded, expiring)."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List

from .errors import StorageError
from .models import ChatTurn
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def _safe_session(name: str) -> str:
    # Keep it readable but key-safe.
    s = re.sub(r"[^\w.\-@:]+", "_", (name or "").strip() or "default")
    return s[:128]


def _decode_turns(raw: str) -> List[ChatTurn]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("conversation record is not a list")
    return [ChatTurn.from_dict(item) for item in data if isinstance(item, dict)]


def _encode_turns(turns: Iterable[ChatTurn]) -> str:
    return json.dumps([t.to_dict() for t in turns], ensure_ascii=False)


@dataclass
class HistoryPolicy:
    """Controls how much history is kept and for how long."""
    max_turns: int = 20               # 10 user/assistant exchanges
    ttl_seconds: float = 24 * 60 * 60  # refreshed on every save


# -----------------------------
# ConversationStore
# -----------------------------
class ConversationStore:
    """Ordered, bounded conversation log keyed by session id.

    Layout:
        conversation:<session>  ->  JSON list of {"role", "text"}

    Every operation degrades to an empty result or a dropped write when the
    backing store is unavailable or the record is corrupt; nothing raises.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_turns: int = 20,
        ttl_seconds: float = 24 * 60 * 60,
        key_prefix: str = "conversation:",
    ) -> None:
        self._store = store
        self.policy = HistoryPolicy(max_turns=max(2, int(max_turns)), ttl_seconds=float(ttl_seconds))
        self._prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{_safe_session(session_id)}"

    # --------- core API ----------
    async def history(self, session_id: str) -> List[ChatTurn]:
        """Stored turns, oldest first (empty if absent or unreadable)."""
        try:
            raw = await self._store.get(self._key(session_id))
        except StorageError as e:
            logger.error("Could not load conversation for %s: %s", session_id, e)
            return []
        if not raw:
            logger.info("No existing conversation for session %s", session_id)
            return []
        try:
            return _decode_turns(raw)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too.
            logger.warning("Corrupt conversation record for %s, ignoring: %s", session_id, e)
            return []

    async def append(self, session_id: str, user_text: str, assistant_text: str) -> None:
        """Append one exchange, keep the newest ``max_turns`` and refresh the TTL."""
        turns = await self.history(session_id)
        turns.append(ChatTurn("user", user_text))
        turns.append(ChatTurn("assistant", assistant_text))
        if len(turns) > self.policy.max_turns:
            turns = turns[-self.policy.max_turns:]
        try:
            await self._store.set(self._key(session_id), _encode_turns(turns), ttl=self.policy.ttl_seconds)
        except StorageError as e:
            logger.error("Could not save conversation for %s: %s", session_id, e)
            return
        logger.info("Saved conversation for session %s with %d turns", session_id, len(turns))

    async def clear(self, session_id: str) -> bool:
        """Delete the conversation. True if a record existed."""
        try:
            existed = await self._store.delete(self._key(session_id))
        except StorageError as e:
            logger.error("Could not clear conversation for %s: %s", session_id, e)
            return False
        logger.info("Cleared conversation for session %s: %s", session_id, existed)
        return existed

    # --------- convenience ----------
    @staticmethod
    def render(turns: Iterable[ChatTurn]) -> str:
        """Plain transcript used inside the prompt."""
        lines: List[str] = []
        for t in turns:
            text = (t.text or "").strip()
            if not text:
                continue
            label = "User" if t.role == "user" else "Assistant"
            lines.append(f"{label}: {text}")
        return "\n".join(lines)
