"""
Session Memory

Bounded rolling transcript for one connection. Entries are kept FIFO and the
oldest are evicted past ``capacity``. The rendered block is injected as a
system message so the model can continue the conversation.
"""

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, List, Optional

from parley.core.config import settings

MEMORY_HEADER = "SESSION MEMORY (brief, last {count} turns):\n"


class MemoryRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class MemoryEntry:
    role: MemoryRole
    text: str

    def render(self) -> str:
        speaker = "User" if self.role == MemoryRole.USER else "Assistant"
        return f"{speaker}: {self.text}"


class SessionMemory:
    """Per-connection FIFO of conversation turns."""

    def __init__(self, capacity: Optional[int] = None, max_chars: Optional[int] = None):
        self.capacity = capacity if capacity is not None else settings.SESSION_MEMORY_CAPACITY
        self.max_chars = max_chars if max_chars is not None else settings.SESSION_MEMORY_MAX_CHARS
        self._entries: Deque[MemoryEntry] = deque(maxlen=self.capacity)

    def push(self, role: MemoryRole, text: str) -> None:
        self._entries.append(MemoryEntry(role=MemoryRole(role), text=text))

    def entries(self) -> List[MemoryEntry]:
        """Entries oldest-first."""
        return list(self._entries)

    def render(self) -> str:
        """Render the memory block, or "" when empty.

        Only the entry lines are truncated to ``max_chars``; the header is
        always kept intact.
        """
        if not self._entries:
            return ""
        lines = "\n".join(entry.render() for entry in self._entries)
        return MEMORY_HEADER.format(count=len(self._entries)) + lines[: self.max_chars]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
