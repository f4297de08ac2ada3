"""
Conversational units as read from the MemoryStore.

The engine never owns these records; it only reads them to build scoring
input and delta sequences.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple


@dataclass(frozen=True)
class Message:
    """One sub-message inside a conversational unit."""

    speaker: str
    text: str
    role: str = "participant"


@dataclass(frozen=True)
class ConversationalUnit:
    """One memory-worthy chunk of dialogue."""

    id: str
    participants: Tuple[str, ...]
    messages: Tuple[Message, ...]
    timestamp: datetime
    summary: str = ""
    conversation_id: Optional[str] = None

    @property
    def content(self) -> str:
        """Summary followed by every message body."""
        parts = [self.summary] if self.summary else []
        parts.extend(m.text for m in self.messages)
        return "\n".join(p for p in parts if p)

    @property
    def is_empty(self) -> bool:
        return not self.content.strip()

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    @property
    def speakers(self) -> List[str]:
        seen: List[str] = []
        for message in self.messages:
            if message.speaker not in seen:
                seen.append(message.speaker)
        return seen


class MemoryStore(Protocol):
    """Read interface of the collaborator that owns conversational units."""

    def get_unit(self, unit_id: str) -> ConversationalUnit:
        ...

    def get_recent_units(
        self, participant_id: str, since: datetime, limit: int = 200
    ) -> List[ConversationalUnit]:
        ...

    def get_conversation_units(self, conversation_id: str, limit: int = 1000) -> List[ConversationalUnit]:
        ...
