"""
Conversation memory for the current session.

Holds the most recent turns in memory (10 turns = 20 messages by default)
and evicts the oldest first. Owned by the conversation state machine; the
pipeline reads it but never mutates it.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ConversationTurn:
    """One user utterance and the assistant's reply."""
    user_text: str
    assistant_text: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def complete(self, assistant_text: str) -> None:
        self.assistant_text = assistant_text
        self.completed_at = time.time()

    def to_messages(self) -> List[Dict[str, str]]:
        messages = [{"role": "user", "content": self.user_text}]
        if self.assistant_text:
            messages.append({"role": "assistant", "content": self.assistant_text})
        return messages


class ConversationHistory:
    """Bounded, ordered list of turns."""

    def __init__(self, max_turns: int = 10):
        self.max_turns = max_turns
        self._turns: Deque[ConversationTurn] = deque(maxlen=max_turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(list(self._turns))

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    @property
    def last(self) -> Optional[ConversationTurn]:
        return self._turns[-1] if self._turns else None

    def start_turn(self, user_text: str) -> ConversationTurn:
        turn = ConversationTurn(user_text=user_text)
        self._turns.append(turn)
        return turn

    def as_messages(self) -> List[Dict[str, str]]:
        """Chat messages for every stored turn, oldest first."""
        messages: List[Dict[str, str]] = []
        for turn in self._turns:
            messages.extend(turn.to_messages())
        return messages

    def display_messages(self, count: int = 6) -> List[Dict[str, str]]:
        """The last few messages for on-screen history."""
        return self.as_messages()[-count:]

    def clear(self) -> None:
        self._turns.clear()
        logger.info("Conversation history cleared")
