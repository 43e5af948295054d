"""
Ordered message list for the active conversation.
"""
from typing import Iterable, Iterator, Optional

from chatstream.exceptions import TranscriptError
from chatstream.models import Message


class ConversationTranscript:
    """Append-only transcript with at most one pending assistant entry, kept last."""

    def __init__(self, messages: Optional[Iterable[Message]] = None):
        self._messages: list[Message] = []
        if messages:
            self.load(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def has_pending_assistant(self) -> bool:
        last = self.last
        return last is not None and last.type == "assistant" and last.pending

    def append(self, message: Message) -> None:
        if self.has_pending_assistant():
            raise TranscriptError("Cannot append after an in-flight assistant message")
        if message.pending and message.type != "assistant":
            raise TranscriptError("Only assistant messages can be pending")
        self._messages.append(message)

    def replace_last(self, message: Message) -> None:
        if not self._messages:
            raise TranscriptError("Transcript is empty")
        self._messages[-1] = message

    def load(self, messages: Iterable[Message]) -> None:
        """Replace the whole transcript with persisted history."""
        loaded = list(messages)
        if any(m.pending for m in loaded):
            raise TranscriptError("Persisted history cannot contain pending messages")
        self._messages = loaded

    def clear(self) -> None:
        self._messages = []
