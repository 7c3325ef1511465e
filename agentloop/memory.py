"""Conversation memory owned by a single agent."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from agentloop.llm import Message, Role
from agentloop.logging import get_logger

log = get_logger(__name__)


class Memory:
    """Append-only, chronologically ordered message log.

    Messages are never edited in place. Trimming swaps in a new list, and the
    optional `max_messages` cap drops the oldest entries the same way.
    """

    def __init__(self, messages: Iterable[Message] | None = None, max_messages: int | None = 100):
        self.max_messages = max_messages
        self._messages: list[Message] = list(messages or [])
        self._enforce_limit()

    @property
    def messages(self) -> list[Message]:
        """Snapshot of the current messages."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def add(self, message: Message) -> None:
        self._messages.append(message)
        self._enforce_limit()

    def add_many(self, messages: Iterable[Message]) -> None:
        self._messages.extend(messages)
        self._enforce_limit()

    def replace(self, messages: Iterable[Message]) -> None:
        """Replace the whole collection."""
        self._messages = list(messages)
        self._enforce_limit()

    def clear(self) -> None:
        self._messages = []

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def recent(self, n: int) -> list[Message]:
        if n <= 0:
            return []
        return list(self._messages[-n:])

    def trim(self, keep_last: int = 2) -> int:
        """Keep system messages plus the last `keep_last` non-system messages.

        Returns:
            Number of messages discarded
        """
        before = len(self._messages)
        system = [msg for msg in self._messages if msg.role == Role.SYSTEM]
        others = [msg for msg in self._messages if msg.role != Role.SYSTEM]
        tail = others[-keep_last:] if keep_last > 0 else []
        self._messages = system + tail
        return before - len(self._messages)

    def count_repeated_assistant(self) -> int:
        """Count assistant messages byte-identical to the newest assistant message.

        The newest one is included in the count; empty content counts as 0.
        """
        newest = next(
            (msg for msg in reversed(self._messages) if msg.role == Role.ASSISTANT),
            None,
        )
        if newest is None or not (newest.content or "").strip():
            return 0
        return sum(
            1
            for msg in self._messages
            if msg.role == Role.ASSISTANT and msg.content == newest.content
        )

    def _enforce_limit(self) -> None:
        if self.max_messages is None or len(self._messages) <= self.max_messages:
            return
        dropped = len(self._messages) - self.max_messages
        self._messages = self._messages[dropped:]
        log.debug("Memory limit enforced", dropped=dropped, kept=len(self._messages))
