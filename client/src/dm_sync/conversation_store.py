from __future__ import annotations

import bisect
import enum
import itertools
import logging
from datetime import date, tzinfo
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .models import Message

logger = logging.getLogger(__name__)

Listener = Callable[["ConversationStore"], None]


class AppendResult(enum.Enum):
    APPENDED = "appended"
    DUPLICATE = "duplicate"
    WRONG_CONVERSATION = "wrong_conversation"

    def __bool__(self) -> bool:
        return self is AppendResult.APPENDED


class ConversationStore:
    """Ordered, de-duplicated message list for the active conversation.

    Three producers write here: the page fetch (through ``reset``), the
    composer (``append``/``replace``) and the change feed (``append``).
    Entries are kept sorted by ``(created_at, id)`` and unique by ``id``.
    """

    def __init__(self) -> None:
        self._conversation_id: Optional[str] = None
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}
        self._listeners: List[Listener] = []

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return remove

    def reset(self, conversation_id: Optional[str], initial_messages: Iterable[Message] = ()) -> None:
        """Atomically switch to ``conversation_id`` holding ``initial_messages``."""

        ordered = sorted(initial_messages, key=lambda message: message.sort_key)
        messages: List[Message] = []
        by_id: Dict[str, Message] = {}
        for message in ordered:
            if message.conversation_id != conversation_id:
                logger.warning(
                    "dropping message %s for conversation %s while loading %s",
                    message.id,
                    message.conversation_id,
                    conversation_id,
                )
                continue
            if message.id in by_id:
                continue
            by_id[message.id] = message
            messages.append(message)

        self._conversation_id = conversation_id
        self._messages = messages
        self._by_id = by_id
        self._notify()

    def clear(self) -> None:
        self.reset(None, ())

    def append(self, message: Message) -> AppendResult:
        result = self._insert(message)
        if result is AppendResult.APPENDED:
            self._notify()
        return result

    def replace(self, temporary_id: str, confirmed_message: Optional[Message]) -> AppendResult | None:
        """Swap an optimistic placeholder for its confirmed copy.

        Either half may be a no-op: the placeholder may already be gone and the
        confirmed copy may already be present (pushed first). Returns the
        outcome of appending ``confirmed_message`` or ``None`` when there is
        nothing to append.
        """

        removed = self._remove(temporary_id)
        result = self._insert(confirmed_message) if confirmed_message is not None else None
        if removed or result is AppendResult.APPENDED:
            self._notify()
        return result

    def grouped_by_day(self, tz: tzinfo | None = None) -> Iterator[Tuple[date, List[Message]]]:
        """Yield ``(date, messages)`` groups in chronological order.

        Dates are taken in ``tz``, defaulting to the local zone. The store is
        snapshotted when this is called; later mutations do not show up in the
        returned iterator.
        """

        snapshot = tuple(self._messages)

        def groups() -> Iterator[Tuple[date, List[Message]]]:
            for day, group in itertools.groupby(snapshot, key=lambda message: message.created_at.astimezone(tz).date()):
                yield day, list(group)

        return groups()

    def _insert(self, message: Message) -> AppendResult:
        if message.conversation_id != self._conversation_id:
            logger.debug(
                "rejecting message %s for conversation %s (store holds %s)",
                message.id,
                message.conversation_id,
                self._conversation_id,
            )
            return AppendResult.WRONG_CONVERSATION
        if message.id in self._by_id:
            return AppendResult.DUPLICATE
        bisect.insort(self._messages, message, key=lambda item: item.sort_key)
        self._by_id[message.id] = message
        return AppendResult.APPENDED

    def _remove(self, message_id: str) -> bool:
        message = self._by_id.pop(message_id, None)
        if message is None:
            return False
        self._messages.remove(message)
        return True

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)
