from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_ts_ms(ts_ms: int) -> str:
    moment = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class MessageRecord:
    """An immutable persisted message."""

    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str]
    image_url: Optional[str]
    created_at_ms: int

    def to_json(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "imageUrl": self.image_url,
            "createdAt": format_ts_ms(self.created_at_ms),
        }


class MessageLog:
    """In-memory, append-only message log with server-assigned ids."""

    def __init__(self) -> None:
        self._messages: Dict[str, List[MessageRecord]] = {}
        self._idempotency: Dict[Tuple[str, str], MessageRecord] = {}
        self._next_id = 1

    def append(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        image_url: Optional[str],
        ts_ms: int,
        client_key: Optional[str] = None,
    ) -> tuple[MessageRecord, bool]:
        """Persist a message, or return the existing one for ``client_key``.

        The boolean is ``True`` only when a new record was created.
        """

        if client_key is not None:
            key = (conversation_id, client_key)
            existing = self._idempotency.get(key)
            if existing is not None:
                return existing, False

        record = MessageRecord(
            id=f"msg-{self._next_id}",
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            image_url=image_url,
            created_at_ms=ts_ms,
        )
        self._next_id += 1
        self._messages.setdefault(conversation_id, []).append(record)
        if client_key is not None:
            self._idempotency[(conversation_id, client_key)] = record
        return record, True

    def page(self, conversation_id: str, page: int = 1, limit: int = 50) -> list[MessageRecord]:
        """Return page ``page`` counted back from the newest, ascending by creation."""

        if page < 1:
            raise ValueError("page must be positive")
        if limit < 1:
            raise ValueError("limit must be positive")
        ordered = sorted(self._messages.get(conversation_id, []), key=lambda record: (record.created_at_ms, record.id))
        end = len(ordered) - (page - 1) * limit
        if end <= 0:
            return []
        return ordered[max(0, end - limit) : end]
