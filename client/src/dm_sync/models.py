"""Contacts and messages as held by the client, plus their JSON wire form."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional


def parse_timestamp(raw: Any) -> datetime:
    """Parse an ISO-8601 wire timestamp into an aware ``datetime``.

    Naive values are taken as UTC; a trailing ``Z`` is accepted.
    """

    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, str) and raw:
        text = raw.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"invalid timestamp: {raw!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    created_at: datetime
    text_content: Optional[str] = None
    attachment_ref: Optional[str] = None
    pending: bool = field(default=False, compare=False)

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> "Message":
        """Decode an API or change-feed row (camelCase or snake_case keys)."""

        if not isinstance(payload, Mapping):
            raise ValueError("message payload must be an object")
        message_id = _pick(payload, "id")
        conversation_id = _pick(payload, "conversationId", "conversation_id")
        sender_id = _pick(payload, "senderId", "sender_id")
        if not message_id or not conversation_id or not sender_id:
            raise ValueError("message requires id, conversationId and senderId")
        return cls(
            id=str(message_id),
            conversation_id=str(conversation_id),
            sender_id=str(sender_id),
            created_at=parse_timestamp(_pick(payload, "createdAt", "created_at")),
            text_content=_optional_str(_pick(payload, "content", "text_content")),
            attachment_ref=_optional_str(_pick(payload, "imageUrl", "image_url")),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.text_content,
            "imageUrl": self.attachment_ref,
            "createdAt": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class Contact:
    id: str
    display_name: str
    avatar_ref: Optional[str] = None
    presence_status: Optional[str] = None
    last_message_preview: Optional[str] = None
    last_message_timestamp: Optional[datetime] = None
    unread_count: Optional[int] = None

    def updated(self, **changes: Any) -> "Contact":
        """Return a copy with ``changes`` merged in; ``id`` cannot change."""

        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"unknown contact fields: {sorted(unknown)}")
        if "id" in changes and changes["id"] != self.id:
            raise TypeError("contact id is immutable")
        return replace(self, **changes)

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> "Contact":
        if not isinstance(payload, Mapping):
            raise ValueError("contact payload must be an object")
        contact_id = payload.get("id")
        if not contact_id:
            raise ValueError("contact requires id")
        last_time = payload.get("lastMessageTime")
        unread = payload.get("unreadCount")
        return cls(
            id=str(contact_id),
            display_name=str(payload.get("name") or ""),
            avatar_ref=_optional_str(payload.get("avatar")),
            presence_status=_optional_str(payload.get("status")),
            last_message_preview=_optional_str(payload.get("lastMessage")),
            last_message_timestamp=parse_timestamp(last_time) if last_time else None,
            unread_count=int(unread) if isinstance(unread, int) else None,
        )

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "name": self.display_name}
        if self.avatar_ref is not None:
            payload["avatar"] = self.avatar_ref
        if self.presence_status is not None:
            payload["status"] = self.presence_status
        if self.last_message_preview is not None:
            payload["lastMessage"] = self.last_message_preview
        if self.last_message_timestamp is not None:
            payload["lastMessageTime"] = format_timestamp(self.last_message_timestamp)
        if self.unread_count is not None:
            payload["unreadCount"] = self.unread_count
        return payload
