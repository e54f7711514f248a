from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .attachments import Attachment
from .conversation_store import AppendResult, ConversationStore
from .errors import InvalidInput
from .models import Message

logger = logging.getLogger(__name__)

TEMPORARY_ID_PREFIX = "tmp-"
LOCAL_ATTACHMENT_PREFIX = "attachment:"


class MessageSender(Protocol):
    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
        client_key: Optional[str] = None,
    ) -> Message: ...


class ObjectStorage(Protocol):
    async def upload(self, data: bytes, name: str, content_type: str = ...) -> str: ...

    def public_url(self, object_ref: str) -> str: ...


def new_temporary_id() -> str:
    return f"{TEMPORARY_ID_PREFIX}{secrets.token_hex(8)}"


def is_temporary_id(message_id: str) -> bool:
    return message_id.startswith(TEMPORARY_ID_PREFIX)


def local_attachment_ref(attachment: Attachment) -> str:
    """Reference shown on a pending placeholder until the upload is confirmed."""

    return f"{LOCAL_ATTACHMENT_PREFIX}{attachment.name}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SendPipeline:
    """Optimistic send: placeholder, optional upload, send, reconcile."""

    def __init__(
        self,
        store: ConversationStore,
        sender: MessageSender,
        storage: Optional[ObjectStorage],
        current_user_id: str,
        *,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = new_temporary_id,
    ) -> None:
        self._store = store
        self._sender = sender
        self._storage = storage
        self._current_user_id = current_user_id
        self._clock = clock
        self._id_factory = id_factory

    def attachment_object_name(self, attachment: Attachment) -> str:
        stamp = int(time.time() * 1000)
        name = f"{self._current_user_id}-{stamp}"
        if attachment.extension:
            name += f".{attachment.extension}"
        return name

    async def send(
        self,
        conversation_id: Optional[str],
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        has_text = bool(text and text.strip())
        if not conversation_id:
            raise InvalidInput("no conversation selected")
        if not has_text and attachment is None:
            raise InvalidInput("message needs text or an attachment")
        if attachment is not None and self._storage is None:
            raise InvalidInput("attachments are not configured")

        content = text if has_text else None
        temporary_id = self._id_factory()
        placeholder = Message(
            id=temporary_id,
            conversation_id=conversation_id,
            sender_id=self._current_user_id,
            created_at=self._clock(),
            text_content=content,
            attachment_ref=local_attachment_ref(attachment) if attachment is not None else None,
            pending=True,
        )
        if self._store.append(placeholder) is AppendResult.WRONG_CONVERSATION:
            # The thread still shows another conversation; nothing has left the client yet.
            raise InvalidInput(f"conversation {conversation_id} is not loaded")

        image_url: Optional[str] = None
        if attachment is not None:
            try:
                object_ref = await self._storage.upload(
                    attachment.data,
                    self.attachment_object_name(attachment),
                    attachment.content_type,
                )
                image_url = self._storage.public_url(object_ref)
            except BaseException:
                self._store.replace(temporary_id, None)
                raise

        try:
            confirmed = await self._sender.send_message(
                conversation_id,
                self._current_user_id,
                content=content,
                image_url=image_url,
                client_key=temporary_id,
            )
        except BaseException:
            self._store.replace(temporary_id, None)
            raise

        self._store.replace(temporary_id, confirmed)
        logger.debug("message %s confirmed as %s", temporary_id, confirmed.id)
        return confirmed
