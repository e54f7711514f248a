from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterator, List, Optional, Protocol, Set

import aiohttp

from .api_client import ApiClient
from .attachments import Attachment, AttachmentStorage
from .change_feed import WebSocketChangeFeed
from .composer import SendPipeline
from .config import ClientConfig
from .contact_store import ContactStore
from .conversation_store import ConversationStore
from .errors import StaleEvent
from .models import Contact, Message
from .subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException], None]


class BackendApi(Protocol):
    async def fetch_contacts(self) -> List[Contact]: ...

    async def search_contacts(self, query: str) -> List[Contact]: ...

    async def fetch_messages(self, conversation_id: str, page: int = 1, limit: int = 50) -> List[Message]: ...


def _preview(message: Message) -> str:
    if message.text_content:
        return message.text_content
    if message.attachment_ref:
        return "Image"
    return ""


class SyncOrchestrator:
    """Drives fetch and subscription lifecycle from the contact selection.

    Every selection change tears down the current subscription, fetches the
    newly selected conversation's first page, resets the conversation store
    and opens a subscription for it. Completions that resolve after the
    selection moved on are dropped.
    """

    def __init__(
        self,
        contacts: ContactStore,
        conversation: ConversationStore,
        api: BackendApi,
        subscriptions: SubscriptionManager,
        composer: SendPipeline,
        *,
        page_size: int = 50,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        self.contacts = contacts
        self.conversation = conversation
        self._api = api
        self._subscriptions = subscriptions
        self._composer = composer
        self._page_size = page_size
        self._on_error = on_error
        self._loaded_id: Optional[str] = None
        self._driving_selection = False
        self._tasks: Set[asyncio.Task] = set()
        self._stop_observing: Optional[Callable[[], None]] = None

    @classmethod
    def build(
        cls,
        session: aiohttp.ClientSession,
        config: ClientConfig,
        current_user_id: str,
        *,
        on_error: Optional[ErrorHandler] = None,
    ) -> "SyncOrchestrator":
        contacts = ContactStore()
        conversation = ConversationStore()
        api = ApiClient(session, config.api_url, timeout_s=config.request_timeout_s)
        storage = AttachmentStorage(
            session,
            config.storage_url,
            config.attachment_bucket,
            timeout_s=config.request_timeout_s,
        )
        feed = WebSocketChangeFeed(session, config.feed_url, subscribe_timeout_s=config.subscribe_timeout_s)
        orchestrator: SyncOrchestrator

        def on_message(message: Message) -> None:
            orchestrator.note_message_activity(message)

        subscriptions = SubscriptionManager(
            feed,
            conversation,
            current_user_id,
            merge_own_events=config.merge_own_events,
            on_message=on_message,
        )
        composer = SendPipeline(conversation, api, storage, current_user_id)
        orchestrator = cls(
            contacts,
            conversation,
            api,
            subscriptions,
            composer,
            page_size=config.page_size,
            on_error=on_error,
        )
        return orchestrator

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def loaded_conversation_id(self) -> Optional[str]:
        return self._loaded_id

    async def start(self) -> None:
        if self._stop_observing is None:
            self._stop_observing = self.contacts.add_selection_listener(self._on_selection_changed)
        roster = await self._api.fetch_contacts()
        self.contacts.set_roster(roster)
        logger.info("loaded %d contacts", len(roster))

    async def select(self, contact_id: Optional[str]) -> None:
        """Select ``contact_id`` and wait until its conversation is synchronized."""

        if contact_id is not None and contact_id == self.contacts.selected_id:
            if self._loaded_id != contact_id:
                await self.reload()
            return
        self._driving_selection = True
        try:
            self.contacts.select(contact_id)
        finally:
            self._driving_selection = False
        await self._switch_to(contact_id)

    async def reload(self) -> None:
        await self._switch_to(self.contacts.selected_id)

    async def send(self, text: Optional[str] = None, attachment: Optional[Attachment] = None) -> Message:
        confirmed = await self._composer.send(self.contacts.selected_id, text, attachment)
        self.note_message_activity(confirmed)
        return confirmed

    async def search_contacts(self, query: str) -> List[Contact]:
        return await self._api.search_contacts(query)

    def filtered_contacts(self, query: str) -> Iterator[Contact]:
        return self.contacts.filtered_by(query)

    def note_message_activity(self, message: Message) -> None:
        self.contacts.update_contact(
            message.conversation_id,
            last_message_preview=_preview(message),
            last_message_timestamp=message.created_at,
        )

    async def close(self) -> None:
        if self._stop_observing is not None:
            self._stop_observing()
            self._stop_observing = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._subscriptions.close()
        self.conversation.clear()
        self._loaded_id = None

    def _on_selection_changed(self, previous: Optional[str], current: Optional[str]) -> None:
        if self._driving_selection:
            return
        task = asyncio.create_task(self._switch_in_background(current))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _switch_in_background(self, conversation_id: Optional[str]) -> None:
        try:
            await self._switch_to(conversation_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("switch to %s failed: %s", conversation_id, exc)
            if self._on_error is not None:
                self._on_error(exc)

    async def _switch_to(self, conversation_id: Optional[str]) -> None:
        await self._subscriptions.close()
        if conversation_id is None:
            if self.contacts.selected_id is None:
                self.conversation.clear()
                self._loaded_id = None
            return

        messages = await self._api.fetch_messages(conversation_id, page=1, limit=self._page_size)
        if self.contacts.selected_id != conversation_id:
            logger.debug(
                "dropping page: %s",
                StaleEvent(expected=self.contacts.selected_id, actual=conversation_id),
            )
            return

        self.conversation.reset(conversation_id, messages)
        self._loaded_id = None
        await self._subscriptions.open(conversation_id)
        if self.contacts.selected_id == conversation_id:
            self._loaded_id = conversation_id
