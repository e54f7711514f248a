"""In-memory doubles for the backend API, object storage and change feed."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from dm_sync.change_feed import FeedEvent
from dm_sync.errors import FetchFailed, SendFailed, UploadFailed
from dm_sync.models import Contact, Message

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
_END = object()


def make_message(
    message_id: str,
    t: int,
    *,
    conversation_id: str = "c1",
    sender_id: str = "peer",
    text: Optional[str] = "hello",
) -> Message:
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        created_at=BASE_TIME + timedelta(seconds=t),
        text_content=text,
    )


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeSubscription:
    def __init__(self, topic: str) -> None:
        self.topic = topic
        self.closed = False
        self.lost = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def __aiter__(self) -> "FakeSubscription":
        return self

    async def __anext__(self) -> FeedEvent:
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item

    def push(self, event: FeedEvent) -> None:
        self._queue.put_nowait(event)

    def end(self, *, lost: bool = True) -> None:
        self.lost = lost
        self._queue.put_nowait(_END)

    async def close(self) -> None:
        self.closed = True


class FakeFeed:
    def __init__(self) -> None:
        self.subscriptions: List[FakeSubscription] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.fail_with: Optional[BaseException] = None

    @property
    def open_subscriptions(self) -> List[FakeSubscription]:
        return [sub for sub in self.subscriptions if not sub.closed]

    async def subscribe(self, topic: str) -> FakeSubscription:
        gate = self.gates.get(topic)
        if gate is not None:
            await gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        subscription = FakeSubscription(topic)
        self.subscriptions.append(subscription)
        return subscription

    def publish(self, message: Message, topic: Optional[str] = None) -> None:
        topic = topic or message.conversation_id
        for subscription in self.open_subscriptions:
            if subscription.topic == topic:
                subscription.push(FeedEvent(conversation_id=topic, message=message))


class FakeApi:
    def __init__(
        self,
        contacts: Iterable[Contact] = (),
        pages: Optional[Dict[str, List[Message]]] = None,
    ) -> None:
        self.contacts = list(contacts)
        self.pages: Dict[str, List[Message]] = dict(pages or {})
        self.fetch_calls: List[tuple] = []
        self.fetch_gates: Dict[str, asyncio.Event] = {}
        self.failing_fetches: set = set()
        self.fail_contacts = False
        self.sent: List[dict] = []
        self.send_gate: Optional[asyncio.Event] = None
        self.fail_send = False
        self.on_send: Optional[Callable[[Message], None]] = None
        self.confirmed_by_key: Dict[str, Message] = {}
        self._next_id = 1

    async def fetch_contacts(self) -> List[Contact]:
        if self.fail_contacts:
            raise FetchFailed("contacts", reason="boom")
        return list(self.contacts)

    async def search_contacts(self, query: str) -> List[Contact]:
        return [contact for contact in self.contacts if query.lower() in contact.display_name.lower()]

    async def fetch_messages(self, conversation_id: str, page: int = 1, limit: int = 50) -> List[Message]:
        self.fetch_calls.append((conversation_id, page, limit))
        gate = self.fetch_gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        if conversation_id in self.failing_fetches:
            raise FetchFailed("messages", conversation_id=conversation_id, reason="boom")
        return list(self.pages.get(conversation_id, []))

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
        client_key: Optional[str] = None,
    ) -> Message:
        self.sent.append(
            {
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "content": content,
                "image_url": image_url,
                "client_key": client_key,
            }
        )
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.fail_send:
            raise SendFailed(conversation_id, reason="boom")
        if client_key is not None and client_key in self.confirmed_by_key:
            return self.confirmed_by_key[client_key]
        confirmed = Message(
            id=f"srv-{self._next_id}",
            conversation_id=conversation_id,
            sender_id=sender_id,
            created_at=BASE_TIME + timedelta(minutes=10, seconds=self._next_id),
            text_content=content,
            attachment_ref=image_url,
        )
        self._next_id += 1
        if client_key is not None:
            self.confirmed_by_key[client_key] = confirmed
        if self.on_send is not None:
            self.on_send(confirmed)
        return confirmed


class FakeStorage:
    def __init__(self) -> None:
        self.uploads: List[tuple] = []
        self.fail = False

    async def upload(self, data: bytes, name: str, content_type: str = "application/octet-stream") -> str:
        self.uploads.append((name, data, content_type))
        if self.fail:
            raise UploadFailed(name, reason="boom")
        return name

    def public_url(self, object_ref: str) -> str:
        return f"https://cdn.test/message-images/{object_ref}"
