from __future__ import annotations

import asyncio
import enum
import logging
from typing import AsyncIterator, Callable, Optional, Protocol

from .change_feed import FeedEvent
from .conversation_store import AppendResult, ConversationStore
from .errors import StaleEvent
from .models import Message

logger = logging.getLogger(__name__)


class Subscription(Protocol):
    topic: str
    lost: bool

    def __aiter__(self) -> AsyncIterator[FeedEvent]: ...

    async def close(self) -> None: ...


class ChangeFeed(Protocol):
    async def subscribe(self, topic: str) -> Subscription: ...


class SubscriptionState(enum.Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"


class SubscriptionManager:
    """Keeps at most one change-feed subscription open, for the active conversation.

    ``open`` and ``close`` are serialized: the previous subscription is torn
    down (pump task cancelled, topic unsubscribed) before a new one is
    requested. A subscription acknowledged after its conversation was
    superseded is closed straight away.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        store: ConversationStore,
        current_user_id: str,
        *,
        merge_own_events: bool = False,
        on_message: Optional[Callable[[Message], None]] = None,
    ) -> None:
        self._feed = feed
        self._store = store
        self._current_user_id = current_user_id
        self._merge_own_events = merge_own_events
        self._on_message = on_message
        self._lock = asyncio.Lock()
        self._state = SubscriptionState.IDLE
        self._conversation_id: Optional[str] = None
        self._target: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._pump_task: asyncio.Task | None = None
        self.dropped_stale = 0
        self.dropped_own = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def active_conversation_id(self) -> Optional[str]:
        if self._state is SubscriptionState.ACTIVE:
            return self._conversation_id
        return None

    async def open(self, conversation_id: str) -> None:
        self._target = conversation_id
        async with self._lock:
            if self._target != conversation_id:
                logger.debug("skipping subscribe to %s: superseded by %s", conversation_id, self._target)
                return
            if self._state is SubscriptionState.ACTIVE and self._conversation_id == conversation_id:
                return
            await self._teardown()

            self._state = SubscriptionState.SUBSCRIBING
            self._conversation_id = conversation_id
            try:
                subscription = await self._feed.subscribe(conversation_id)
            except BaseException:
                self._state = SubscriptionState.IDLE
                self._conversation_id = None
                raise

            if self._target != conversation_id:
                logger.info("discarding subscription to %s: selection moved on", conversation_id)
                self._state = SubscriptionState.IDLE
                self._conversation_id = None
                await subscription.close()
                return

            self._subscription = subscription
            self._state = SubscriptionState.ACTIVE
            self._pump_task = asyncio.create_task(self._pump(subscription))
            logger.info("subscribed to %s", conversation_id)

    async def close(self) -> None:
        self._target = None
        async with self._lock:
            if self._target is not None:
                return
            await self._teardown()

    def handle_event(self, event: FeedEvent) -> bool:
        """Apply one inbound event; returns ``True`` when the store changed."""

        active = self.active_conversation_id
        if active is None or event.conversation_id != active:
            self.dropped_stale += 1
            logger.debug("dropping feed event: %s", StaleEvent(expected=active, actual=event.conversation_id))
            return False

        message = event.message
        if message.sender_id == self._current_user_id and not self._merge_own_events:
            self.dropped_own += 1
            return False

        result = self._store.append(message)
        if result is AppendResult.WRONG_CONVERSATION:
            self.dropped_stale += 1
            logger.debug(
                "dropping feed event: %s",
                StaleEvent(expected=self._store.conversation_id, actual=message.conversation_id),
            )
            return False
        if result is AppendResult.APPENDED and self._on_message is not None:
            self._on_message(message)
        return result is AppendResult.APPENDED

    async def _teardown(self) -> None:
        task, self._pump_task = self._pump_task, None
        subscription, self._subscription = self._subscription, None
        previous = self._conversation_id
        self._state = SubscriptionState.IDLE
        self._conversation_id = None

        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if subscription is not None:
            await subscription.close()
            logger.info("unsubscribed from %s", previous)

    async def _pump(self, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("change feed for %s failed", subscription.topic)

        if self._subscription is subscription:
            if subscription.lost:
                logger.warning("change feed for %s lost; subscription is idle", subscription.topic)
            else:
                logger.info("change feed for %s ended; subscription is idle", subscription.topic)
            self._subscription = None
            self._pump_task = None
            self._state = SubscriptionState.IDLE
            self._conversation_id = None
            await subscription.close()
