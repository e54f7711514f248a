from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

Callback = Callable[[Dict[str, Any]], None]


@dataclass(eq=False)
class Subscription:
    topic: str
    callback: Callback

    def deliver(self, event: Dict[str, Any]) -> None:
        self.callback(event)


class TopicHub:
    """Registers topic subscriptions and broadcasts change events to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: Callback) -> Subscription:
        subscription = Subscription(topic=topic, callback=callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

    def broadcast(self, topic: str, event: Dict[str, Any]) -> int:
        delivered = 0
        for subscription in list(self._subscriptions.get(topic, [])):
            subscription.deliver(event)
            delivered += 1
        return delivered
