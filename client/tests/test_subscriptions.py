import asyncio
import unittest

from dm_sync.change_feed import FeedEvent
from dm_sync.conversation_store import ConversationStore
from dm_sync.errors import SubscribeFailed
from dm_sync.subscriptions import SubscriptionManager, SubscriptionState

from sync_fakes import FakeFeed, make_message, settle


class TestSubscriptionManager(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.feed = FakeFeed()
        self.store = ConversationStore()
        self.received = []
        self.manager = SubscriptionManager(self.feed, self.store, "me", on_message=self.received.append)

    async def asyncTearDown(self):
        await self.manager.close()

    async def test_open_activates_and_appends_pushed_messages(self):
        self.store.reset("A", [])
        await self.manager.open("A")

        self.assertIs(self.manager.state, SubscriptionState.ACTIVE)
        self.assertEqual(self.manager.active_conversation_id, "A")

        self.feed.publish(make_message("1", 1, conversation_id="A"))
        self.feed.publish(make_message("1", 1, conversation_id="A"))
        await settle()

        self.assertEqual([m.id for m in self.store.messages], ["1"])
        self.assertEqual([m.id for m in self.received], ["1"])

    async def test_self_authored_events_are_dropped(self):
        self.store.reset("A", [])
        await self.manager.open("A")

        self.feed.publish(make_message("mine", 1, conversation_id="A", sender_id="me"))
        await settle()

        self.assertEqual(len(self.store), 0)
        self.assertEqual(self.manager.dropped_own, 1)

    async def test_self_authored_events_merge_when_enabled(self):
        manager = SubscriptionManager(self.feed, self.store, "me", merge_own_events=True)
        self.store.reset("A", [])
        await manager.open("A")

        self.feed.publish(make_message("mine", 1, conversation_id="A", sender_id="me"))
        await settle()
        await manager.close()

        self.assertEqual([m.id for m in self.store.messages], ["mine"])

    async def test_switch_leaves_exactly_one_subscription(self):
        self.store.reset("A", [])
        await self.manager.open("A")
        first = self.feed.open_subscriptions[0]

        self.store.reset("B", [])
        await self.manager.open("B")

        self.assertTrue(first.closed)
        self.assertEqual([sub.topic for sub in self.feed.open_subscriptions], ["B"])
        self.assertEqual(self.manager.active_conversation_id, "B")

        first.push(FeedEvent(conversation_id="A", message=make_message("late", 5, conversation_id="A")))
        self.feed.publish(make_message("b1", 6, conversation_id="B"))
        await settle()

        self.assertEqual([m.id for m in self.store.messages], ["b1"])

    async def test_event_for_other_conversation_is_stale(self):
        self.store.reset("B", [])
        await self.manager.open("B")

        changed = self.manager.handle_event(
            FeedEvent(conversation_id="A", message=make_message("x", 1, conversation_id="A"))
        )

        self.assertFalse(changed)
        self.assertEqual(self.manager.dropped_stale, 1)
        self.assertEqual(len(self.store), 0)

    async def test_events_are_dropped_until_acknowledged(self):
        self.store.reset("A", [])
        self.feed.gates["A"] = asyncio.Event()
        opening = asyncio.create_task(self.manager.open("A"))
        await settle()

        self.assertIs(self.manager.state, SubscriptionState.SUBSCRIBING)
        self.assertFalse(
            self.manager.handle_event(FeedEvent(conversation_id="A", message=make_message("1", 1, conversation_id="A")))
        )

        self.feed.gates["A"].set()
        await opening
        self.assertIs(self.manager.state, SubscriptionState.ACTIVE)

    async def test_reopening_same_conversation_is_noop(self):
        self.store.reset("A", [])
        await self.manager.open("A")
        await self.manager.open("A")

        self.assertEqual(len(self.feed.subscriptions), 1)

    async def test_superseded_subscription_is_discarded(self):
        self.feed.gates["A"] = asyncio.Event()
        opening_a = asyncio.create_task(self.manager.open("A"))
        await settle()
        opening_b = asyncio.create_task(self.manager.open("B"))
        await settle()

        self.feed.gates["A"].set()
        await asyncio.gather(opening_a, opening_b)

        self.assertEqual([sub.topic for sub in self.feed.subscriptions], ["A", "B"])
        self.assertTrue(self.feed.subscriptions[0].closed)
        self.assertEqual([sub.topic for sub in self.feed.open_subscriptions], ["B"])
        self.assertEqual(self.manager.active_conversation_id, "B")

    async def test_subscribe_failure_returns_to_idle(self):
        self.feed.fail_with = SubscribeFailed("A", reason="refused")

        with self.assertRaises(SubscribeFailed):
            await self.manager.open("A")

        self.assertIs(self.manager.state, SubscriptionState.IDLE)
        self.assertIsNone(self.manager.conversation_id)

    async def test_feed_end_returns_to_idle(self):
        self.store.reset("A", [])
        await self.manager.open("A")
        subscription = self.feed.open_subscriptions[0]

        with self.assertLogs("dm_sync.subscriptions", level="WARNING"):
            subscription.end()
            await settle()

        self.assertIs(self.manager.state, SubscriptionState.IDLE)
        self.assertTrue(subscription.closed)

    async def test_clean_feed_end_is_not_reported_as_lost(self):
        self.store.reset("A", [])
        await self.manager.open("A")
        subscription = self.feed.open_subscriptions[0]

        with self.assertLogs("dm_sync.subscriptions", level="INFO") as logs:
            subscription.end(lost=False)
            await settle()

        self.assertIs(self.manager.state, SubscriptionState.IDLE)
        self.assertTrue(any("ended" in line for line in logs.output))
        self.assertFalse(any(line.startswith("WARNING") for line in logs.output))

    async def test_close_tears_down(self):
        self.store.reset("A", [])
        await self.manager.open("A")

        await self.manager.close()

        self.assertIs(self.manager.state, SubscriptionState.IDLE)
        self.assertEqual(self.feed.open_subscriptions, [])


if __name__ == "__main__":
    unittest.main()
