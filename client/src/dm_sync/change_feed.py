"""WebSocket change-feed transport: one socket per topic subscription."""

from __future__ import annotations

import asyncio
import collections
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional

import aiohttp

from .errors import SubscribeFailed
from .models import Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedEvent:
    conversation_id: str
    message: Message
    event: str = "insert"


def _frame(frame_type: str, body: Dict[str, Any] | None = None, request_id: str | None = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": 1, "t": frame_type, "body": body or {}}
    if request_id is not None:
        frame["id"] = request_id
    return frame


def _decode_insert(body: Dict[str, Any]) -> Optional[FeedEvent]:
    try:
        message = Message.from_wire(body.get("message") or {})
    except ValueError as exc:
        logger.warning("ignoring malformed feed row: %s", exc)
        return None
    topic = body.get("topic")
    return FeedEvent(conversation_id=str(topic) if topic else message.conversation_id, message=message)


class FeedSubscription:
    """Acknowledged subscription to one topic.

    Iterate with ``async for`` to receive insert events; ``close`` unsubscribes
    and releases the socket. Iteration ends when the socket goes away.
    """

    def __init__(self, ws: aiohttp.ClientWebSocketResponse, topic: str) -> None:
        self.topic = topic
        self._ws = ws
        self._buffered: Deque[FeedEvent] = collections.deque()
        self._closed = False
        self.lost = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "FeedSubscription":
        return self

    async def __anext__(self) -> FeedEvent:
        while True:
            if self._buffered:
                return self._buffered.popleft()
            if self._closed:
                raise StopAsyncIteration
            frame = await self._receive_frame()
            if frame is None:
                raise StopAsyncIteration
            event = await self._handle_frame(frame)
            if event is not None:
                return event

    async def _receive_frame(self) -> Optional[Dict[str, Any]]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    logger.warning("ignoring non-JSON feed frame on %s", self.topic)
                    continue
                if isinstance(frame, dict):
                    return frame
                continue
            if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED}:
                if not self._closed:
                    self.lost = True
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("feed socket error on %s: %s", self.topic, self._ws.exception())
                self.lost = True
                return None

    async def _handle_frame(self, frame: Dict[str, Any]) -> Optional[FeedEvent]:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type == "feed.insert":
            return _decode_insert(body)
        if frame_type == "ping":
            await self._ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
        elif frame_type == "error":
            logger.warning("feed error on %s: %s", self.topic, body.get("message") or body.get("code"))
        elif frame_type == "feed.unsubscribed":
            self._closed = True
        return None

    async def wait_acknowledged(self, request_id: str) -> None:
        while True:
            frame = await self._receive_frame()
            if frame is None:
                raise SubscribeFailed(self.topic, reason="feed closed before acknowledgement")
            frame_type = frame.get("t")
            body = frame.get("body") or {}
            if frame_type == "feed.subscribed" and body.get("topic") == self.topic:
                return
            if frame_type == "error" and frame.get("id") in {request_id, None}:
                raise SubscribeFailed(self.topic, reason=str(body.get("message") or body.get("code")))
            event = await self._handle_frame(frame)
            if event is not None:
                self._buffered.append(event)

    async def close(self) -> None:
        if self._ws.closed:
            self._closed = True
            return
        if not self._closed:
            self._closed = True
            try:
                await self._ws.send_json(_frame("feed.unsubscribe", {"topic": self.topic}))
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                logger.debug("unsubscribe from %s not delivered: %s", self.topic, exc)
        await self._ws.close()


class WebSocketChangeFeed:
    def __init__(self, session: aiohttp.ClientSession, url: str, *, subscribe_timeout_s: float = 10.0) -> None:
        self._session = session
        self._url = url
        self._subscribe_timeout_s = subscribe_timeout_s

    async def subscribe(self, topic: str) -> FeedSubscription:
        """Open a subscription and wait for the server acknowledgement."""

        try:
            return await asyncio.wait_for(self._open(topic), self._subscribe_timeout_s)
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as exc:
            reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc) or exc.__class__.__name__
            logger.warning("subscribe to %s failed: %s", topic, reason)
            raise SubscribeFailed(topic, reason=reason) from exc

    async def _open(self, topic: str) -> FeedSubscription:
        ws = await self._session.ws_connect(self._url)
        subscription = FeedSubscription(ws, topic)
        try:
            request_id = secrets.token_hex(4)
            await ws.send_json(_frame("feed.subscribe", {"topic": topic}, request_id))
            await subscription.wait_acknowledged(request_id)
        except BaseException:
            await ws.close()
            raise
        return subscription
