"""Reference messaging backend: REST API, attachment storage and change feed."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, Iterable, List, Union

from aiohttp import WSMsgType, web

from .hub import Subscription, TopicHub
from .log import MessageLog, _now_ms
from .storage import BlobStore

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        *,
        contacts: List[Dict[str, Any]],
        log: MessageLog,
        hub: TopicHub,
        blobs: BlobStore,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.contacts = contacts
        self.log = log
        self.hub = hub
        self.blobs = blobs
        self.now = now_func


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _not_found(message: str) -> web.Response:
    return web.json_response({"code": "not_found", "message": message}, status=404)


def _parse_positive_query(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    value = int(raw)
    if value < 1:
        raise ValueError(f"{name} must be positive")
    return value


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_contacts(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    return web.json_response(runtime.contacts)


async def handle_contacts_search(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    needle = request.query.get("q", "").casefold()
    matches = [contact for contact in runtime.contacts if needle in str(contact.get("name", "")).casefold()]
    return web.json_response(matches)


async def handle_messages_page(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    conversation_id = request.match_info["conversation_id"]
    try:
        page = _parse_positive_query(request, "page", 1)
        limit = min(_parse_positive_query(request, "limit", 50), 500)
    except ValueError:
        return _invalid_request("page and limit must be positive integers")
    records = runtime.log.page(conversation_id, page=page, limit=limit)
    return web.json_response([record.to_json() for record in records])


async def handle_message_send(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("body must be an object")

    conversation_id = body.get("conversationId")
    sender_id = body.get("senderId")
    content = body.get("content")
    image_url = body.get("imageUrl")
    client_key = body.get("clientKey")
    if not isinstance(conversation_id, str) or not conversation_id:
        return _invalid_request("conversationId required")
    if not isinstance(sender_id, str) or not sender_id:
        return _invalid_request("senderId required")
    if content is not None and not isinstance(content, str):
        return _invalid_request("content must be a string")
    if image_url is not None and not isinstance(image_url, str):
        return _invalid_request("imageUrl must be a string")
    if not (content and content.strip()) and not image_url:
        return _invalid_request("content or imageUrl required")
    if client_key is not None and not isinstance(client_key, str):
        return _invalid_request("clientKey must be a string")

    record, created = runtime.log.append(
        conversation_id,
        sender_id,
        content or None,
        image_url or None,
        runtime.now(),
        client_key=client_key,
    )
    if created:
        runtime.hub.broadcast(conversation_id, {"event": "insert", "message": record.to_json()})
    return web.json_response(record.to_json())


async def handle_object_put(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    bucket = request.match_info["bucket"]
    name = request.match_info["name"]
    data = await request.read()
    content_type = request.headers.get("Content-Type", "application/octet-stream")
    try:
        key = runtime.blobs.put(bucket, name, data, content_type)
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response({"key": key})


async def handle_object_get(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    stored = runtime.blobs.get(request.match_info["bucket"], request.match_info["name"])
    if stored is None:
        return _not_found("object not found")
    return web.Response(body=stored.data, content_type=stored.content_type)


def create_app(
    *,
    contacts: Iterable[Dict[str, Any]] = (),
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    now_func: Callable[[], int] = _now_ms,
) -> web.Application:
    runtime = Runtime(
        contacts=[dict(contact) for contact in contacts],
        log=MessageLog(),
        hub=TopicHub(),
        blobs=BlobStore(),
        now_func=now_func,
    )
    app = web.Application(client_max_size=max(max_msg_size, runtime.blobs.max_object_bytes))
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/contacts", handle_contacts)
    app.router.add_get("/contacts/search", handle_contacts_search)
    app.router.add_get("/messages/{conversation_id}", handle_messages_page)
    app.router.add_post("/messages", handle_message_send)
    app.router.add_put("/storage/{bucket}/{name}", handle_object_put)
    app.router.add_get("/storage/public/{bucket}/{name}", handle_object_get)
    app.router.add_get("/v1/feed", feed_handler)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def feed_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, Subscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def deliver_for(topic: str) -> Callable[[Dict[str, Any]], None]:
        def deliver(event: Dict[str, Any]) -> None:
            enqueue({"v": 1, "t": "feed.insert", "body": {"topic": topic, "message": event["message"]}})

        return deliver

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                if frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}
                topic = body.get("topic") if isinstance(body, dict) else None

                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                elif frame_type == "feed.subscribe":
                    if not isinstance(topic, str) or not topic:
                        enqueue(_error_frame("invalid_request", "topic required", request_id=frame.get("id")))
                        continue
                    enqueue({"v": 1, "t": "feed.subscribed", "id": frame.get("id"), "body": {"topic": topic}})
                    if topic not in subscriptions:
                        subscriptions[topic] = runtime.hub.subscribe(topic, deliver_for(topic))
                        logger.info("feed subscribed to %s", topic)
                elif frame_type == "feed.unsubscribe":
                    subscription = subscriptions.pop(topic, None) if isinstance(topic, str) else None
                    if subscription is not None:
                        runtime.hub.unsubscribe(subscription)
                        logger.info("feed unsubscribed from %s", topic)
                    enqueue({"v": 1, "t": "feed.unsubscribed", "id": frame.get("id"), "body": {"topic": topic}})
                else:
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            runtime.hub.unsubscribe(subscription)
        subscriptions.clear()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws


def _load_contacts(path: str | None) -> List[Dict[str, Any]]:
    if path is None:
        return []
    with open(path, "r", encoding="utf-8") as handle:
        parsed = json.load(handle)
    if not isinstance(parsed, list) or any(not isinstance(item, dict) for item in parsed):
        raise ValueError("contacts file must hold a JSON list of objects")
    return parsed


def main(argv: list[str] | None = None) -> int:
    """Entry point for the reference backend CLI."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Reference messaging backend")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp backend")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=3001, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=30, help="Seconds between feed heartbeat pings")
    serve_parser.add_argument("--contacts", type=str, default=None, help="Path to a JSON file with the roster")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app(contacts=_load_contacts(args.contacts), ping_interval_s=args.ping_interval)
    web.run_app(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
