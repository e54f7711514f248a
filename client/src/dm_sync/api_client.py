"""aiohttp client for the messaging backend REST API."""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import FetchFailed, SendFailed
from .models import Contact, Message

logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _describe(exc: BaseException) -> str:
    if isinstance(exc, aiohttp.ClientResponseError):
        return f"HTTP {exc.status} {exc.message}".strip()
    if isinstance(exc, asyncio.TimeoutError):
        return "request timed out"
    return str(exc) or exc.__class__.__name__


class ApiClient:
    def __init__(self, session: aiohttp.ClientSession, base_url: str, *, timeout_s: float = 10.0) -> None:
        self._session = session
        self._base_url = base_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        url = _build_url(self._base_url, path)
        async with self._session.get(url, params=params, timeout=self._timeout) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def _post_json(self, path: str, payload: Dict[str, object]) -> Any:
        url = _build_url(self._base_url, path)
        async with self._session.post(url, json=payload, timeout=self._timeout) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def _fetch_contacts(self, path: str, params: Optional[Dict[str, str]], what: str) -> List[Contact]:
        try:
            payload = await self._get_json(path, params)
            if not isinstance(payload, list):
                raise ValueError("expected a list of contacts")
            return [Contact.from_wire(item) for item in payload]
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("%s fetch failed: %s", what, _describe(exc))
            raise FetchFailed(what, reason=_describe(exc)) from exc

    async def fetch_contacts(self) -> List[Contact]:
        return await self._fetch_contacts("/contacts", None, "contacts")

    async def search_contacts(self, query: str) -> List[Contact]:
        return await self._fetch_contacts("/contacts/search", {"q": query}, "contact search")

    async def fetch_messages(self, conversation_id: str, page: int = 1, limit: int = 50) -> List[Message]:
        path = f"/messages/{urllib.parse.quote(conversation_id, safe='')}"
        try:
            payload = await self._get_json(path, {"page": str(page), "limit": str(limit)})
            if not isinstance(payload, list):
                raise ValueError("expected a list of messages")
            return [Message.from_wire(item) for item in payload]
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("message page fetch for %s failed: %s", conversation_id, _describe(exc))
            raise FetchFailed("messages", conversation_id=conversation_id, reason=_describe(exc)) from exc

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
        client_key: Optional[str] = None,
    ) -> Message:
        """Persist a message; a repeated ``client_key`` returns the original record."""

        payload: Dict[str, object] = {"conversationId": conversation_id, "senderId": sender_id}
        if content is not None:
            payload["content"] = content
        payload["imageUrl"] = image_url
        if client_key is not None:
            payload["clientKey"] = client_key
        try:
            return Message.from_wire(await self._post_json("/messages", payload))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("send to %s failed: %s", conversation_id, _describe(exc))
            raise SendFailed(conversation_id, reason=_describe(exc)) from exc
