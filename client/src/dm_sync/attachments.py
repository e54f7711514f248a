from __future__ import annotations

import asyncio
import logging
import urllib.parse
from dataclasses import dataclass

import aiohttp

from .errors import UploadFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attachment:
    name: str
    data: bytes
    content_type: str = "application/octet-stream"

    @property
    def extension(self) -> str:
        _, dot, suffix = self.name.rpartition(".")
        return suffix if dot and suffix else ""


class AttachmentStorage:
    """Object storage for message attachments (one bucket, public read)."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        bucket: str,
        *,
        timeout_s: float = 30.0,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._bucket = bucket
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _object_url(self, name: str, *, public: bool = False) -> str:
        prefix = f"{self._base_url}/public" if public else self._base_url
        return f"{prefix}/{urllib.parse.quote(self._bucket, safe='')}/{urllib.parse.quote(name, safe='')}"

    async def upload(self, data: bytes, name: str, content_type: str = "application/octet-stream") -> str:
        """Store ``data`` under ``name`` and return the object reference."""

        try:
            async with self._session.put(
                self._object_url(name),
                data=data,
                headers={"Content-Type": content_type},
                timeout=self._timeout,
            ) as response:
                response.raise_for_status()
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("upload of %s failed: %s", name, exc)
            raise UploadFailed(name, reason=str(exc) or exc.__class__.__name__) from exc
        key = payload.get("key") if isinstance(payload, dict) else None
        if not isinstance(key, str) or not key:
            raise UploadFailed(name, reason="storage response missing key")
        return key

    def public_url(self, object_ref: str) -> str:
        return self._object_url(object_ref, public=True)
