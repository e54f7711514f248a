from __future__ import annotations

import os
import urllib.parse
from dataclasses import dataclass

DEFAULT_API_URL = "http://localhost:3001"
DEFAULT_ATTACHMENT_BUCKET = "message-images"


@dataclass(frozen=True)
class ClientConfig:
    api_url: str = DEFAULT_API_URL
    feed_url: str = ""
    storage_url: str = ""
    attachment_bucket: str = DEFAULT_ATTACHMENT_BUCKET
    page_size: int = 50
    request_timeout_s: float = 10.0
    subscribe_timeout_s: float = 10.0
    merge_own_events: bool = False

    def __post_init__(self) -> None:
        api_url = self.api_url.rstrip("/")
        object.__setattr__(self, "api_url", api_url)
        if not self.feed_url:
            object.__setattr__(self, "feed_url", default_feed_url(api_url))
        if not self.storage_url:
            object.__setattr__(self, "storage_url", f"{api_url}/storage")
        object.__setattr__(self, "storage_url", self.storage_url.rstrip("/"))
        if self.page_size < 1:
            raise ValueError("page_size must be positive")


def default_feed_url(api_url: str) -> str:
    parts = urllib.parse.urlsplit(api_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/v1/feed"
    return urllib.parse.urlunsplit((scheme, parts.netloc, path, "", ""))


def _parse_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 1:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def load_client_config_from_env() -> ClientConfig:
    return ClientConfig(
        api_url=_parse_str("DM_SYNC_API_URL", DEFAULT_API_URL),
        feed_url=_parse_str("DM_SYNC_FEED_URL", ""),
        storage_url=_parse_str("DM_SYNC_STORAGE_URL", ""),
        attachment_bucket=_parse_str("DM_SYNC_ATTACHMENT_BUCKET", DEFAULT_ATTACHMENT_BUCKET),
        page_size=_parse_positive_int("DM_SYNC_PAGE_SIZE", 50),
        request_timeout_s=_parse_positive_float("DM_SYNC_REQUEST_TIMEOUT_S", 10.0),
        subscribe_timeout_s=_parse_positive_float("DM_SYNC_SUBSCRIBE_TIMEOUT_S", 10.0),
        merge_own_events=_parse_bool01("DM_SYNC_MERGE_OWN_EVENTS", False),
    )
