"""Reference messaging backend used for local development and integration tests."""

from .hub import Subscription, TopicHub
from .log import MessageLog, MessageRecord
from .server import create_app, main
from .storage import BlobStore

__all__ = [
    "BlobStore",
    "MessageLog",
    "MessageRecord",
    "Subscription",
    "TopicHub",
    "create_app",
    "main",
]
