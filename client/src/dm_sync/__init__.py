"""Real-time conversation synchronization core for the direct-messaging client."""

from .attachments import Attachment, AttachmentStorage
from .api_client import ApiClient
from .change_feed import FeedEvent, FeedSubscription, WebSocketChangeFeed
from .composer import SendPipeline
from .config import ClientConfig, load_client_config_from_env
from .contact_store import ContactStore
from .conversation_store import AppendResult, ConversationStore
from .errors import (
    FetchFailed,
    InvalidInput,
    SendFailed,
    StaleEvent,
    SubscribeFailed,
    SyncError,
    UploadFailed,
)
from .models import Contact, Message
from .orchestrator import SyncOrchestrator
from .subscriptions import SubscriptionManager, SubscriptionState

__all__ = [
    "ApiClient",
    "AppendResult",
    "Attachment",
    "AttachmentStorage",
    "ClientConfig",
    "Contact",
    "ContactStore",
    "ConversationStore",
    "FeedEvent",
    "FeedSubscription",
    "FetchFailed",
    "InvalidInput",
    "Message",
    "SendFailed",
    "SendPipeline",
    "StaleEvent",
    "SubscribeFailed",
    "SubscriptionManager",
    "SubscriptionState",
    "SyncError",
    "SyncOrchestrator",
    "UploadFailed",
    "WebSocketChangeFeed",
    "load_client_config_from_env",
]
