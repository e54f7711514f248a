"""Error conditions raised by the synchronization core."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for recoverable synchronization failures."""


class FetchFailed(SyncError):
    def __init__(self, what: str, *, conversation_id: str | None = None, reason: str = ""):
        self.what = what
        self.conversation_id = conversation_id
        self.reason = reason
        detail = f"Failed to fetch {what}"
        if conversation_id is not None:
            detail += f" for conversation {conversation_id}"
        if reason:
            detail += f": {reason}"
        super().__init__(detail)


class SubscribeFailed(FetchFailed):
    def __init__(self, conversation_id: str, reason: str = ""):
        super().__init__("change feed subscription", conversation_id=conversation_id, reason=reason)


class SendFailed(SyncError):
    def __init__(self, conversation_id: str, reason: str = ""):
        self.conversation_id = conversation_id
        self.reason = reason
        detail = f"Failed to send message to conversation {conversation_id}"
        if reason:
            detail += f": {reason}"
        super().__init__(detail)


class UploadFailed(SyncError):
    def __init__(self, name: str, reason: str = ""):
        self.name = name
        self.reason = reason
        detail = f"Failed to upload attachment {name}"
        if reason:
            detail += f": {reason}"
        super().__init__(detail)


class InvalidInput(SyncError):
    pass


class StaleEvent(SyncError):
    """A push event or completion that belongs to an abandoned selection.

    Never surfaced to callers; kept so drops can be described uniformly in logs.
    """

    def __init__(self, *, expected: str | None, actual: str | None):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Stale event for conversation {actual} (active={expected})")
