from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    content_type: str


class BlobStore:
    """Bucketed in-memory object storage for attachments."""

    def __init__(self, max_object_bytes: int = 10 * 1024 * 1024) -> None:
        self.max_object_bytes = max_object_bytes
        self._objects: Dict[Tuple[str, str], StoredObject] = {}

    def put(self, bucket: str, name: str, data: bytes, content_type: str) -> str:
        if not bucket or not name:
            raise ValueError("bucket and name required")
        if len(data) > self.max_object_bytes:
            raise ValueError("object too large")
        if (bucket, name) in self._objects:
            raise ValueError("object already exists")
        self._objects[(bucket, name)] = StoredObject(data=data, content_type=content_type)
        return name

    def get(self, bucket: str, name: str) -> Optional[StoredObject]:
        return self._objects.get((bucket, name))
