"""
Object storage for uploaded files.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict
from uuid import uuid4
import logging
import re
import threading

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def object_key(user_id: str, filename: str) -> str:
    safe_name = _UNSAFE.sub("_", Path(filename).name) or "upload"
    return f"{_UNSAFE.sub('_', user_id)}/{uuid4().hex}_{safe_name}"


class ObjectStorage(ABC):

    @abstractmethod
    def put(self, user_id: str, filename: str, data: bytes) -> str:
        """Store bytes and return the object path."""

    @abstractmethod
    def get(self, path: str) -> bytes:
        ...

    @abstractmethod
    def delete(self, path: str) -> None:
        ...


class LocalObjectStorage(ObjectStorage):

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _full_path(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if self.root not in full.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return full

    def put(self, user_id: str, filename: str, data: bytes) -> str:
        key = object_key(user_id, filename)
        full = self._full_path(key)
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(data)
        logger.info(f"Stored {len(data)} bytes at {key}")
        return key

    def get(self, path: str) -> bytes:
        return self._full_path(path).read_bytes()

    def delete(self, path: str) -> None:
        self._full_path(path).unlink(missing_ok=True)


class MemoryObjectStorage(ObjectStorage):

    def __init__(self):
        self._lock = threading.Lock()
        self.objects: Dict[str, bytes] = {}

    def put(self, user_id: str, filename: str, data: bytes) -> str:
        key = object_key(user_id, filename)
        with self._lock:
            self.objects[key] = bytes(data)
        return key

    def get(self, path: str) -> bytes:
        with self._lock:
            return self.objects[path]

    def delete(self, path: str) -> None:
        with self._lock:
            self.objects.pop(path, None)
