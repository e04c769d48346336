"""
Blob storage for uploaded source files.
"""

import threading
from pathlib import Path
from typing import Protocol


class BlobStore(Protocol):
    def download(self, path: str) -> bytes:
        ...

    def upload(self, path: str, data: bytes) -> None:
        ...


class LocalBlobStore:
    """Blobs as files below a root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target

    def download(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def upload(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class MemoryBlobStore:
    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def download(self, path: str) -> bytes:
        with self._lock:
            if path not in self._blobs:
                raise FileNotFoundError(f"Blob not found: {path}")
            return self._blobs[path]

    def upload(self, path: str, data: bytes) -> None:
        with self._lock:
            self._blobs[path] = bytes(data)
