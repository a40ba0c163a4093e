"""
Utility functions for the edit worker.
"""

import io
import re
import tarfile
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional


def make_tar_bytes(files: Dict[str, str]) -> bytes:
    """
    Create an in-memory tar archive from a dictionary of files.

    Intermediate directories are created on extraction, so paths may be nested.

    Args:
        files: Dictionary mapping file paths to file contents

    Returns:
        Bytes of the tar archive
    """
    buffer = io.BytesIO()
    now = int(time.time())

    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for path, content in files.items():
            # Normalize path separators and strip leading slash
            normalized_path = path.replace("\\", "/").lstrip("/")
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name=normalized_path)
            info.size = len(data)
            info.mtime = now
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))

    buffer.seek(0)
    return buffer.getvalue()


def read_tar_file(chunks: Iterable[bytes], name: str) -> Optional[str]:
    """
    Extract the top-level regular file ``name`` from a tar stream as UTF-8 text.

    An archive of a directory holds the directory entry plus its contents;
    none of those count, so only an exact top-level match is returned.

    Args:
        chunks: The archive stream, as returned by the Docker archive API
        name: Basename of the archived path

    Returns:
        The file content, or None if ``name`` is not a regular file
    """
    buffer = io.BytesIO(b"".join(chunks))

    with tarfile.open(fileobj=buffer, mode="r") as tar:
        for member in tar.getmembers():
            if member.name != name or not member.isfile():
                continue
            extracted = tar.extractfile(member)
            if extracted is None:
                continue
            return extracted.read().decode("utf-8", errors="replace")

    return None


def safe_container_name(key: str, prefix: str = "sandbox") -> str:
    """
    Derive a Docker-safe container name from a project key.

    Args:
        key: The project identifier

    Returns:
        A deterministic name usable as a container name
    """
    # Replace anything Docker rejects with hyphens
    name = re.sub(r"[^a-zA-Z0-9_.-]", "-", key.strip())

    # Collapse runs and trim
    name = re.sub(r"-{2,}", "-", name).strip("-.")

    if not name:
        name = "default"

    return f"{prefix}-{name.lower()}"[:128]


def truncate_output(text: str, limit: int = 20000) -> str:
    """Keep the tail of long command output so it fits in model context."""
    if len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"[... {dropped} characters truncated ...]\n" + text[-limit:]


class KeyedLocks:
    """A lock per key, created on first use. Different keys never block each other."""

    def __init__(self):
        self._lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.lock_for(key):
            yield
