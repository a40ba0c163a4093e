"""
Status Cache Reconciler - Answer "is this project's preview still live?".

A preview URL is cached when setup succeeds. Status checks read the cache
first and only contact the sandbox when a URL is cached; a dead sandbox
clears its entry so the next setup provisions fresh.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Protocol

from edit_worker.schemas import StatusResult

logger = logging.getLogger(__name__)


# =============================================================================
# PREVIEW CACHE
# =============================================================================

@dataclass
class PreviewCacheEntry:
    """Cached preview URL for a project."""
    project_id: str
    preview_url: str
    cached_at: str  # ISO format

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "PreviewCacheEntry":
        return cls(**data)


class PreviewCache:
    """
    Thread-safe project id -> preview URL cache.

    When a file path is given the cache is persisted there as JSON and
    reloaded on start, so a worker restart keeps known previews.
    """

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._entries: Dict[str, PreviewCacheEntry] = {}
        self._load()

    def get(self, project_id: str) -> Optional[PreviewCacheEntry]:
        with self._lock:
            return self._entries.get(project_id)

    def put(self, project_id: str, preview_url: str) -> PreviewCacheEntry:
        entry = PreviewCacheEntry(
            project_id=project_id,
            preview_url=preview_url,
            cached_at=datetime.now().isoformat(),
        )
        with self._lock:
            self._entries[project_id] = entry
            self._save()
        return entry

    def clear(self, project_id: str) -> None:
        with self._lock:
            if self._entries.pop(project_id, None) is not None:
                self._save()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
            self._entries = {k: PreviewCacheEntry.from_dict(v) for k, v in data.items()}
        except (OSError, json.JSONDecodeError, TypeError) as e:
            logger.warning("Ignoring unreadable preview cache %s: %s", self._path, e)
            self._entries = {}

    def _save(self) -> None:
        # Caller holds the lock
        if self._path is None:
            return
        try:
            data = {k: v.to_dict() for k, v in self._entries.items()}
            with open(self._path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning("Could not persist preview cache to %s: %s", self._path, e)


# =============================================================================
# RECONCILER
# =============================================================================

class LivenessSource(Protocol):
    def is_active(self, key: str) -> bool: ...


class StatusReconciler:
    """Reconciles cached preview URLs against sandbox liveness."""

    def __init__(self, cache: PreviewCache, liveness: LivenessSource):
        self.cache = cache
        self.liveness = liveness

    def check(self, project_id: str) -> StatusResult:
        entry = self.cache.get(project_id)
        if entry is None:
            return StatusResult(project_id=project_id, active=False)

        if self.liveness.is_active(project_id):
            return StatusResult(project_id=project_id, active=True, preview_url=entry.preview_url)

        logger.info("Preview for %s is no longer live; clearing cached URL", project_id)
        self.cache.clear(project_id)
        return StatusResult(project_id=project_id, active=False)

    def record(self, project_id: str, preview_url: str) -> None:
        """Remember a freshly exposed preview URL."""
        self.cache.put(project_id, preview_url)
