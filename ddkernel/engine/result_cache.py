"""Short-lived cache of execution results for late retrieval."""
from __future__ import annotations

import time
from dataclasses import dataclass, field

from .models import ExecutionResult


@dataclass
class CachedResult:
    result: ExecutionResult
    stored_at: float = field(default_factory=time.time)
    consumed: bool = False


class ResultCache:
    """Results keyed by execution ID, evicted after a TTL.

    A result stays unconsumed until its caller acknowledges it (or it is
    fetched late); the sweeper keeps the artifact files of unconsumed
    results.
    """

    def __init__(self, ttl_seconds: float = 3600.0) -> None:
        self._ttl_seconds = ttl_seconds
        self._entries: dict[str, CachedResult] = {}

    def put(self, result: ExecutionResult, *, now: float | None = None) -> None:
        stored_at = time.time() if now is None else now
        self._entries[result.execution_id] = CachedResult(
            result=result, stored_at=stored_at,
        )

    def acknowledge(self, execution_id: str) -> bool:
        entry = self._entries.get(execution_id)
        if entry is None:
            return False
        entry.consumed = True
        return True

    def get(self, execution_id: str) -> ExecutionResult | None:
        """Late retrieval. Marks the result consumed."""
        entry = self._entries.get(execution_id)
        if entry is None:
            return None
        entry.consumed = True
        return entry.result

    def is_consumed(self, execution_id: str) -> bool | None:
        entry = self._entries.get(execution_id)
        return entry.consumed if entry else None

    def evict_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        expired = [
            execution_id
            for execution_id, entry in self._entries.items()
            if now - entry.stored_at > self._ttl_seconds
        ]
        for execution_id in expired:
            del self._entries[execution_id]
        return len(expired)

    def protected_files(self) -> set[str]:
        """Artifact filenames still referenced by unconsumed results."""
        files: set[str] = set()
        for entry in self._entries.values():
            if not entry.consumed:
                files.update(entry.result.artifact_files)
        return files

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._entries
