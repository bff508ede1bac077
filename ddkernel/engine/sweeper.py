"""Periodic eviction of expired results and orphaned artifact files.

Runs as a background task on its own interval, independent of the
session lifecycle. Files referenced by a result that has not been
consumed yet are never deleted.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from .result_cache import ResultCache

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    results_evicted: int = 0
    files_deleted: int = 0
    files_protected: int = 0


class CleanupSweeper:
    """Deletes cached results and artifact files older than their TTLs."""

    def __init__(
        self,
        cache: ResultCache,
        output_dir: str | Path,
        *,
        artifact_ttl_seconds: float = 3600.0,
        interval_seconds: float = 600.0,
    ) -> None:
        self._cache = cache
        self._output_dir = Path(output_dir)
        self._artifact_ttl_seconds = artifact_ttl_seconds
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    def sweep_once(self, now: float | None = None) -> SweepReport:
        now = time.time() if now is None else now
        report = SweepReport()
        report.results_evicted = self._cache.evict_expired(now)

        protected = self._cache.protected_files()
        for path in self._artifact_files():
            if path.name in protected:
                report.files_protected += 1
                continue
            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age <= self._artifact_ttl_seconds:
                continue
            if self._unlink(path):
                report.files_deleted += 1

        if report.results_evicted or report.files_deleted:
            logger.info(
                "Sweep: evicted %d result(s), deleted %d file(s), kept %d protected",
                report.results_evicted, report.files_deleted, report.files_protected,
            )
        return report

    def purge(self) -> int:
        """Delete every unprotected artifact file regardless of age."""
        protected = self._cache.protected_files()
        deleted = 0
        for path in self._artifact_files():
            if path.name in protected:
                continue
            if self._unlink(path):
                deleted += 1
        logger.info("Purged %d artifact file(s) from %s", deleted, self._output_dir)
        return deleted

    def discard(self, filenames: list[str]) -> list[str]:
        """Delete superseded artifact files now. Returns the protected ones kept."""
        protected = self._cache.protected_files()
        kept: list[str] = []
        deleted = 0
        for name in filenames:
            if name in protected:
                kept.append(name)
                continue
            path = self._output_dir / Path(name).name
            if self._unlink(path):
                deleted += 1
        if deleted:
            logger.debug("Discarded %d superseded artifact file(s)", deleted)
        return kept

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self) -> None:
        """Background loop: sweep every ``interval_seconds``."""
        while True:
            try:
                await asyncio.sleep(self._interval_seconds)
                self.sweep_once()
            except asyncio.CancelledError:
                logger.info("Cleanup sweeper stopped")
                return
            except Exception:
                logger.exception("Cleanup sweeper error")

    def _artifact_files(self) -> list[Path]:
        try:
            return [p for p in self._output_dir.iterdir() if p.is_file()]
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Failed to list artifact directory %s: %s", self._output_dir, exc)
            return []

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Failed to delete artifact %s: %s", path, exc)
            return False
