"""Execution service: the explicitly constructed handle the API layer uses.

Wires the registry, correlator, result cache, reconciler and sweeper
together. Nothing here is module-global, so tests can build as many
isolated services as they like.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import KernelConfig
from .correlator import ExecutionCorrelator
from .models import (
    Artifact,
    ExecutionResponse,
    ExecutionResult,
    Reconciliation,
    Slot,
    SourceAnchor,
)
from .reconciler import OutputReconciler
from .registry import ProcessFactory, SessionRegistry
from .result_cache import ResultCache
from .sweeper import CleanupSweeper

logger = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "default"

_PYTHON_INFO_SCRIPT = (
    "import sys, importlib.util; "
    "print(sys.version.splitlines()[0]); "
    "print(sys.executable); "
    "print('1' if importlib.util.find_spec('matplotlib') else '0')"
)


class ExecutionService:
    """Runs code in per-key sessions and reconciles the resulting outputs."""

    def __init__(
        self,
        config: KernelConfig,
        *,
        process_factory: ProcessFactory | None = None,
    ) -> None:
        self.config = config
        self.correlator = ExecutionCorrelator(
            timeout_seconds=config.execution_timeout_seconds,
        )
        self.registry = SessionRegistry(
            config, self.correlator, process_factory=process_factory,
        )
        self.cache = ResultCache(ttl_seconds=config.result_ttl_seconds)
        self.reconciler = OutputReconciler(gap=config.slot_gap)
        self.sweeper = CleanupSweeper(
            self.cache,
            config.output_dir,
            artifact_ttl_seconds=config.artifact_ttl_seconds,
            interval_seconds=config.sweep_interval_seconds,
        )
        # (session_key, source_id) -> artifact files of the latest run
        self._source_files: dict[tuple[str, str], list[str]] = {}
        self._started_at = time.time()

    async def start(self) -> None:
        Path(self.config.output_dir).mkdir(parents=True, exist_ok=True)
        self.sweeper.start()
        logger.info(
            "Execution service started (output_dir=%s, python=%s)",
            self.config.output_dir, self.config.python_executable,
        )

    async def shutdown(self, *, purge_outputs: bool | None = None) -> int:
        """Stop every session and the sweeper. Returns sessions stopped."""
        await self.sweeper.stop()
        if purge_outputs is None:
            purge_outputs = self.config.purge_outputs_on_shutdown
        return await self.shutdown_sessions(purge_outputs=purge_outputs)

    async def shutdown_sessions(self, *, purge_outputs: bool = True) -> int:
        """Stop every session but keep the service running."""
        stopped = await self.registry.shutdown_all()
        self.cache.clear()
        self._source_files.clear()
        if purge_outputs:
            self.sweeper.purge()
        return stopped

    async def execute(
        self,
        code: str,
        *,
        source_id: str | None = None,
        session_key: str = DEFAULT_SESSION_KEY,
        timeout: float | None = None,
    ) -> ExecutionResponse:
        """Run ``code`` in the session for ``session_key``.

        Transport failures propagate as KernelError subclasses; an
        interpreter-side error comes back with ``success=False``.
        """
        started = time.monotonic()
        session = await self.registry.get_or_create(session_key)
        result = await self.correlator.submit(
            session, code, source_id=source_id, timeout=timeout,
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.cache.put(result)
        if source_id:
            self._replace_source_files((session_key, source_id), result.artifact_files)
        logger.info(
            "Execution %s on session %s finished in %dms (success=%s, artifacts=%d)",
            result.execution_id, session_key, elapsed_ms,
            result.success, len(result.artifacts),
        )
        return ExecutionResponse(
            execution_id=result.execution_id,
            source_id=source_id,
            session_key=session_key,
            stdout=result.stdout,
            stderr=result.stderr,
            artifacts=list(result.artifacts),
            success=result.success,
            execution_time_ms=elapsed_ms,
        )

    def _replace_source_files(self, key: tuple[str, str], current: list[str]) -> None:
        """A rerun of a source supersedes the files of its previous run."""
        previous = self._source_files.get(key, [])
        superseded = [name for name in previous if name not in current]
        kept = self.sweeper.discard(superseded) if superseded else []
        self._source_files[key] = list(current) + kept

    def acknowledge(self, execution_id: str) -> bool:
        """Mark a result as consumed by its caller."""
        return self.cache.acknowledge(execution_id)

    def get_result(self, execution_id: str) -> ExecutionResult | None:
        return self.cache.get(execution_id)

    def reconcile(
        self,
        prior_slots: Sequence[Slot],
        artifacts: Sequence[Artifact],
        anchor: SourceAnchor,
    ) -> Reconciliation:
        return self.reconciler.reconcile(prior_slots, artifacts, anchor)

    async def shutdown_session(self, session_key: str) -> bool:
        return await self.registry.shutdown(session_key)

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "pythonExecutable": self.config.python_executable,
            "sessions": len(self.registry.keys()),
            "cachedResults": len(self.cache),
            "uptimeSeconds": round(time.time() - self._started_at, 1),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def python_info(self, timeout: float = 10.0) -> dict[str, Any]:
        """Probe the configured interpreter for version and matplotlib."""
        proc = await asyncio.create_subprocess_exec(
            self.config.python_executable, "-c", _PYTHON_INFO_SCRIPT,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return {"success": False, "error": f"Interpreter probe timed out after {timeout}s"}
        if proc.returncode != 0:
            return {
                "success": False,
                "error": stderr.decode("utf-8", errors="replace").strip()
                or "Failed to get Python info",
            }
        lines = stdout.decode("utf-8", errors="replace").splitlines()
        return {
            "success": True,
            "version": lines[0] if lines else "Unknown",
            "executable": lines[1] if len(lines) > 1 else self.config.python_executable,
            "matplotlib": len(lines) > 2 and lines[2] == "1",
        }
