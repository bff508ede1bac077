"""Per-key session record: process handle, state and pending executions."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .errors import SessionShuttingDown, SessionTerminated
from .lifecycle import validate_transition
from .models import PendingEntry, SessionState

logger = logging.getLogger(__name__)


class Session:
    """A persistent interpreter bound to one session key.

    The pending map lives and dies with this object. State changes go
    through ``transition`` so the lifecycle rules are enforced.
    """

    def __init__(self, key: str, process: Any) -> None:
        self.key = key
        self.process = process
        self.state = SessionState.STARTING
        self.pending: dict[str, PendingEntry] = {}
        self.created_at = time.time()
        self.last_activity = time.time()
        self.termination_cause: str | None = None
        self.shutdown_requested = False
        self.pump_task: asyncio.Task | None = None
        self._ready: asyncio.Future = asyncio.get_running_loop().create_future()
        # Nobody may be waiting when startup fails; keep the loop quiet.
        self._ready.add_done_callback(
            lambda f: f.cancelled() or f.exception()
        )

    def transition(self, target: SessionState) -> None:
        validate_transition(self.state, target)
        logger.debug(
            "Session %s: %s -> %s", self.key, self.state.value, target.value,
        )
        self.state = target

    def mark_ready(self) -> None:
        self.transition(SessionState.READY)
        if not self._ready.done():
            self._ready.set_result(None)

    def fail_startup(self, exc: BaseException) -> None:
        """Release anyone waiting for readiness with ``exc``."""
        if not self._ready.done():
            self._ready.set_exception(exc)

    async def wait_ready(self, timeout: float | None = None) -> None:
        """Wait until READY. Raises the startup/termination error otherwise."""
        waiter = asyncio.shield(self._ready)
        if timeout is None or timeout <= 0:
            await waiter
        else:
            await asyncio.wait_for(waiter, timeout=timeout)

    @property
    def accepting(self) -> bool:
        return self.state == SessionState.READY

    def closed_error(self) -> SessionTerminated:
        """The error a submit should see on a session that is going away."""
        if self.shutdown_requested:
            return SessionShuttingDown(self.key)
        return SessionTerminated(
            self.key, self.termination_cause or f"session is {self.state.value}",
        )

    def write(self, line: str) -> None:
        self.last_activity = time.time()
        self.process.write(line)

    def touch(self) -> None:
        self.last_activity = time.time()

    def snapshot(self) -> dict[str, Any]:
        return {
            "sessionKey": self.key,
            "state": self.state.value,
            "pid": getattr(self.process, "pid", None),
            "pendingExecutions": len(self.pending),
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
        }
