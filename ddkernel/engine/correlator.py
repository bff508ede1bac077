"""Correlates execution requests with interpreter responses.

Each submit gets a fresh execution ID and a PendingEntry in the
session's pending map. Exactly one of three things settles it:

    matching RESULT frame  -> resolved with the ExecutionResult
    deadline expiry        -> rejected with ExecutionTimeout
    session termination    -> rejected with SessionTerminated

Lookup is purely by ID, so out-of-order responses are fine. Late,
duplicate or unknown responses are logged and dropped.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable

from .errors import ExecutionTimeout
from .models import ExecutionResult, PendingEntry, SessionState
from .session import Session
from .wire import encode_execute

logger = logging.getLogger(__name__)


def new_execution_id(source_id: str | None = None) -> str:
    """Globally unique ID, prefixed with the source for log readability."""
    token = uuid.uuid4().hex
    return f"{source_id}_{token}" if source_id else token


class ExecutionCorrelator:
    """ID-keyed bookkeeping of in-flight executions.

    Imposes no ordering of its own. Single-event-loop usage only.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        id_factory: Callable[[str | None], str] | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._id_factory = id_factory or new_execution_id
        self.late_responses = 0
        self.timeouts = 0

    async def submit(
        self,
        session: Session,
        code: str,
        *,
        source_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run ``code`` in ``session`` and wait for its result."""
        if session.state == SessionState.STARTING:
            await session.wait_ready()
        if not session.accepting:
            raise session.closed_error()

        execution_id = self._id_factory(source_id)
        if execution_id in session.pending:
            raise ValueError(f"Execution ID already in flight: {execution_id}")

        loop = asyncio.get_running_loop()
        timeout = self._timeout_seconds if timeout is None else timeout
        entry = PendingEntry(execution_id=execution_id, future=loop.create_future())
        if timeout > 0:
            entry.deadline = loop.time() + timeout
            entry.timer = loop.call_later(
                timeout, self._expire, session, execution_id, timeout,
            )
        session.pending[execution_id] = entry

        try:
            session.write(encode_execute(execution_id, code))
        except RuntimeError:
            self._remove(session, execution_id)
            raise session.closed_error() from None

        logger.debug(
            "Submitted %s to session %s (%d pending)",
            execution_id, session.key, len(session.pending),
        )
        try:
            return await entry.future
        except asyncio.CancelledError:
            # Local abandonment; a later response will be dropped.
            self._remove(session, execution_id)
            raise

    def deliver(self, session: Session, execution_id: str, raw_result: dict) -> bool:
        """Resolve the pending entry for ``execution_id``. False if none."""
        entry = self._remove(session, execution_id)
        session.touch()
        if entry is None:
            self.late_responses += 1
            logger.info(
                "Dropping response for unknown or expired execution %s "
                "(session %s)",
                execution_id, session.key,
            )
            return False
        try:
            result = ExecutionResult.from_wire(execution_id, raw_result)
        except Exception as exc:
            logger.exception(
                "Malformed result for execution %s on session %s",
                execution_id, session.key,
            )
            if not entry.future.done():
                entry.future.set_exception(exc)
            return True
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def fail_all(self, session: Session, exc: BaseException) -> int:
        """Reject every pending entry of ``session`` with ``exc``."""
        entries = list(session.pending.values())
        session.pending.clear()
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(exc)
        if entries:
            logger.warning(
                "Rejected %d pending execution(s) on session %s: %s",
                len(entries), session.key, exc,
            )
        return len(entries)

    def _expire(self, session: Session, execution_id: str, timeout: float) -> None:
        entry = self._remove(session, execution_id)
        if entry is None:
            return
        self.timeouts += 1
        logger.warning(
            "Execution %s on session %s timed out after %.1fs",
            execution_id, session.key, timeout,
        )
        if not entry.future.done():
            entry.future.set_exception(ExecutionTimeout(execution_id, timeout))

    @staticmethod
    def _remove(session: Session, execution_id: str) -> PendingEntry | None:
        """Pop an entry; a second removal of the same ID is a no-op."""
        entry = session.pending.pop(execution_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry
