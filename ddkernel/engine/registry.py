"""Registry of live interpreter sessions, at most one per key.

``get_or_create`` reserves the registry slot synchronously, before the
first await, by storing the creation task itself. A second caller for
the same key finds that task and awaits it instead of spawning.

Each session gets a pump task that drains its process's inbound
channel:

    ReadyFrame      -> STARTING -> READY
    ResultFrame     -> correlator.deliver(...)
    ProcessExited   -> reject pending, TERMINATED, drop registry entry
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import KernelConfig
from .correlator import ExecutionCorrelator
from .errors import SessionShuttingDown, SessionTerminated, StartupFailure
from .models import SessionState
from .session import Session
from .session_process import ProcessExited, SessionProcess
from .wire import ReadyFrame, ResultFrame

logger = logging.getLogger(__name__)

# (session_key, config) -> object with the SessionProcess interface
ProcessFactory = Callable[[str, KernelConfig], Any]


def default_process_factory(key: str, config: KernelConfig) -> SessionProcess:
    """Spawn the bundled interpreter module for ``key``."""
    env = dict(os.environ)
    env["PYTHONUNBUFFERED"] = "1"
    # Make the interpreter module importable from a non-installed checkout.
    package_root = str(Path(__file__).resolve().parents[2])
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = (
        package_root + os.pathsep + existing if existing else package_root
    )
    Path(config.output_dir).mkdir(parents=True, exist_ok=True)
    return SessionProcess(
        key,
        config.interpreter_argv(key),
        cwd=config.working_dir,
        env=env,
        stderr_tail_lines=config.stderr_tail_lines,
    )


@dataclass
class _RegistryEntry:
    key: str
    creation: asyncio.Task
    session: Session | None = None


class SessionRegistry:
    """Owns the live sessions. Single-event-loop usage only."""

    def __init__(
        self,
        config: KernelConfig,
        correlator: ExecutionCorrelator,
        *,
        process_factory: ProcessFactory | None = None,
    ) -> None:
        self._config = config
        self._correlator = correlator
        self._process_factory = process_factory or default_process_factory
        self._entries: dict[str, _RegistryEntry] = {}
        self.spawn_count = 0

    async def get_or_create(self, key: str) -> Session:
        """Return the session for ``key``, starting it if needed."""
        entry = self._entries.get(key)
        if entry is None:
            # No await between the lookup and this insert.
            creation = asyncio.ensure_future(self._create(key))
            entry = _RegistryEntry(key=key, creation=creation)
            self._entries[key] = entry
            # Failures are re-raised to every awaiting caller.
            creation.add_done_callback(
                lambda t: t.cancelled() or t.exception()
            )
        session = await asyncio.shield(entry.creation)
        session.touch()
        return session

    def get(self, key: str) -> Session | None:
        entry = self._entries.get(key)
        return entry.session if entry else None

    def keys(self) -> list[str]:
        return list(self._entries)

    def list_sessions(self) -> list[dict[str, Any]]:
        snapshots = []
        for key, entry in self._entries.items():
            if entry.session is None:
                snapshots.append({"sessionKey": key, "state": SessionState.STARTING.value})
            else:
                snapshots.append(entry.session.snapshot())
        return snapshots

    async def shutdown(self, key: str) -> bool:
        """Stop the session for ``key``. False if there was nothing to stop."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        try:
            session = await asyncio.shield(entry.creation)
        except StartupFailure:
            return False
        if session.state in (SessionState.TERMINATING, SessionState.TERMINATED):
            return False

        logger.info("Shutting down session %s", key)
        session.shutdown_requested = True
        session.transition(SessionState.TERMINATING)
        exc = SessionShuttingDown(key)
        session.fail_startup(exc)
        self._correlator.fail_all(session, exc)
        self._discard(session)

        await session.process.stop(
            grace=self._config.shutdown_grace_seconds,
            kill_timeout=self._config.kill_timeout_seconds,
        )
        if session.pump_task is not None:
            await session.pump_task
        self._finalize(session)
        return True

    async def shutdown_all(self) -> int:
        """Shut down every session. Returns how many were stopped."""
        keys = list(self._entries)
        if not keys:
            return 0
        results = await asyncio.gather(
            *(self.shutdown(key) for key in keys), return_exceptions=True,
        )
        stopped = 0
        for key, outcome in zip(keys, results):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Failed to shut down session %s: %s", key, outcome,
                    exc_info=outcome,
                )
            elif outcome:
                stopped += 1
        logger.info("Shut down %d session(s)", stopped)
        return stopped

    # ── Creation ──

    async def _create(self, key: str) -> Session:
        timeout = self._config.ready_timeout_seconds
        process = self._process_factory(key, self._config)
        self.spawn_count += 1
        try:
            await process.start()
        except OSError as exc:
            self._drop_entry(key)
            logger.error("Failed to launch interpreter for session %s: %s", key, exc)
            raise StartupFailure(key, timeout, str(exc)) from exc

        session = Session(key, process)
        entry = self._entries.get(key)
        if entry is not None:
            entry.session = session
        session.pump_task = asyncio.create_task(self._pump(session))

        try:
            await session.wait_ready(timeout)
        except asyncio.TimeoutError:
            detail = "no readiness sentinel"
            tail = _stderr_tail(process)
            if tail:
                detail = f"{detail}; stderr: {tail}"
            failure = StartupFailure(key, timeout, detail)
            logger.error("%s", failure)
            await self._abort(session, failure)
            raise failure from None
        except SessionTerminated as exc:
            failure = StartupFailure(key, timeout, exc.cause)
            logger.error("%s", failure)
            self._drop_entry(key)
            raise failure from exc

        logger.info("Session %s ready (pid=%s)", key, getattr(process, "pid", None))
        return session

    async def _abort(self, session: Session, failure: StartupFailure) -> None:
        session.transition(SessionState.TERMINATING)
        session.termination_cause = str(failure)
        session.fail_startup(failure)
        self._correlator.fail_all(session, failure)
        self._discard(session)
        await session.process.stop(
            grace=0.1, kill_timeout=self._config.kill_timeout_seconds,
        )
        if session.pump_task is not None:
            await session.pump_task
        self._finalize(session)

    # ── Inbound channel ──

    async def _pump(self, session: Session) -> None:
        inbound = session.process.inbound
        while True:
            event = await inbound.get()
            if isinstance(event, ReadyFrame):
                if session.state == SessionState.STARTING:
                    session.mark_ready()
                else:
                    logger.debug("Session %s: duplicate ready sentinel", session.key)
            elif isinstance(event, ResultFrame):
                try:
                    self._correlator.deliver(session, event.execution_id, event.result)
                except Exception:
                    logger.exception(
                        "Session %s: failed to deliver result %s",
                        session.key, event.execution_id,
                    )
            elif isinstance(event, ProcessExited):
                self._on_terminated(session, event)
                return
            else:
                logger.debug("Session %s: ignoring frame %r", session.key, event)

    def _on_terminated(self, session: Session, event: ProcessExited) -> None:
        if session.termination_cause is None:
            session.termination_cause = event.cause
        if session.state in (SessionState.STARTING, SessionState.READY):
            logger.warning(
                "Session %s terminated unexpectedly: %s", session.key, event.cause,
            )
            session.transition(SessionState.TERMINATING)
            exc = SessionTerminated(session.key, event.cause)
            session.fail_startup(exc)
            self._correlator.fail_all(session, exc)
            self._discard(session)
            self._finalize(session)
        else:
            self._correlator.fail_all(session, session.closed_error())

    def _finalize(self, session: Session) -> None:
        if session.state == SessionState.TERMINATING:
            session.transition(SessionState.TERMINATED)

    def _discard(self, session: Session) -> None:
        """Drop the registry entry if it still belongs to ``session``."""
        entry = self._entries.get(session.key)
        if entry is not None and entry.session is session:
            del self._entries[session.key]

    def _drop_entry(self, key: str) -> None:
        """Drop the entry for ``key`` if the running creation task owns it."""
        entry = self._entries.get(key)
        if entry is not None and entry.creation is asyncio.current_task():
            del self._entries[key]


def _stderr_tail(process: Any) -> str:
    tail = getattr(process, "stderr_tail", None)
    return tail(5) if callable(tail) else ""
