"""One interpreter subprocess and its stdio channels.

Three pump tasks run per process:

    stdout ──> FrameDecoder ──> inbound queue ──> (registry pump)
    outbound queue ──> stdin
    stderr ──> diagnostic tail + log

``inbound`` carries decoded frames followed by exactly one
ProcessExited, whether the process exits cleanly or crashes.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from .wire import EXIT_COMMAND, FrameDecoder, LineDecoder

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_DIAGNOSTIC_LINE_LIMIT = 4000


@dataclass(frozen=True)
class ProcessExited:
    """Terminal event on a process's inbound channel."""
    returncode: int | None
    cause: str


class SessionProcess:
    """Owns a single subprocess speaking the wire protocol."""

    def __init__(
        self,
        key: str,
        argv: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        stderr_tail_lines: int = 200,
    ) -> None:
        self.key = key
        self._argv = list(argv)
        self._cwd = cwd
        self._env = env
        self.inbound: asyncio.Queue = asyncio.Queue()
        self._outbound: asyncio.Queue[str | None] = asyncio.Queue()
        self._decoder = FrameDecoder()
        self._proc: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task] = []
        self._exit_emitted = False
        self._closed = False
        self.diagnostics: deque[str] = deque(maxlen=stderr_tail_lines)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        """Spawn the subprocess. Raises OSError if it cannot be launched."""
        # create_subprocess_exec passes args as a list, no shell
        self._proc = await asyncio.create_subprocess_exec(
            *self._argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            env=self._env,
        )
        logger.info(
            "Interpreter started for session %s (pid=%d)",
            self.key, self._proc.pid,
        )
        self._tasks = [
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
            asyncio.create_task(self._pump_stdin()),
        ]

    def write(self, line: str) -> None:
        """Queue a frame for stdin. Frames are written in call order."""
        if self._closed:
            raise RuntimeError(f"Session {self.key} input is closed")
        self._outbound.put_nowait(line)

    def stderr_tail(self, lines: int = 20) -> str:
        return "\n".join(list(self.diagnostics)[-lines:])

    async def stop(self, grace: float = 2.0, kill_timeout: float = 5.0) -> int | None:
        """Ask the interpreter to exit, then terminate, then kill."""
        if self._proc is None:
            return None
        if self._proc.returncode is None and not self._closed:
            self._outbound.put_nowait(EXIT_COMMAND + "\n")
        self._closed = True
        self._outbound.put_nowait(None)

        try:
            await asyncio.wait_for(self._proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(
                "Session %s ignored exit command after %.1fs; terminating (pid=%d)",
                self.key, grace, self._proc.pid,
            )
            try:
                self._proc.terminate()
                try:
                    await asyncio.wait_for(self._proc.wait(), timeout=kill_timeout)
                except asyncio.TimeoutError:
                    self._proc.kill()
                    await self._proc.wait()
            except ProcessLookupError:
                pass

        # stdout EOF follows process exit; let the pump emit ProcessExited.
        await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info(
            "Interpreter stopped for session %s (pid=%d, code=%s)",
            self.key, self._proc.pid, self._proc.returncode,
        )
        return self._proc.returncode

    # ── Pumps ──

    async def _pump_stdout(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        stream = self._proc.stdout
        cause = "stdout closed"
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                for frame in self._decoder.feed(chunk):
                    self.inbound.put_nowait(frame)
            for frame in self._decoder.flush():
                self.inbound.put_nowait(frame)
        except (ConnectionResetError, BrokenPipeError) as exc:
            cause = f"stdout error: {exc}"
        finally:
            returncode = await self._proc.wait()
            self._closed = True
            self._outbound.put_nowait(None)
            if returncode == 0:
                cause = "process exited cleanly"
            elif returncode is not None:
                cause = f"process exited with code {returncode}"
            tail = self.stderr_tail(5)
            if returncode not in (0, None) and tail:
                cause = f"{cause}: {tail}"
            self._emit_exit(returncode, cause)

    async def _pump_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        stream = self._proc.stderr
        # Chunked reads: a single huge line must not stop the drain.
        lines = LineDecoder()
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                self._record_stderr(lines.feed(chunk))
                if len(lines.pending) > _DIAGNOSTIC_LINE_LIMIT:
                    self._record_stderr(lines.flush())
            self._record_stderr(lines.flush())
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.debug("Session %s stderr closed: %s", self.key, exc)

    def _record_stderr(self, lines: list[str]) -> None:
        # Diagnostics only; stderr is never parsed as frames.
        for line in lines:
            text = line.rstrip()
            if not text:
                continue
            if len(text) > _DIAGNOSTIC_LINE_LIMIT:
                text = text[:_DIAGNOSTIC_LINE_LIMIT] + " ...[truncated]"
            self.diagnostics.append(text)
            logger.debug("Session %s stderr: %s", self.key, text)

    async def _pump_stdin(self) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        stdin = self._proc.stdin
        while True:
            line = await self._outbound.get()
            if line is None:
                break
            try:
                stdin.write(line.encode("utf-8"))
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                # Exit is reported by the stdout pump.
                logger.warning(
                    "Session %s stdin write failed: %s", self.key, exc,
                )
                break
        try:
            stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            pass

    def _emit_exit(self, returncode: int | None, cause: str) -> None:
        if self._exit_emitted:
            return
        self._exit_emitted = True
        logger.info("Session %s process ended: %s", self.key, cause)
        self.inbound.put_nowait(ProcessExited(returncode=returncode, cause=cause))
