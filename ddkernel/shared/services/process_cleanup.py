"""Best-effort cleanup of interpreter processes left behind by a dead server.

A server that crashed or was killed with SIGKILL never sends ``EXIT``,
so its interpreter children keep running with PID 1 as parent. They
hold a Python namespace nobody can reach and are safe to reap.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_PS_LINE = re.compile(r"^\s*(?P<pid>\d+)\s+(?P<ppid>\d+)\s+(?P<cmd>.+)$")
_INTERPRETER_CMD = re.compile(r"-m\s+ddkernel\.engine\.interpreter\b")
_SESSION_KEY_ARG = re.compile(r"--session-key\s+(\S+)")


@dataclass(frozen=True)
class ProcessRow:
    pid: int
    ppid: int
    cmd: str

    @property
    def session_key(self) -> str | None:
        match = _SESSION_KEY_ARG.search(self.cmd)
        return match.group(1) if match else None


def parse_process_table(output: str) -> dict[int, ProcessRow]:
    """Rows of ``ps -eo pid=,ppid=,args=`` keyed by PID; junk lines skipped."""
    rows = {}
    for raw in output.splitlines():
        match = _PS_LINE.match(raw)
        if match is None:
            continue
        row = ProcessRow(int(match["pid"]), int(match["ppid"]), match["cmd"].strip())
        rows[row.pid] = row
    return rows


def snapshot_processes() -> dict[int, ProcessRow]:
    listing = subprocess.run(
        ["ps", "-eo", "pid=,ppid=,args="],
        capture_output=True,
        text=True,
        check=True,
    )
    return parse_process_table(listing.stdout)


def is_interpreter_process(cmd: str) -> bool:
    return _INTERPRETER_CMD.search(cmd) is not None


def find_stale_interpreters(
    rows: dict[int, ProcessRow],
    current_pid: int,
) -> list[ProcessRow]:
    """Interpreter rows whose parent is init or no longer exists."""
    return [
        row for row in rows.values()
        if row.pid != current_pid
        and is_interpreter_process(row.cmd)
        and (row.ppid == 1 or row.ppid not in rows)
    ]


def cleanup_stale_interpreters(current_pid: int | None = None) -> int:
    """SIGTERM orphaned interpreters. Returns how many were signaled."""
    me = os.getpid() if current_pid is None else current_pid
    reaped = 0
    for row in find_stale_interpreters(snapshot_processes(), me):
        try:
            os.kill(row.pid, signal.SIGTERM)
        except ProcessLookupError:
            # Exited on its own between the snapshot and now.
            continue
        except PermissionError as exc:
            logger.warning("Cannot reap interpreter pid=%d: %s", row.pid, exc)
            continue
        reaped += 1
        logger.info(
            "Reaped stale interpreter pid=%d session=%s cmd=%s",
            row.pid, row.session_key or "?", row.cmd[:180],
        )
    return reaped
