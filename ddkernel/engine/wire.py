"""Line protocol spoken between the kernel and an interpreter subprocess.

Grammar (one frame per ``\\n``-terminated line):

    frame   := ready | execute | result | exit
    ready   := "PYTHON_SESSION_READY"
    exit    := "EXIT"
    execute := "EXECUTE:" json   ; {"executionId": str, "code": str}
    result  := "RESULT:" json    ; {"executionId": str, "result": {...}}

Any other line is incidental output and is ignored by the decoder.
Decoding never raises on bad input.
"""
from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)

READY_SENTINEL = "PYTHON_SESSION_READY"
EXIT_COMMAND = "EXIT"
EXECUTE_TAG = "EXECUTE:"
RESULT_TAG = "RESULT:"


@dataclass(frozen=True)
class ReadyFrame:
    pass


@dataclass(frozen=True)
class ExitFrame:
    pass


@dataclass(frozen=True)
class ExecuteFrame:
    execution_id: str
    code: str


@dataclass(frozen=True)
class ResultFrame:
    execution_id: str
    result: dict[str, Any] = field(default_factory=dict)


Frame = Union[ReadyFrame, ExitFrame, ExecuteFrame, ResultFrame]


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to a single newline-terminated line."""
    if isinstance(frame, ReadyFrame):
        return READY_SENTINEL + "\n"
    if isinstance(frame, ExitFrame):
        return EXIT_COMMAND + "\n"
    if isinstance(frame, ExecuteFrame):
        payload = {"executionId": frame.execution_id, "code": frame.code}
        return EXECUTE_TAG + json.dumps(payload) + "\n"
    if isinstance(frame, ResultFrame):
        payload = {"executionId": frame.execution_id, "result": frame.result}
        return RESULT_TAG + json.dumps(payload) + "\n"
    raise TypeError(f"Not a frame: {frame!r}")


def encode_execute(execution_id: str, code: str) -> str:
    return encode_frame(ExecuteFrame(execution_id=execution_id, code=code))


def encode_result(execution_id: str, result: dict[str, Any]) -> str:
    return encode_frame(ResultFrame(execution_id=execution_id, result=result))


def _load_tagged(line: str, tag: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(line[len(tag):])
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed %s frame: %r", tag.rstrip(":"), line[:200])
        return None
    if not isinstance(payload, dict):
        logger.warning("Ignoring non-object %s frame: %r", tag.rstrip(":"), line[:200])
        return None
    return payload


def _execution_id(payload: dict[str, Any]) -> str | None:
    # Older runners spell it execution_id.
    value = payload.get("executionId", payload.get("execution_id"))
    if value is None:
        return None
    return str(value)


def parse_line(line: str) -> Frame | None:
    """Parse one complete line. Returns None for unrecognized lines."""
    line = line.rstrip("\r\n")
    stripped = line.strip()
    if stripped == READY_SENTINEL:
        return ReadyFrame()
    if stripped == EXIT_COMMAND:
        return ExitFrame()

    if line.startswith(EXECUTE_TAG):
        payload = _load_tagged(line, EXECUTE_TAG)
        if payload is None:
            return None
        execution_id = _execution_id(payload)
        if execution_id is None:
            logger.warning("Ignoring EXECUTE frame without an execution id")
            return None
        return ExecuteFrame(execution_id=execution_id, code=str(payload.get("code", "")))

    if line.startswith(RESULT_TAG):
        payload = _load_tagged(line, RESULT_TAG)
        if payload is None:
            return None
        execution_id = _execution_id(payload)
        if execution_id is None:
            logger.warning("Ignoring RESULT frame without an execution id")
            return None
        result = payload.get("result")
        if not isinstance(result, dict):
            result = {}
        return ResultFrame(execution_id=execution_id, result=result)

    if stripped:
        logger.debug("Ignoring unrecognized line: %r", line[:200])
    return None


class LineDecoder:
    """Turns arbitrary byte or text chunks into complete lines.

    A read boundary may fall anywhere, including inside a multi-byte
    UTF-8 sequence; the tail is buffered until its newline arrives.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return the unterminated tail (if any) at end of stream."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []

    @property
    def pending(self) -> str:
        return self._buffer


class FrameDecoder:
    """LineDecoder plus frame parsing; unrecognized lines are counted and dropped."""

    def __init__(self) -> None:
        self._lines = LineDecoder()
        self.ignored_lines = 0

    def feed(self, chunk: bytes | str) -> list[Frame]:
        return self._parse(self._lines.feed(chunk))

    def flush(self) -> list[Frame]:
        return self._parse(self._lines.flush())

    def _parse(self, lines: list[str]) -> list[Frame]:
        frames: list[Frame] = []
        for line in lines:
            frame = parse_line(line)
            if frame is None:
                self.ignored_lines += 1
                continue
            frames.append(frame)
        return frames
