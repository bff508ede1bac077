"""Reference interpreter process for a session.

Speaks the wire protocol on stdin/stdout:

    -> PYTHON_SESSION_READY            (once, at startup)
    <- EXECUTE:{"executionId", "code"}
    -> RESULT:{"executionId", "result": {"stdout", "stderr", "artifacts"}}
    <- EXIT

Requests are handled strictly one at a time, in arrival order. All
code shares one globals namespace so variables persist between runs.

Usage:
    python -m ddkernel.engine.interpreter --output-dir DIR [--session-key KEY]
"""
from __future__ import annotations

import argparse
import io
import os
import sys
import traceback
import uuid
from contextlib import redirect_stderr, redirect_stdout
from typing import Any, TextIO

from .wire import (
    ExecuteFrame,
    ExitFrame,
    READY_SENTINEL,
    encode_result,
    parse_line,
)

try:
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
except ImportError:  # figure capture is simply unavailable
    plt = None


def strip_magics(code: str) -> str:
    """Drop IPython line magics (%...) and cell-magic blocks (%%...)."""
    cleaned: list[str] = []
    in_cell_magic = False
    for line in code.split("\n"):
        stripped = line.strip()
        if stripped.startswith("%%"):
            in_cell_magic = True
            continue
        if in_cell_magic:
            if stripped.startswith("%"):
                in_cell_magic = False
            continue
        if stripped.startswith("%"):
            continue
        cleaned.append(line)
    return "\n".join(cleaned)


def _source_prefix(execution_id: str) -> str:
    prefix = execution_id.split("_", 1)[0] if "_" in execution_id else "cell"
    return "".join(c for c in prefix if c.isalnum() or c in "-.") or "cell"


class Interpreter:
    """Executes code blocks in a persistent namespace."""

    def __init__(self, output_dir: str | None) -> None:
        self.output_dir = output_dir
        self.namespace: dict[str, Any] = {"__name__": "__main__"}

    def execute(self, code: str, execution_id: str) -> dict[str, Any]:
        artifacts: list[dict[str, Any]] = []
        cleaned = strip_magics(code)
        if not cleaned.strip():
            return {"stdout": "", "stderr": "", "artifacts": artifacts}

        prefix = _source_prefix(execution_id)
        stdout_capture = io.StringIO()
        stderr_capture = io.StringIO()

        original_show = None
        if plt is not None:
            plt.close("all")
            original_show = plt.show

            def _show(*args, **kwargs):
                self._capture_figure(plt.gcf(), prefix, artifacts)
                plt.close()

            plt.show = _show

        # The real stdin carries protocol frames; user reads see EOF.
        original_stdin = sys.stdin
        sys.stdin = io.StringIO()
        try:
            with redirect_stdout(stdout_capture), redirect_stderr(stderr_capture):
                exec(compile(cleaned, f"<{prefix}>", "exec"), self.namespace)
                if plt is not None:
                    for number in plt.get_fignums():
                        figure = plt.figure(number)
                        self._capture_figure(figure, prefix, artifacts)
                        plt.close(figure)
        except BaseException as exc:  # user code may raise SystemExit too
            if isinstance(exc, KeyboardInterrupt):
                raise
            stderr_capture.write(traceback.format_exc())
        finally:
            sys.stdin = original_stdin
            if plt is not None:
                plt.show = original_show

        return {
            "stdout": stdout_capture.getvalue(),
            "stderr": stderr_capture.getvalue(),
            "artifacts": artifacts,
        }

    def _capture_figure(self, figure, prefix: str, artifacts: list) -> None:
        if not self.output_dir or not figure.get_axes():
            return
        filename = f"plot_{prefix}_{uuid.uuid4().hex}.png"
        path = os.path.join(self.output_dir, filename)
        figure.savefig(path, format="png", dpi=100, bbox_inches="tight")
        artifacts.append({
            "kind": "image",
            "payload": filename,
            "metadata": {
                "width": figure.get_figwidth() * figure.dpi,
                "height": figure.get_figheight() * figure.dpi,
                "mimeType": "image/png",
            },
        })


def serve(interpreter: Interpreter, stdin: TextIO, stdout: TextIO) -> None:
    """Main loop: one request at a time until EXIT or EOF."""
    stdout.write(READY_SENTINEL + "\n")
    stdout.flush()
    for line in stdin:
        frame = parse_line(line)
        if isinstance(frame, ExitFrame):
            break
        if not isinstance(frame, ExecuteFrame):
            continue
        try:
            result = interpreter.execute(frame.code, frame.execution_id)
        except Exception as exc:
            result = {
                "stdout": "",
                "stderr": f"Session error: {exc}",
                "artifacts": [],
            }
        stdout.write(encode_result(frame.execution_id, result))
        stdout.flush()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="ddkernel-interpreter",
        description="Persistent Python interpreter speaking the ddkernel line protocol",
    )
    parser.add_argument("--output-dir", default=None, help="Directory for rendered figures")
    parser.add_argument("--session-key", default="default", help="Owning session key")
    args = parser.parse_args()

    if args.output_dir:
        os.makedirs(args.output_dir, exist_ok=True)

    # Protocol frames go to the real stdout; user prints are captured.
    protocol_out = sys.stdout
    serve(Interpreter(args.output_dir), sys.stdin, protocol_out)


if __name__ == "__main__":
    main()
