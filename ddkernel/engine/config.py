"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via DDK_* env vars,
a YAML file (see yaml_config.py), or CLI flags.
"""
from __future__ import annotations

import logging
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _default_output_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "design-diary-python" / "outputs")


def find_python_executable() -> str:
    """Pick the interpreter used for sessions.

    An active conda environment wins; otherwise the interpreter running
    the kernel, which is guaranteed to have this package importable.
    """
    conda_prefix = os.getenv("CONDA_PREFIX")
    if conda_prefix:
        candidate = Path(conda_prefix) / "bin" / "python"
        if candidate.exists():
            return str(candidate)
    return sys.executable


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class KernelConfig:
    """Execution kernel configuration."""

    # Interpreter subprocess
    python_executable: str = field(default_factory=find_python_executable)
    interpreter_module: str = "ddkernel.engine.interpreter"
    working_dir: str | None = None
    output_dir: str = field(default_factory=_default_output_dir)
    stderr_tail_lines: int = 200

    # Timeouts. Set execution timeout to 0 (or negative) to disable it.
    ready_timeout_seconds: float = 5.0
    execution_timeout_seconds: float = 30.0
    shutdown_grace_seconds: float = 2.0
    kill_timeout_seconds: float = 5.0

    # Cleanup sweeper
    result_ttl_seconds: float = 3600.0
    artifact_ttl_seconds: float = 3600.0
    sweep_interval_seconds: float = 600.0
    purge_outputs_on_shutdown: bool = True

    # Reconciliation
    slot_gap: float = 20.0

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 3001

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> KernelConfig:
        """Load configuration from DDK_* environment variables."""
        ddk_vars = {
            k: v for k, v in os.environ.items() if k.startswith("DDK_")
        }
        if ddk_vars:
            logger.info(
                "KernelConfig.from_env: DDK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(ddk_vars.items())),
            )
        else:
            logger.debug("KernelConfig.from_env: no DDK_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            python_executable=os.getenv(
                "DDK_PYTHON", defaults.python_executable
            ),
            working_dir=os.getenv("DDK_WORKING_DIR") or None,
            output_dir=os.getenv("DDK_OUTPUT_DIR", defaults.output_dir),
            ready_timeout_seconds=float(os.getenv(
                "DDK_READY_TIMEOUT", str(cls.ready_timeout_seconds)
            )),
            execution_timeout_seconds=float(os.getenv(
                "DDK_EXECUTION_TIMEOUT", str(cls.execution_timeout_seconds)
            )),
            shutdown_grace_seconds=float(os.getenv(
                "DDK_SHUTDOWN_GRACE", str(cls.shutdown_grace_seconds)
            )),
            result_ttl_seconds=float(os.getenv(
                "DDK_RESULT_TTL", str(cls.result_ttl_seconds)
            )),
            artifact_ttl_seconds=float(os.getenv(
                "DDK_ARTIFACT_TTL", str(cls.artifact_ttl_seconds)
            )),
            sweep_interval_seconds=float(os.getenv(
                "DDK_SWEEP_INTERVAL", str(cls.sweep_interval_seconds)
            )),
            purge_outputs_on_shutdown=_env_bool(
                "DDK_PURGE_OUTPUTS", cls.purge_outputs_on_shutdown
            ),
            host=os.getenv("DDK_HOST", cls.host),
            port=int(os.getenv("DDK_PORT", os.getenv("PORT", str(cls.port)))),
            log_level=os.getenv("DDK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "KernelConfig.from_env: python=%s output_dir=%s port=%d log_level=%s",
            config.python_executable, config.output_dir,
            config.port, config.log_level,
        )
        return config

    def interpreter_argv(self, session_key: str) -> list[str]:
        return [
            self.python_executable, "-u", "-m", self.interpreter_module,
            "--output-dir", self.output_dir,
            "--session-key", session_key,
        ]
