"""Exception hierarchy for the execution kernel.

Transport-level failures are raised to the caller. Interpreter-side
errors are not exceptions: they come back as a normal result with
``success=False`` and an ``error`` artifact.
"""
from __future__ import annotations


class KernelError(Exception):
    """Base exception for all execution kernel errors."""


class StartupFailure(KernelError):
    """Interpreter subprocess never signaled readiness."""
    def __init__(self, session_key: str, timeout_seconds: float, detail: str = ""):
        self.session_key = session_key
        self.timeout_seconds = timeout_seconds
        self.detail = detail
        message = (
            f"Session {session_key} failed to start "
            f"within {timeout_seconds}s"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ExecutionTimeout(KernelError):
    """No response arrived for an execution before its deadline."""
    def __init__(self, execution_id: str, timeout_seconds: float):
        self.execution_id = execution_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Execution {execution_id} timed out after {timeout_seconds}s"
        )


class SessionTerminated(KernelError):
    """The session's subprocess went away with executions still pending."""
    def __init__(self, session_key: str, cause: str):
        self.session_key = session_key
        self.cause = cause
        super().__init__(f"Session {session_key} terminated: {cause}")


class SessionShuttingDown(SessionTerminated):
    """The session was shut down explicitly."""
    def __init__(self, session_key: str):
        super().__init__(session_key, "session is shutting down")


class ReconciliationInconsistency(KernelError):
    """Prior slot data cannot be matched by the cursor algorithm."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Reconciliation inconsistency: {reason}")
