"""Design Diary execution kernel: persistent interpreter sessions and output placement."""
from .models import (
    Artifact,
    ArtifactKind,
    Assignment,
    ExecutionRequest,
    ExecutionResponse,
    ExecutionResult,
    Position,
    Reconciliation,
    SessionState,
    Size,
    Slot,
    SourceAnchor,
)
from .config import KernelConfig
from .errors import (
    ExecutionTimeout,
    KernelError,
    ReconciliationInconsistency,
    SessionShuttingDown,
    SessionTerminated,
    StartupFailure,
)

__all__ = [
    # Service (lazy import to keep the interpreter process light)
    "ExecutionService",
    # Models
    "Artifact",
    "ArtifactKind",
    "Assignment",
    "ExecutionRequest",
    "ExecutionResponse",
    "ExecutionResult",
    "Position",
    "Reconciliation",
    "SessionState",
    "Size",
    "Slot",
    "SourceAnchor",
    # Config
    "KernelConfig",
    "load_yaml_config",
    # Components (lazy import)
    "ExecutionCorrelator",
    "SessionRegistry",
    "SessionProcess",
    "OutputReconciler",
    "ResultCache",
    "CleanupSweeper",
    # Errors
    "ExecutionTimeout",
    "KernelError",
    "ReconciliationInconsistency",
    "SessionShuttingDown",
    "SessionTerminated",
    "StartupFailure",
]


def __getattr__(name: str):
    if name == "ExecutionService":
        from .service import ExecutionService
        return ExecutionService
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ExecutionCorrelator":
        from .correlator import ExecutionCorrelator
        return ExecutionCorrelator
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    if name == "SessionProcess":
        from .session_process import SessionProcess
        return SessionProcess
    if name == "OutputReconciler":
        from .reconciler import OutputReconciler
        return OutputReconciler
    if name == "ResultCache":
        from .result_cache import ResultCache
        return ResultCache
    if name == "CleanupSweeper":
        from .sweeper import CleanupSweeper
        return CleanupSweeper
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
