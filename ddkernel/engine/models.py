"""Core data models for the execution kernel.

All dataclasses and enums shared by the codec, the session layer, the
reconciler and the HTTP surface. Single source of truth to avoid
circular imports.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    STARTING = "starting"
    READY = "ready"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


class ArtifactKind(str, Enum):
    """Kinds of discrete execution output."""
    TEXT = "text"
    ERROR = "error"
    IMAGE = "image"
    SUCCESS = "success"


@dataclass(frozen=True)
class Artifact:
    """One piece of execution output, ordered as the interpreter emitted it."""
    kind: ArtifactKind
    payload: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "payload": self.payload,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Artifact:
        """Build from API or wire dicts.

        Accepts ``kind``/``payload`` as well as the interpreter's
        ``type``/``data`` spelling.
        """
        kind = ArtifactKind(data.get("kind") or data.get("type"))
        payload = data.get("payload", data.get("data", ""))
        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        return cls(kind=kind, payload=str(payload), metadata=dict(metadata))


@dataclass(frozen=True)
class ExecutionRequest:
    """A single request to run code in a session. Immutable once created."""
    execution_id: str
    session_key: str
    code: str
    source_id: str | None = None


@dataclass
class ExecutionResult:
    """Outcome of one execution as reported by the interpreter."""
    execution_id: str
    stdout: str = ""
    stderr: str = ""
    artifacts: list[Artifact] = field(default_factory=list)
    success: bool = True
    created_at: datetime = field(default_factory=_utc_now)

    @classmethod
    def from_wire(cls, execution_id: str, raw: dict[str, Any]) -> ExecutionResult:
        """Lift a ``RESULT:`` payload into a result with ordered artifacts.

        stdout becomes a leading ``text`` artifact, stderr an ``error``
        artifact, and rich outputs follow in emission order. A non-blank
        stderr marks the run as failed.
        """
        stdout = str(raw.get("stdout") or "").strip()
        stderr = str(raw.get("stderr") or "").strip()

        artifacts: list[Artifact] = []
        if stdout:
            artifacts.append(Artifact(kind=ArtifactKind.TEXT, payload=stdout))
        if stderr:
            artifacts.append(Artifact(kind=ArtifactKind.ERROR, payload=stderr))

        rich = raw.get("artifacts")
        if rich is None:
            rich = raw.get("outputs") or []
        if not isinstance(rich, list):
            logger.warning(
                "Ignoring non-list artifacts in result %s: %r",
                execution_id, type(rich).__name__,
            )
            rich = []
        for item in rich:
            if not isinstance(item, dict):
                continue
            try:
                artifacts.append(Artifact.from_dict(item))
            except (ValueError, TypeError):
                logger.debug(
                    "Skipping unknown artifact kind in result %s: %r",
                    execution_id, item.get("kind") or item.get("type"),
                )

        return cls(
            execution_id=execution_id,
            stdout=stdout,
            stderr=stderr,
            artifacts=artifacts,
            success=not stderr,
        )

    @property
    def artifact_files(self) -> list[str]:
        """Filenames of image artifacts stored in the artifact directory."""
        return [
            a.payload for a in self.artifacts
            if a.kind == ArtifactKind.IMAGE and a.payload
        ]


@dataclass
class ExecutionResponse:
    """What the Execution API hands back to the GUI."""
    execution_id: str
    source_id: str | None
    session_key: str
    stdout: str
    stderr: str
    artifacts: list[Artifact]
    success: bool
    execution_time_ms: int
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "sourceId": self.source_id,
            "sessionKey": self.session_key,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "success": self.success,
            "executionTimeMs": self.execution_time_ms,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PendingEntry:
    """A caller waiting on one execution ID."""
    execution_id: str
    future: asyncio.Future
    deadline: float | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


# ── Display geometry ──


@dataclass(frozen=True)
class Position:
    x: float
    y: float


@dataclass(frozen=True)
class Size:
    width: float
    height: float


@dataclass(frozen=True)
class Slot:
    """Externally owned display location bound to one artifact of one source."""
    position: Position
    size: Size
    artifact_kind: ArtifactKind
    slot_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "slotId": self.slot_id,
            "position": {"x": self.position.x, "y": self.position.y},
            "size": {"width": self.size.width, "height": self.size.height},
            "artifactKind": self.artifact_kind.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Slot:
        position = data.get("position") or {}
        size = data.get("size") or {}
        return cls(
            position=Position(float(position.get("x", 0)), float(position.get("y", 0))),
            size=Size(float(size.get("width", 0)), float(size.get("height", 0))),
            artifact_kind=ArtifactKind(data.get("artifactKind", "text")),
            slot_id=data.get("slotId"),
        )


@dataclass(frozen=True)
class SourceAnchor:
    """Geometry of the source cell that fresh slots are stacked beside."""
    position: Position
    size: Size

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceAnchor:
        position = data.get("position") or {}
        size = data.get("size") or {}
        return cls(
            position=Position(float(position.get("x", 0)), float(position.get("y", 0))),
            size=Size(float(size.get("width", 0)), float(size.get("height", 0))),
        )


@dataclass(frozen=True)
class Assignment:
    artifact: Artifact
    slot: Slot
    is_new: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact": self.artifact.to_dict(),
            "slot": self.slot.to_dict(),
            "isNew": self.is_new,
        }


@dataclass
class Reconciliation:
    """Slot assignments for one run plus the prior slots to discard."""
    assignments: list[Assignment] = field(default_factory=list)
    removed: list[Slot] = field(default_factory=list)

    @property
    def new_count(self) -> int:
        return sum(1 for a in self.assignments if a.is_new)

    @property
    def reused_count(self) -> int:
        return sum(1 for a in self.assignments if not a.is_new)

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignments": [a.to_dict() for a in self.assignments],
            "removed": [s.to_dict() for s in self.removed],
        }
