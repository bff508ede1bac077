"""Assigns display slots to a source's new artifacts.

Prior slots for the source are ordered by vertical position (then
horizontal, then slot id) and walked with a single cursor:

    for each artifact:
        1. first prior slot at or after the cursor with the same kind
        2. else the slot under the cursor, whatever its kind
        3. else a fresh slot stacked beside the source

Whatever is left after the cursor, plus any slot the kind scan jumped
over, is returned as ``removed``. The same sequence of kinds therefore
lands in the same slots on every re-execution.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence

from .errors import ReconciliationInconsistency
from .models import (
    Artifact,
    ArtifactKind,
    Assignment,
    Position,
    Reconciliation,
    Size,
    Slot,
    SourceAnchor,
)

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Execution completed successfully"

TEXT_WIDTH = 400.0
TEXT_MIN_HEIGHT = 100.0
TEXT_MAX_HEIGHT = 300.0
TEXT_LINE_HEIGHT = 20.0
TEXT_PADDING = 40.0
IMAGE_DEFAULT_WIDTH = 400.0
IMAGE_DEFAULT_HEIGHT = 300.0
IMAGE_MAX_WIDTH = 500.0
IMAGE_MAX_HEIGHT = 400.0
SUCCESS_SIZE = Size(300.0, 60.0)


def normalize_artifacts(artifacts: Sequence[Artifact]) -> list[Artifact]:
    """Apply the error-only and never-empty rules."""
    for artifact in artifacts:
        if artifact.kind == ArtifactKind.ERROR:
            return [artifact]
    if not artifacts:
        return [Artifact(kind=ArtifactKind.SUCCESS, payload=SUCCESS_MESSAGE)]
    return list(artifacts)


def default_size(artifact: Artifact) -> Size:
    """Size of a freshly allocated slot for ``artifact``."""
    if artifact.kind == ArtifactKind.IMAGE:
        width = _positive(artifact.metadata.get("width"), IMAGE_DEFAULT_WIDTH)
        height = _positive(artifact.metadata.get("height"), IMAGE_DEFAULT_HEIGHT)
        return Size(min(IMAGE_MAX_WIDTH, width), min(IMAGE_MAX_HEIGHT, height))
    if artifact.kind == ArtifactKind.SUCCESS:
        return SUCCESS_SIZE
    lines = artifact.payload.count("\n") + 1
    height = lines * TEXT_LINE_HEIGHT + TEXT_PADDING
    return Size(TEXT_WIDTH, max(TEXT_MIN_HEIGHT, min(TEXT_MAX_HEIGHT, height)))


def _positive(value, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _slot_order(slot: Slot) -> tuple:
    return (slot.position.y, slot.position.x, slot.slot_id or "")


class OutputReconciler:
    """Deterministic slot assignment across re-executions of one source."""

    def __init__(self, gap: float = 20.0) -> None:
        self._gap = gap

    def reconcile(
        self,
        prior_slots: Sequence[Slot],
        artifacts: Sequence[Artifact],
        anchor: SourceAnchor,
    ) -> Reconciliation:
        considered = normalize_artifacts(artifacts)
        ordered = sorted(prior_slots, key=_slot_order)
        try:
            return self._match(ordered, considered, anchor)
        except ReconciliationInconsistency as exc:
            logger.warning("%s; falling back to default slot allocation", exc)
            return self._allocate_all(ordered, considered, anchor)

    def _match(
        self,
        prior: list[Slot],
        artifacts: list[Artifact],
        anchor: SourceAnchor,
    ) -> Reconciliation:
        outcome = Reconciliation()
        skipped: list[Slot] = []
        cursor = 0
        offset = 0.0

        for artifact in artifacts:
            match = None
            for j in range(cursor, len(prior)):
                if prior[j].artifact_kind == artifact.kind:
                    match = j
                    break
            if match is None and cursor < len(prior):
                match = cursor

            if match is not None:
                skipped.extend(prior[cursor:match])
                source = prior[match]
                _check_slot(source)
                slot = Slot(
                    position=source.position,
                    size=source.size,
                    artifact_kind=artifact.kind,
                    slot_id=source.slot_id,
                )
                cursor = match + 1
                is_new = False
            else:
                slot = self._fresh_slot(artifact, anchor, offset)
                is_new = True

            outcome.assignments.append(
                Assignment(artifact=artifact, slot=slot, is_new=is_new)
            )
            offset += slot.size.height + self._gap
            if not is_new:
                # Fresh slots start below every reused slot, wherever it sits.
                bottom = slot.position.y + slot.size.height - anchor.position.y
                offset = max(offset, bottom + self._gap)

        outcome.removed = skipped + prior[cursor:]
        if len(outcome.assignments) != len(artifacts):
            raise ReconciliationInconsistency(
                f"assigned {len(outcome.assignments)} of {len(artifacts)} artifacts"
            )
        return outcome

    def _allocate_all(
        self,
        prior: list[Slot],
        artifacts: list[Artifact],
        anchor: SourceAnchor,
    ) -> Reconciliation:
        outcome = Reconciliation(removed=list(prior))
        offset = 0.0
        for artifact in artifacts:
            slot = self._fresh_slot(artifact, anchor, offset)
            outcome.assignments.append(
                Assignment(artifact=artifact, slot=slot, is_new=True)
            )
            offset += slot.size.height + self._gap
        return outcome

    def _fresh_slot(
        self, artifact: Artifact, anchor: SourceAnchor, offset: float,
    ) -> Slot:
        return Slot(
            position=Position(
                anchor.position.x + anchor.size.width + self._gap,
                anchor.position.y + offset,
            ),
            size=default_size(artifact),
            artifact_kind=artifact.kind,
        )


def _check_slot(slot: Slot) -> None:
    if slot.size.width <= 0 or slot.size.height <= 0:
        raise ReconciliationInconsistency(
            f"prior slot {slot.slot_id or '<unnamed>'} has non-positive size "
            f"{slot.size.width}x{slot.size.height}"
        )
