from __future__ import annotations

from dataclasses import replace

import pytest

from ddkernel.engine.models import (
    Artifact,
    ArtifactKind,
    Position,
    Size,
    Slot,
    SourceAnchor,
)
from ddkernel.engine.reconciler import (
    SUCCESS_MESSAGE,
    OutputReconciler,
    default_size,
    normalize_artifacts,
)

ANCHOR = SourceAnchor(position=Position(100, 100), size=Size(300, 200))
FRESH_X = 100 + 300 + 20


def text(payload: str = "Hello") -> Artifact:
    return Artifact(kind=ArtifactKind.TEXT, payload=payload)


def image(name: str = "plot1.png", width: float = 640, height: float = 480) -> Artifact:
    return Artifact(
        kind=ArtifactKind.IMAGE,
        payload=name,
        metadata={"width": width, "height": height, "mimeType": "image/png"},
    )


def error(payload: str = "Traceback: boom") -> Artifact:
    return Artifact(kind=ArtifactKind.ERROR, payload=payload)


def slot(kind: ArtifactKind, y: float, slot_id: str, height: float = 100) -> Slot:
    return Slot(
        position=Position(FRESH_X, y),
        size=Size(400, height),
        artifact_kind=kind,
        slot_id=slot_id,
    )


def _persist(outcome, prefix: str = "S") -> list[Slot]:
    """What the GUI stores after a run: assigned slots with ids."""
    slots = []
    for i, assignment in enumerate(outcome.assignments, start=1):
        s = assignment.slot
        slots.append(replace(s, slot_id=s.slot_id or f"{prefix}{i}"))
    return slots


def test_growth_allocates_non_overlapping_fresh_slots():
    outcome = OutputReconciler().reconcile([], [text(), image()], ANCHOR)

    assert outcome.new_count == 2
    assert outcome.removed == []
    first, second = (a.slot for a in outcome.assignments)
    assert first.position == Position(FRESH_X, 100)
    assert first.size == Size(400, 100)
    assert second.position == Position(FRESH_X, 220)
    assert second.size == Size(500, 400)
    assert first.position.y + first.size.height < second.position.y


def test_concrete_scenario_reuses_both_slots():
    reconciler = OutputReconciler()
    run1 = reconciler.reconcile([], [text("Hello"), image("plot1.png")], ANCHOR)
    prior = _persist(run1)
    assert [s.slot_id for s in prior] == ["S1", "S2"]

    run2 = reconciler.reconcile(prior, [text("World"), image("plot2.png")], ANCHOR)

    assert run2.new_count == 0
    assert run2.removed == []
    world, plot2 = run2.assignments
    assert world.artifact.payload == "World"
    assert world.slot.slot_id == "S1"
    assert plot2.artifact.payload == "plot2.png"
    assert plot2.slot.slot_id == "S2"


def test_same_kind_sequence_is_idempotent_across_runs():
    reconciler = OutputReconciler()
    prior = _persist(reconciler.reconcile([], [text(), image()], ANCHOR))
    expected = [s.to_dict() for s in prior]

    for run in range(5):
        outcome = reconciler.reconcile(
            prior, [text(f"run {run}"), image(f"plot{run}.png")], ANCHOR,
        )
        assert [a.slot.to_dict() for a in outcome.assignments] == expected
        assert outcome.reused_count == 2
        prior = _persist(outcome)


def test_shrink_reuses_one_and_removes_the_rest():
    prior = [
        slot(ArtifactKind.TEXT, 100, "S1"),
        slot(ArtifactKind.IMAGE, 220, "S2", height=400),
        slot(ArtifactKind.TEXT, 640, "S3"),
    ]
    outcome = OutputReconciler().reconcile(prior, [text()], ANCHOR)

    assert outcome.reused_count == 1
    assert outcome.new_count == 0
    assert outcome.assignments[0].slot.slot_id == "S1"
    assert [s.slot_id for s in outcome.removed] == ["S2", "S3"]


def test_growth_past_prior_slots_stacks_after_reused_ones():
    prior = [slot(ArtifactKind.TEXT, 100, "S1")]
    outcome = OutputReconciler().reconcile(prior, [text(), image()], ANCHOR)

    reused, fresh = outcome.assignments
    assert reused.is_new is False
    assert fresh.is_new is True
    assert fresh.slot.position == Position(FRESH_X, 100 + 100 + 20)


def test_fresh_slots_start_below_a_moved_reused_slot():
    # The user dragged the reused text slot down past the default stack.
    prior = [slot(ArtifactKind.TEXT, 400, "S1", height=150)]
    outcome = OutputReconciler().reconcile(prior, [text(), image()], ANCHOR)

    reused, fresh = (a.slot for a in outcome.assignments)
    assert reused.position == Position(FRESH_X, 400)
    assert fresh.position == Position(FRESH_X, 400 + 150 + 20)
    assert reused.position.y + reused.size.height < fresh.position.y


def test_reused_slot_moved_above_the_anchor_keeps_default_stacking():
    prior = [slot(ArtifactKind.TEXT, -300, "S1")]
    outcome = OutputReconciler().reconcile(prior, [text(), image()], ANCHOR)

    fresh = outcome.assignments[1].slot
    assert fresh.position == Position(FRESH_X, 100 + 100 + 20)


def test_kind_mismatch_reuses_slot_under_cursor():
    prior = [slot(ArtifactKind.IMAGE, 100, "S1", height=300)]
    outcome = OutputReconciler().reconcile(prior, [text("now text")], ANCHOR)

    (assignment,) = outcome.assignments
    assert assignment.is_new is False
    assert assignment.slot.slot_id == "S1"
    assert assignment.slot.artifact_kind == ArtifactKind.TEXT
    assert assignment.slot.size == Size(400, 300)


def test_kind_scan_skips_ahead_and_removes_jumped_slots():
    prior = [
        slot(ArtifactKind.TEXT, 100, "T1"),
        slot(ArtifactKind.IMAGE, 220, "I1", height=400),
    ]
    outcome = OutputReconciler().reconcile(prior, [image()], ANCHOR)

    assert outcome.assignments[0].slot.slot_id == "I1"
    assert [s.slot_id for s in outcome.removed] == ["T1"]


def test_prior_slots_are_ordered_by_vertical_position():
    prior = [
        slot(ArtifactKind.TEXT, 500, "low"),
        slot(ArtifactKind.TEXT, 100, "high"),
    ]
    outcome = OutputReconciler().reconcile(prior, [text()], ANCHOR)

    assert outcome.assignments[0].slot.slot_id == "high"
    assert [s.slot_id for s in outcome.removed] == ["low"]


def test_zero_output_reuses_first_prior_slot_for_success():
    prior = [slot(ArtifactKind.TEXT, 100, "S1")]
    outcome = OutputReconciler().reconcile(prior, [], ANCHOR)

    (assignment,) = outcome.assignments
    assert assignment.artifact.kind == ArtifactKind.SUCCESS
    assert assignment.artifact.payload == SUCCESS_MESSAGE
    assert assignment.slot.slot_id == "S1"
    assert outcome.removed == []


def test_zero_output_without_prior_gets_fresh_success_slot():
    outcome = OutputReconciler().reconcile([], [], ANCHOR)

    (assignment,) = outcome.assignments
    assert assignment.is_new is True
    assert assignment.slot.size == Size(300, 60)
    assert assignment.slot.position == Position(FRESH_X, 100)


def test_error_is_the_only_artifact_considered():
    prior = [
        slot(ArtifactKind.TEXT, 100, "S1"),
        slot(ArtifactKind.IMAGE, 220, "S2", height=400),
    ]
    artifacts = [text("partial"), error("first"), image(), error("second")]
    outcome = OutputReconciler().reconcile(prior, artifacts, ANCHOR)

    (assignment,) = outcome.assignments
    assert assignment.artifact.payload == "first"
    assert assignment.slot.slot_id == "S1"
    assert [s.slot_id for s in outcome.removed] == ["S2"]


def test_inconsistent_prior_falls_back_to_fresh_allocation():
    broken = Slot(
        position=Position(FRESH_X, 100),
        size=Size(0, 0),
        artifact_kind=ArtifactKind.TEXT,
        slot_id="S1",
    )
    outcome = OutputReconciler().reconcile([broken], [text()], ANCHOR)

    assert outcome.new_count == 1
    assert outcome.removed == [broken]
    assert outcome.assignments[0].slot.size == Size(400, 100)


def test_normalize_artifacts_rules():
    assert normalize_artifacts([]) == [
        Artifact(kind=ArtifactKind.SUCCESS, payload=SUCCESS_MESSAGE)
    ]
    e = error()
    assert normalize_artifacts([text(), e]) == [e]
    items = [text(), image()]
    assert normalize_artifacts(items) == items


@pytest.mark.parametrize(
    "artifact, expected",
    [
        (text("one line"), Size(400, 100)),
        (text("\n".join(["x"] * 10)), Size(400, 240)),
        (text("\n".join(["x"] * 20)), Size(400, 300)),
        (image(width=300, height=200), Size(300, 200)),
        (image(width=2000, height=1500), Size(500, 400)),
        (Artifact(kind=ArtifactKind.IMAGE, payload="p.png"), Size(400, 300)),
        (Artifact(kind=ArtifactKind.SUCCESS, payload="ok"), Size(300, 60)),
    ],
)
def test_default_sizes(artifact, expected):
    assert default_size(artifact) == expected


def test_reconciliation_serializes_for_the_api():
    outcome = OutputReconciler().reconcile(
        [slot(ArtifactKind.TEXT, 100, "S1"), slot(ArtifactKind.TEXT, 300, "S2")],
        [text()],
        ANCHOR,
    )
    data = outcome.to_dict()
    assert data["assignments"][0]["isNew"] is False
    assert data["assignments"][0]["slot"]["slotId"] == "S1"
    assert data["assignments"][0]["artifact"]["kind"] == "text"
    assert data["removed"][0]["slotId"] == "S2"
