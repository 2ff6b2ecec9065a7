"""Tests for the staleness tracker on its own."""

from kiln import step as steps
from kiln.graph import StepGraph
from kiln.stages import StageCoordinator
from kiln.tracker import StalenessTracker

from conftest import BUILD

A = steps.std(0, BUILD, BUILD)
B = steps.compiler(1, BUILD)


def _tracker(config):
    coordinator = StageCoordinator(config)
    plan = StepGraph(coordinator).resolve(B)
    return StalenessTracker(coordinator, plan)


def test_never_built(fake):
    status = _tracker(fake.config()).check(A)
    assert status.stale
    assert status.reason == "no fingerprint recorded"


def test_recorded_is_fresh(fake):
    tracker = _tracker(fake.config())
    tracker.record(tracker.check(A).fingerprint)
    assert not tracker.is_stale(A)


def test_rebuilt_dependency(fake):
    tracker = _tracker(fake.config())
    tracker.record(tracker.check(A).fingerprint)
    tracker.record(tracker.check(B).fingerprint)
    assert not tracker.is_stale(B)
    assert tracker.check(B, rebuilt={A}).reason == f"dependency rebuilt: {A}"


def test_dependency_identity_moved(fake):
    tracker = _tracker(fake.config())
    tracker.record(tracker.check(A).fingerprint)
    tracker.record(tracker.check(B).fingerprint)
    fake.touch("library/core.src")
    tracker.record(tracker.check(A).fingerprint)
    assert tracker.check(B).reason == f"dependency changed: {A}"


def test_config_change(fake):
    tracker = _tracker(fake.config())
    tracker.record(tracker.check(A).fingerprint)
    assert _tracker(fake.config(debug_assertions=True)).check(A).reason == "configuration changed"


def test_invalidate(fake):
    tracker = _tracker(fake.config())
    tracker.record(tracker.check(A).fingerprint)
    tracker.invalidate(A)
    assert tracker.check(A).reason == "no fingerprint recorded"


def test_inputs_include_stage0_compiler(fake):
    tracker = _tracker(fake.config())
    assert fake.stage0 in tracker.inputs(A)
    assert fake.src.resolve() / "library" in tracker.inputs(A)
