import threading

import pytest

from measure_engine import pipeline
from measure_engine.errors import InvalidTransition, NotAccepted, SessionMismatch
from measure_engine.models import PoseType, VerificationState
from measure_engine.pipeline import ingest_frame, mesh_for_session, reconcile_session

from conftest import FRONT_JOINTS, make_frame, make_side_frame, without


@pytest.fixture
def session(arena, reference):
    return arena.start_session("u1", reference, session_id="s1")


def test_full_capture_to_mesh(arena, session, plan, mesh_metadata, scheduler):
    front = ingest_frame(arena, "s1", make_frame(), plan)
    side = ingest_frame(arena, "s1", make_side_frame(), plan)
    assert front.accepted and side.accepted
    assert front.calibration.scale_factor == pytest.approx(0.2)

    reconciled = reconcile_session(arena, "s1", plan)

    assert session.state == VerificationState.PENDING_REVIEW
    assert reconciled.is_accurate
    assert abs(reconciled.value("shoulder_width") - 45.0) < 1e-6
    assert not scheduler.is_scheduled("s1")
    assert [s.pose_type for s in session.view_sets] == [PoseType.FRONT, PoseType.SIDE, PoseType.COMBINED]

    arena.accept("s1")
    mesh = mesh_for_session(arena, "s1", mesh_metadata)
    assert mesh.source_set_id == "s1:reconciled"
    assert mesh.params["shoulder_breadth"] == pytest.approx(0.6)
    assert mesh.params["torso_length"] == pytest.approx((51.0 - 40.0) / 35.0)
    assert mesh.warnings == []


def test_front_only_capture_starts_grace_timer(arena, session, plan, scheduler):
    ingest_frame(arena, "s1", make_frame(), plan)

    reconciled = reconcile_session(arena, "s1", plan)

    assert not reconciled.is_accurate
    assert scheduler.is_scheduled("s1")


def test_side_only_capture_starts_grace_timer(arena, session, plan, scheduler):
    ingest_frame(arena, "s1", make_side_frame(), plan)

    reconciled = reconcile_session(arena, "s1", plan)

    assert set(reconciled.values) == {"top_length"}
    assert "waist_circumference" in reconciled.missing
    assert not reconciled.is_accurate
    assert session.state == VerificationState.PENDING_REVIEW
    assert scheduler.is_scheduled("s1")


def test_rejected_frame_is_recorded(arena, session, plan):
    outcome = ingest_frame(arena, "s1", make_frame(joints=without(FRONT_JOINTS, "left_knee")), plan)

    assert not outcome.accepted
    assert outcome.rejection.reason == "MissingJoint"
    assert outcome.rejection.joint == "left_knee"
    assert outcome.state == VerificationState.CAPTURED
    assert session.frames == []
    assert len(session.rejections) == 1


def test_uncalibratable_frame_is_recorded(arena, session, plan):
    joints = dict(FRONT_JOINTS, left_heel=(520.0, 70.0), right_heel=(480.0, 70.0))
    outcome = ingest_frame(arena, "s1", make_frame(joints=joints), plan)

    assert not outcome.accepted
    assert outcome.rejection.reason == "InvalidCalibration"
    assert session.frames == []


def test_recapture_after_rejection(arena, session, plan):
    ingest_frame(arena, "s1", make_frame(frame_id="bad", confidence=0.1), plan)
    ingest_frame(arena, "s1", make_frame(frame_id="good"), plan)

    assert [f.frame_id for f in session.frames] == ["good"]
    assert [r.frame_id for r in session.rejections] == ["bad"]
    assert session.rejections[0].reason == "LowConfidence"


def test_frame_for_other_session_is_refused(arena, session, plan):
    with pytest.raises(SessionMismatch):
        ingest_frame(arena, "s1", make_frame(session_id="s2"), plan)


def test_reconcile_needs_frames(arena, session, plan):
    with pytest.raises(InvalidTransition):
        reconcile_session(arena, "s1", plan)


def test_reconcile_only_once(arena, session, plan):
    ingest_frame(arena, "s1", make_frame(), plan)
    reconcile_session(arena, "s1", plan)
    with pytest.raises(InvalidTransition):
        reconcile_session(arena, "s1", plan)


def test_mesh_requires_accepted_session(arena, session, plan, mesh_metadata):
    ingest_frame(arena, "s1", make_frame(), plan)
    reconcile_session(arena, "s1", plan)
    with pytest.raises(NotAccepted):
        mesh_for_session(arena, "s1", mesh_metadata)


def test_frames_wait_for_reconciliation_to_finish(arena, session, plan, monkeypatch):
    ingest_frame(arena, "s1", make_frame(), plan)
    outcome = {}

    def late_frame():
        try:
            arena.add_frame("s1", make_side_frame())
            outcome["added"] = True
        except InvalidTransition as e:
            outcome["error"] = e

    measure = pipeline.compute_view_sets

    def measure_while_frame_arrives(frames, calibrations, plan):
        worker = threading.Thread(target=late_frame)
        worker.start()
        worker.join(timeout=0.1)
        outcome["blocked"] = worker.is_alive()
        outcome["worker"] = worker
        return measure(frames, calibrations, plan)

    monkeypatch.setattr(pipeline, "compute_view_sets", measure_while_frame_arrives)
    reconcile_session(arena, "s1", plan)
    outcome["worker"].join(timeout=5)

    assert outcome["blocked"]
    assert "added" not in outcome
    assert isinstance(outcome["error"], InvalidTransition)
    assert [f.frame_id for f in session.frames] == ["f-front"]
    assert session.reconciled.frame_ids == ["f-front"]
