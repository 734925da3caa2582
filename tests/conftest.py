from datetime import datetime, timedelta, timezone

import pytest

from measure_engine import database
from measure_engine.models import (
    CalibrationReference,
    Keypoint,
    KeypointFrame,
    MeasuredValue,
    MeasurementPlan,
    MeasurementSet,
    PoseType,
    ReconciledMeasurementSet,
    ReferenceMeshMetadata,
)
from measure_engine.timers import ManualScheduler
from measure_engine.verification import SessionArena

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

# 170 cm person spanning 850 px nose to heels: 0.2 cm per pixel
FRONT_JOINTS = {
    "nose": (500.0, 50.0),
    "left_heel": (550.0, 900.0),
    "right_heel": (450.0, 900.0),
    "left_shoulder": (612.5, 200.0),
    "right_shoulder": (387.5, 200.0),  # 225 px → 45 cm
    "left_elbow": (612.5, 360.0),
    "left_wrist": (612.5, 500.0),
    "left_hip": (580.0, 455.0),
    "right_hip": (420.0, 455.0),       # 160 px → 32 cm, torso 255 px → 51 cm
    "left_knee": (580.0, 640.0),
    "left_ankle": (580.0, 840.0),      # inseam 385 px → 77 cm
}

SIDE_JOINTS = {
    "nose": (500.0, 50.0),
    "left_heel": (500.0, 900.0),
    "right_heel": (500.0, 900.0),
    "left_shoulder": (500.0, 200.0),
    "right_shoulder": (500.0, 200.0),
    "left_hip": (500.0, 455.0),
    "right_hip": (500.0, 455.0),
    "chest_front": (550.0, 240.0),     # 100 px → 20 cm deep
    "chest_back": (450.0, 240.0),
    "waist_front": (545.0, 300.0),     # 90 px → 18 cm deep
    "waist_back": (455.0, 300.0),
    "hip_front": (560.0, 455.0),       # 120 px → 24 cm deep
    "hip_back": (440.0, 455.0),
}


def make_frame(joints=None, view=PoseType.FRONT, frame_id="f-front", session_id="s1", user_id="u1",
               confidence=0.9, width=1000, height=1000, normalized=False, captured_at=T0,
               overrides=None):
    joints = dict(FRONT_JOINTS if joints is None and view == PoseType.FRONT else
                  SIDE_JOINTS if joints is None else joints)
    keypoints = {name: Keypoint(x=x, y=y, confidence=confidence) for name, (x, y) in joints.items()}
    keypoints.update(overrides or {})
    return KeypointFrame(
        frame_id=frame_id,
        capture_session_id=session_id,
        user_id=user_id,
        view=view,
        width=width,
        height=height,
        normalized=normalized,
        joints=keypoints,
        captured_at=captured_at,
    )


def make_side_frame(**kwargs):
    kwargs.setdefault("frame_id", "f-side")
    kwargs.setdefault("captured_at", T0 + timedelta(seconds=5))
    return make_frame(view=PoseType.SIDE, **kwargs)


def make_set(values, pose_type=PoseType.FRONT, set_id=None, session_id="s1", user_id="u1",
             calibration_ratio=0.2, created_at=T0, verified=False):
    """values: name -> (value_cm, confidence, model[, flags])"""
    fields = {}
    for name, spec in values.items():
        value_cm, confidence, model = spec[:3]
        flags = list(spec[3]) if len(spec) > 3 else []
        fields[name] = MeasuredValue(value_cm=value_cm, confidence=confidence, model=model,
                                     flags=flags, sources=[pose_type])
    return MeasurementSet(
        set_id=set_id or f"{session_id}:{pose_type.value}:x",
        user_id=user_id,
        capture_session_id=session_id,
        pose_type=pose_type,
        calibration_ratio=calibration_ratio,
        values=fields,
        is_accurate=True,
        verified_by_user=verified,
        frame_ids=["x"],
        created_at=created_at,
        updated_at=created_at,
    )


def make_reconciled(session_id="s1", user_id="u1", accurate=True, values=None, created_at=T0):
    values = values if values is not None else {
        "shoulder_width": MeasuredValue(value_cm=45.0, confidence=0.9, model="linear", sources=["front"]),
        "waist_circumference": MeasuredValue(value_cm=88.0, confidence=0.85, model="circumference",
                                             sources=["front", "side"]),
    }
    return ReconciledMeasurementSet(
        set_id=f"{session_id}:reconciled",
        user_id=user_id,
        capture_session_id=session_id,
        pose_type=PoseType.COMBINED,
        calibration_ratio=0.2,
        values=values,
        is_accurate=accurate,
        frame_ids=["f-front", "f-side"],
        created_at=created_at,
        updated_at=created_at,
        provenance={name: [PoseType.FRONT] for name in values},
        conflicts=[],
        source_set_ids=[f"{session_id}:front:f-front"],
    )


@pytest.fixture(autouse=True)
def memory_db():
    database.configure_engine("sqlite://")
    database.init_database()
    yield database.engine
    database.drop_all_tables()


@pytest.fixture
def plan():
    return MeasurementPlan.from_config()


@pytest.fixture
def mesh_metadata():
    return ReferenceMeshMetadata.from_config()


@pytest.fixture
def reference():
    return CalibrationReference(physical_length_cm=170.0)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def arena(scheduler):
    return SessionArena(scheduler=scheduler, grace_period=120, max_retakes=3, clock=lambda: T0)


def without(joints, *names):
    return {name: point for name, point in joints.items() if name not in names}
