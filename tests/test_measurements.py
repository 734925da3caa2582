import math

import pytest

from measure_engine.calibration import calibrate
from measure_engine.errors import InvalidCalibration, PlanMismatch, SessionMismatch
from measure_engine.measurements import check_against_plan, compute_measurements, is_accurate
from measure_engine.models import (
    ESTIMATED_FROM_FRONT_ONLY,
    OUTSIDE_PLAUSIBLE_RANGE,
    MeasuredValue,
    MeasurementModel,
    PoseType,
)
from measure_engine.utils import ellipse_circumference

from conftest import FRONT_JOINTS, T0, make_frame, make_set, make_side_frame


@pytest.fixture
def front(reference):
    frame = make_frame()
    return frame, calibrate(frame, reference)


@pytest.fixture
def side(reference):
    frame = make_side_frame()
    return frame, calibrate(frame, reference)


def test_front_linear_measurements(front, plan):
    frame, calibration = front
    ms = compute_measurements(frame, calibration, plan)

    assert ms.pose_type == PoseType.FRONT
    assert abs(ms.value("shoulder_width") - 45.0) < 1e-6
    assert ms.value("hip_width") == pytest.approx(32.0)
    assert ms.value("upper_arm_length") == pytest.approx(32.0)
    assert ms.value("arm_length") == pytest.approx(60.0)
    assert ms.value("inseam") == pytest.approx(77.0)
    assert ms.value("top_length") == pytest.approx(51.0)
    assert ms.calibration_ratio == pytest.approx(0.2)
    assert ms.values["shoulder_width"].joints == ["left_shoulder", "right_shoulder"]


def test_front_only_circumference_is_flagged(front, plan):
    frame, calibration = front
    chest = compute_measurements(frame, calibration, plan).values["chest_circumference"]

    a = 45.0 * 0.85 / 2
    assert chest.value_cm == pytest.approx(ellipse_circumference(a, a * 0.7))
    assert chest.confidence == pytest.approx(0.9 * 0.7)
    assert ESTIMATED_FROM_FRONT_ONLY in chest.flags
    assert chest.sources == [PoseType.FRONT]


def test_front_set_with_estimates_is_not_accurate(front, plan):
    frame, calibration = front
    assert compute_measurements(frame, calibration, plan).is_accurate is False


def test_side_set_measures_only_side_fields(side, plan):
    frame, calibration = side
    ms = compute_measurements(frame, calibration, plan)
    assert set(ms.values) == {"top_length"}
    assert ms.value("top_length") == pytest.approx(51.0)
    assert ms.is_accurate


def test_combined_set_uses_side_depth(front, side, plan):
    frame, calibration = front
    side_frame, side_calibration = side
    ms = compute_measurements(frame, calibration, plan, side_frame, side_calibration)

    assert ms.pose_type == PoseType.COMBINED
    assert set(ms.values) == {"chest_circumference", "waist_circumference", "hip_circumference"}
    assert ms.value("chest_circumference") == pytest.approx(ellipse_circumference(45.0 * 0.85 / 2, 10.0))
    assert ms.value("waist_circumference") == pytest.approx(ellipse_circumference(32.0 * 1.15 / 2, 9.0))
    assert ms.value("hip_circumference") == pytest.approx(ellipse_circumference(32.0 * 1.45 / 2, 12.0))
    assert ms.values["waist_circumference"].sources == [PoseType.FRONT, PoseType.SIDE]
    assert ms.frame_ids == ["f-front", "f-side"]
    assert ms.is_accurate


def test_deterministic_identity(front, plan):
    frame, calibration = front
    first = compute_measurements(frame, calibration, plan)
    second = compute_measurements(frame, calibration, plan)
    assert first == second
    assert first.set_id == "s1:front:f-front"
    assert first.created_at == T0


def test_calibration_of_another_frame_is_refused(front, side, plan):
    frame, _ = front
    _, side_calibration = side
    with pytest.raises(InvalidCalibration):
        compute_measurements(frame, side_calibration, plan)


def test_combined_frames_must_share_session(front, reference, plan):
    frame, calibration = front
    other = make_side_frame(session_id="s2")
    with pytest.raises(SessionMismatch):
        compute_measurements(frame, calibration, plan, other, calibrate(other, reference))


def test_implausible_value_is_flagged(reference, plan):
    joints = dict(FRONT_JOINTS, left_shoulder=(700.0, 200.0), right_shoulder=(300.0, 200.0))
    frame = make_frame(joints=joints)
    ms = compute_measurements(frame, calibrate(frame, reference), plan)
    assert ms.value("shoulder_width") == pytest.approx(80.0)
    assert OUTSIDE_PLAUSIBLE_RANGE in ms.values["shoulder_width"].flags


def test_accuracy_needs_confidence_above_threshold():
    values = {"hip_width": MeasuredValue(value_cm=32.0, confidence=0.6, model="linear")}
    assert is_accurate(values, threshold=0.6) is False
    assert is_accurate(values, threshold=0.5) is True
    assert is_accurate({}, threshold=0.5) is False


def test_inches_conversion():
    value = MeasuredValue(value_cm=100.0, confidence=0.9, model=MeasurementModel.LINEAR)
    assert value.inches == pytest.approx(39.37)


def test_check_against_plan(plan):
    good = make_set({"hip_width": (32.0, 0.9, "linear")})
    assert check_against_plan(good, plan) is good

    with pytest.raises(PlanMismatch):
        check_against_plan(make_set({"neck_length": (10.0, 0.9, "linear")}), plan)
    with pytest.raises(PlanMismatch):
        check_against_plan(make_set({"hip_width": (32.0, 0.9, "circumference")}), plan)
    with pytest.raises(PlanMismatch):
        check_against_plan(make_set({"hip_width": (math.nan, 0.9, "linear")}), plan)
