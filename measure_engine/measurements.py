# Measurement Computation Engine - calibrated keypoints to named body measurements
import math
from typing import Dict, List, Optional, Tuple

from measure_engine import config, logger
from measure_engine.errors import InvalidCalibration, PlanMismatch, SessionMismatch
from measure_engine.models import (
    ESTIMATED_FROM_FRONT_ONLY,
    OUTSIDE_PLAUSIBLE_RANGE,
    Calibration,
    KeypointFrame,
    MeasuredValue,
    MeasurementModel,
    MeasurementPlan,
    MeasurementSet,
    MeasurementSpec,
    PoseType,
    joint_names,
)
from measure_engine.utils import distance, ellipse_circumference, path_length


def _has_joints(frame: KeypointFrame, refs) -> bool:
    return all(name in frame.joints for ref in refs for name in joint_names(ref))


def _used_joints(refs) -> List[str]:
    return [name for ref in refs for name in joint_names(ref)]


def linear_measurement(frame: KeypointFrame, calibration: Calibration,
                       spec: MeasurementSpec) -> MeasuredValue:
    """Physical length along a joint pair or path"""
    pixels = path_length([frame.point(ref) for ref in spec.joints])
    confidence = min(frame.confidence_of(ref) for ref in spec.joints)
    return MeasuredValue(
        value_cm=pixels * calibration.scale_factor,
        confidence=confidence,
        model=MeasurementModel.LINEAR,
        joints=_used_joints(spec.joints),
        sources=[frame.view],
    )


def circumference_measurement(front: KeypointFrame, front_calibration: Calibration,
                              spec: MeasurementSpec, side: Optional[KeypointFrame] = None,
                              side_calibration: Optional[Calibration] = None) -> MeasuredValue:
    """
    Elliptical girth estimate from front-view width and side-view depth

    Half-axes: a from the front width, b from the side depth. Without a side
    view, b is assumed from the width and the value is flagged as a
    front-only estimate with reduced confidence.
    """
    width_a, width_b = spec.width_joints
    width_px = distance(front.point(width_a), front.point(width_b))
    a = width_px * front_calibration.scale_factor * spec.width_factor / 2
    confidence = min(front.confidence_of(width_a), front.confidence_of(width_b))
    joints = _used_joints(spec.width_joints)
    flags = []
    sources = [PoseType.FRONT]

    if side is not None:
        depth_a, depth_b = spec.depth_joints
        depth_px = distance(side.point(depth_a), side.point(depth_b))
        b = depth_px * side_calibration.scale_factor * spec.depth_factor / 2
        confidence = min(confidence, side.confidence_of(depth_a), side.confidence_of(depth_b))
        joints += _used_joints(spec.depth_joints)
        sources.append(PoseType.SIDE)
    else:
        b = a * config.FRONT_ONLY_DEPTH_RATIO
        confidence *= config.FRONT_ONLY_CONFIDENCE_PENALTY
        flags.append(ESTIMATED_FROM_FRONT_ONLY)

    return MeasuredValue(
        value_cm=ellipse_circumference(a, b),
        confidence=confidence,
        model=MeasurementModel.CIRCUMFERENCE,
        joints=joints,
        flags=flags,
        sources=sources,
    )


def _check_plausible(value: MeasuredValue, spec: MeasurementSpec, reference_length_cm: float) -> MeasuredValue:
    if spec.plausible_ratio is None or reference_length_cm <= 0:
        return value
    low, high = spec.plausible_ratio
    ratio = value.value_cm / reference_length_cm
    if low <= ratio <= high:
        return value
    return value.model_copy(update={"flags": value.flags + [OUTSIDE_PLAUSIBLE_RANGE]})


def is_accurate(values: Dict[str, MeasuredValue], threshold: float = None) -> bool:
    """Every field confident enough and none flagged"""
    threshold = config.ACCURACY_THRESHOLD if threshold is None else threshold
    if not values:
        return False
    return all(field.confidence > threshold and not field.flags for field in values.values())


def _check_pair(frame: KeypointFrame, calibration: Calibration):
    if calibration.frame_id != frame.frame_id:
        raise InvalidCalibration(
            f"Calibration of frame {calibration.frame_id} cannot be applied to frame {frame.frame_id}"
        )


def compute_measurements(frame: KeypointFrame, calibration: Calibration, plan: MeasurementPlan,
                         side_frame: Optional[KeypointFrame] = None,
                         side_calibration: Optional[Calibration] = None,
                         accuracy_threshold: float = None) -> MeasurementSet:
    """
    Convert one calibrated frame (or a front + side pair) into a MeasurementSet

    Pure and deterministic: identifiers and timestamps derive from the inputs,
    so the same (frame, calibration, plan) always produces the same set.

    With a side frame the set is `combined` and carries only the fields that
    need both views (circumferences). Without one, the frame's own view
    decides which linear fields apply.
    """
    _check_pair(frame, calibration)

    frames: Tuple[KeypointFrame, ...] = (frame,)
    if side_frame is not None:
        if side_calibration is None:
            raise InvalidCalibration(f"Side frame {side_frame.frame_id} has no calibration")
        _check_pair(side_frame, side_calibration)
        if frame.view != PoseType.FRONT or side_frame.view != PoseType.SIDE:
            raise SessionMismatch("A combined measurement needs one front and one side frame")
        if (side_frame.capture_session_id, side_frame.user_id) != (frame.capture_session_id, frame.user_id):
            raise SessionMismatch("Front and side frames belong to different capture sessions")
        frames = (frame, side_frame)
        pose_type = PoseType.COMBINED
    else:
        pose_type = frame.view

    values: Dict[str, MeasuredValue] = {}
    for name, spec in plan.measurements.items():
        if spec.model == MeasurementModel.LINEAR:
            if pose_type == PoseType.COMBINED or frame.view not in spec.views:
                continue
            if not _has_joints(frame, spec.joints):
                logger.log_warning("Measurement Skipped", {"measurement": name, "frame_id": frame.frame_id})
                continue
            field = linear_measurement(frame, calibration, spec)
        else:
            if frame.view != PoseType.FRONT or not _has_joints(frame, spec.width_joints):
                continue
            if side_frame is not None and not _has_joints(side_frame, spec.depth_joints):
                logger.log_warning("Measurement Skipped", {"measurement": name, "frame_id": side_frame.frame_id})
                continue
            field = circumference_measurement(frame, calibration, spec, side_frame, side_calibration)

        values[name] = _check_plausible(field, spec, calibration.reference_length_cm)

    frame_ids = [f.frame_id for f in frames]
    created_at = max(f.captured_at for f in frames)
    accurate = is_accurate(values, accuracy_threshold)

    logger.log_measure("Computed Measurements", {
        "session_id": frame.capture_session_id,
        "pose_type": pose_type.value,
        "fields": len(values),
        "is_accurate": accurate
    })

    return MeasurementSet(
        set_id=f"{frame.capture_session_id}:{pose_type.value}:{'+'.join(frame_ids)}",
        user_id=frame.user_id,
        capture_session_id=frame.capture_session_id,
        pose_type=pose_type,
        calibration_ratio=calibration.scale_factor,
        values=values,
        is_accurate=accurate,
        frame_ids=frame_ids,
        created_at=created_at,
        updated_at=created_at,
    )


def check_against_plan(measurement_set: MeasurementSet, plan: MeasurementPlan) -> MeasurementSet:
    """
    Validate a record against the active measurement-plan schema

    Raises:
        PlanMismatch: unknown field, wrong physical model or unusable value
    """
    for name, field in measurement_set.values.items():
        if name not in plan:
            raise PlanMismatch(f"{name} is not part of the active measurement plan")
        if field.model != plan[name].model:
            raise PlanMismatch(f"{name} was computed as {field.model.value}, plan expects {plan[name].model.value}")
        if not math.isfinite(field.value_cm) or field.value_cm < 0:
            raise PlanMismatch(f"{name} has an invalid value {field.value_cm}")
        if not 0.0 <= field.confidence <= 1.0:
            raise PlanMismatch(f"{name} has an invalid confidence {field.confidence}")
    return measurement_set
