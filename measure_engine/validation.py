# Keypoint Frame Validator - completeness, confidence and bounds checks
from typing import Iterable, List, Optional, Set

from measure_engine import config, logger
from measure_engine.errors import FrameRejected
from measure_engine.models import (
    CalibrationReference,
    FrameRejection,
    FrameValidation,
    KeypointFrame,
    MeasurementPlan,
    PoseType,
    RejectionReason,
    joint_names,
)


def required_joints_for(plan: MeasurementPlan, view: PoseType,
                        reference: Optional[CalibrationReference] = None) -> Set[str]:
    """
    Joints a frame of the given view must carry for the plan to be computed

    Args:
        plan: Active measurement plan
        view: front or side
        reference: Calibration reference whose joints must also be present

    Returns:
        Set of joint names
    """
    required = set()
    for spec in plan.measurements.values():
        required.update(spec.joints_for(view))

    if reference is not None:
        required.update(joint_names(reference.joint_a))
        required.update(joint_names(reference.joint_b))

    return required


def _in_bounds(frame: KeypointFrame, name: str) -> bool:
    joint = frame.joints[name]
    if frame.normalized:
        return 0.0 <= joint.x <= 1.0 and 0.0 <= joint.y <= 1.0
    return 0.0 <= joint.x <= frame.width and 0.0 <= joint.y <= frame.height


def _check_joint(frame: KeypointFrame, name: str, threshold: float) -> Optional[FrameRejection]:
    if name not in frame.joints:
        return FrameRejection(reason=RejectionReason.MISSING_JOINT, joint=name,
                              detail=f"{name} not detected")

    confidence = frame.joints[name].confidence
    if confidence < threshold:
        return FrameRejection(reason=RejectionReason.LOW_CONFIDENCE, joint=name,
                              detail=f"{name} confidence {confidence:.2f} < {threshold}")

    if not _in_bounds(frame, name):
        return FrameRejection(reason=RejectionReason.OUT_OF_BOUNDS, joint=name,
                              detail=f"{name} lies outside the {frame.width}x{frame.height} frame")
    return None


def validate_frame(frame: KeypointFrame, required_joints: Iterable[str],
                   confidence_threshold: float = None) -> FrameValidation:
    """
    Validate one detection frame against a required-joint set

    Joints are checked in sorted order; the first failing joint decides the
    rejection reason, every failure is listed in `issues`.
    """
    threshold = config.CONFIDENCE_THRESHOLD if confidence_threshold is None else confidence_threshold

    issues: List[FrameRejection] = []
    for name in sorted(set(required_joints)):
        problem = _check_joint(frame, name, threshold)
        if problem is not None:
            issues.append(problem)

    if issues:
        logger.log_frame("Rejected Frame", {
            "frame_id": frame.frame_id,
            "view": frame.view.value,
            "reason": issues[0].reason.value,
            "joint": issues[0].joint,
            "issues": len(issues)
        })
        return FrameValidation(rejection=issues[0], issues=issues)

    logger.log_debug("Frame Valid", {"frame_id": frame.frame_id, "joints": len(frame.joints)})
    return FrameValidation(frame=frame)


def ensure_valid(frame: KeypointFrame, required_joints: Iterable[str],
                 confidence_threshold: float = None) -> KeypointFrame:
    """Like validate_frame, but raises FrameRejected on failure"""
    result = validate_frame(frame, required_joints, confidence_threshold)
    if not result.ok:
        raise FrameRejected(result.rejection.reason, result.rejection.joint, result.rejection.detail)
    return result.frame
