# Capture Pipeline - frames → validation → calibration → measurements → reconciliation
from typing import Dict, List, Optional

from pydantic import BaseModel

from measure_engine import logger
from measure_engine.aggregation import reconcile
from measure_engine.calibration import calibrate
from measure_engine.errors import InvalidCalibration, InvalidTransition, NotAccepted, SessionMismatch
from measure_engine.measurements import compute_measurements
from measure_engine.mesh import parametrize
from measure_engine.models import (
    Calibration,
    KeypointFrame,
    MeasurementPlan,
    MeasurementSet,
    MeshParameters,
    PoseType,
    ReconciledMeasurementSet,
    ReferenceMeshMetadata,
    RejectionRecord,
    VerificationState,
)
from measure_engine.validation import required_joints_for, validate_frame
from measure_engine.verification import SessionArena


class FrameOutcome(BaseModel):
    session_id: str
    frame_id: str
    view: PoseType
    accepted: bool
    state: VerificationState
    rejection: Optional[RejectionRecord] = None
    calibration: Optional[Calibration] = None


def ingest_frame(arena: SessionArena, session_id: str, frame: KeypointFrame,
                 plan: MeasurementPlan, confidence_threshold: float = None) -> FrameOutcome:
    """
    Validate and calibrate one frame for a capture session

    Usable frames are stored on the session. Rejected frames and failed
    calibrations are recorded on the session, which stays captured so the
    caller can prompt a new capture.
    """
    session = arena.get(session_id)
    if frame.capture_session_id != session_id:
        raise SessionMismatch(f"Frame {frame.frame_id} belongs to session {frame.capture_session_id}")

    required = required_joints_for(plan, frame.view, session.reference)
    validation = validate_frame(frame, required, confidence_threshold)
    if not validation.ok:
        rejection = validation.rejection
        record = arena.record_rejection(session_id, frame, rejection.reason.value,
                                        rejection.joint, rejection.detail)
        return FrameOutcome(session_id=session_id, frame_id=frame.frame_id, view=frame.view,
                            accepted=False, state=session.state, rejection=record)

    try:
        calibration = calibrate(frame, session.reference)
    except InvalidCalibration as e:
        record = arena.record_rejection(session_id, frame, "InvalidCalibration", detail=str(e))
        return FrameOutcome(session_id=session_id, frame_id=frame.frame_id, view=frame.view,
                            accepted=False, state=session.state, rejection=record)

    arena.add_frame(session_id, frame)
    logger.log_frame("Accepted Frame", {
        "session_id": session_id,
        "frame_id": frame.frame_id,
        "view": frame.view.value,
        "frames_in_session": len(session.frames)
    })
    return FrameOutcome(session_id=session_id, frame_id=frame.frame_id, view=frame.view,
                        accepted=True, state=session.state, calibration=calibration)


def _latest(frames: List[KeypointFrame], view: PoseType) -> Optional[KeypointFrame]:
    matching = [f for f in frames if f.view == view]
    return matching[-1] if matching else None


def compute_view_sets(frames: List[KeypointFrame], calibrations: Dict[str, Calibration],
                      plan: MeasurementPlan) -> List[MeasurementSet]:
    """One set per frame, plus a combined set from the latest front and side frames"""
    view_sets = [compute_measurements(f, calibrations[f.frame_id], plan) for f in frames]

    front = _latest(frames, PoseType.FRONT)
    side = _latest(frames, PoseType.SIDE)
    if front is not None and side is not None:
        combined = compute_measurements(front, calibrations[front.frame_id], plan,
                                        side_frame=side, side_calibration=calibrations[side.frame_id])
        if combined.values:
            view_sets.append(combined)

    return [s for s in view_sets if s.values]


def reconcile_session(arena: SessionArena, session_id: str, plan: MeasurementPlan,
                      tolerance: float = None) -> ReconciledMeasurementSet:
    """
    Measure every stored frame, reconcile the views and move the session to review

    Raises:
        InvalidTransition: no usable frames, or the session is not captured
    """
    session = arena.get(session_id)
    # Held until submission so no frame lands between measuring and review
    with session.lock:
        state = session.state
        if state != VerificationState.CAPTURED:
            raise InvalidTransition(session_id, state, "reconcile")
        frames = list(session.frames)
        if not frames:
            raise InvalidTransition(session_id, state, "reconcile without any accepted frame")

        calibrations = {f.frame_id: calibrate(f, session.reference) for f in frames}
        view_sets = compute_view_sets(frames, calibrations, plan)
        if not view_sets:
            raise InvalidTransition(session_id, state, "reconcile frames that produced no measurements")

        reconciled = reconcile(view_sets, plan, tolerance)
        arena.submit_reconciled(session_id, reconciled, view_sets)
    return reconciled


def mesh_for_session(arena: SessionArena, session_id: str,
                     metadata: ReferenceMeshMetadata) -> MeshParameters:
    session = arena.get(session_id)
    if session.state != VerificationState.ACCEPTED:
        raise NotAccepted(f"Session {session_id} is {session.state.value}, mesh needs accepted measurements")
    return parametrize(session.reconciled, metadata)
