# Main FastAPI Application - Body Measurement Engine
import uuid
from datetime import datetime
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel

from measure_engine import config, database, logger
from measure_engine.errors import (
    FrameRejected,
    ImmutableRecordError,
    InvalidCalibration,
    InvalidTransition,
    MeasurementError,
    NotAccepted,
    PlanMismatch,
    RetakeLimitExceeded,
    SessionMismatch,
    SessionNotFound,
)
from measure_engine.mesh import shape_coefficients
from measure_engine.models import (
    CalibrationReference,
    Keypoint,
    KeypointFrame,
    MeasurementPlan,
    PoseType,
    ReferenceMeshMetadata,
    TransitionEvent,
    utc_now,
)
from measure_engine.pipeline import ingest_frame, mesh_for_session, reconcile_session
from measure_engine.timers import AsyncioScheduler
from measure_engine.verification import CaptureSession, SessionArena

# Initialize FastAPI
app = FastAPI(
    title="Body Measurement Engine",
    description="Keypoint frames → calibrated, verified body measurements → mesh parameters",
    version="1.0.0"
)


# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class StartSessionRequest(BaseModel):
    height_cm: Optional[float] = None
    height_ft: Optional[float] = None
    height_in: Optional[float] = None


class FrameInput(BaseModel):
    frame_id: Optional[str] = None
    view: PoseType
    width: int
    height: int
    normalized: bool = False
    joints: Dict[str, Keypoint]
    captured_at: Optional[datetime] = None


class ReconcileRequest(BaseModel):
    tolerance: Optional[float] = None


# ============================================================================
# SHARED STATE
# ============================================================================

def make_persistence_listener(arena: SessionArena):
    """Store reconciled sets when they enter review and again when accepted"""

    def persist(event: TransitionEvent):
        if event.kind not in ("pending_review", "accepted"):
            return
        session = arena.get(event.session_id)
        if event.kind == "pending_review":
            for view_set in session.view_sets:
                database.save_measurement_set(view_set)
        database.save_measurement_set(session.reconciled)

    return persist


def build_arena(scheduler) -> SessionArena:
    arena = SessionArena(scheduler=scheduler)
    arena.subscribe(make_persistence_listener(arena))
    return arena


ARENA = build_arena(AsyncioScheduler())
PLAN = MeasurementPlan.from_config()
MESH = ReferenceMeshMetadata.from_config()


def get_arena() -> SessionArena:
    return ARENA


def get_plan() -> MeasurementPlan:
    return PLAN


def get_mesh_metadata() -> ReferenceMeshMetadata:
    return MESH


# ============================================================================
# DEPENDENCY INJECTION - caller identity
# ============================================================================

def get_current_user(x_user_id: str = Header(...)) -> str:
    """User identity is supplied by the calling collaborator; no authentication here"""
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user id")
    return x_user_id


def to_http(error: MeasurementError) -> HTTPException:
    """Map core error kinds onto HTTP status codes"""
    if isinstance(error, SessionNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, RetakeLimitExceeded):
        return HTTPException(status_code=409, detail={"message": str(error), "terminal": True})
    if isinstance(error, (ImmutableRecordError, InvalidTransition, NotAccepted)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (FrameRejected, InvalidCalibration, PlanMismatch, SessionMismatch)):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def owned_session(arena: SessionArena, session_id: str, user_id: str) -> CaptureSession:
    try:
        session = arena.get(session_id)
    except SessionNotFound as e:
        raise to_http(e)
    if session.user_id != user_id:
        raise HTTPException(status_code=404, detail="Session not found or unauthorized")
    return session


# ============================================================================
# STARTUP/SHUTDOWN EVENTS
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize storage on startup"""
    logger.log_lifecycle("STARTUP", "Initializing Body Measurement Engine")
    logger.log_info("Configuration Loaded", {
        "plan": ", ".join(PLAN.measurements),
        "mesh": MESH.name,
        "max_retakes": config.MAX_RETAKES
    })

    db_ok = database.test_connection()
    init_ok = database.init_database()

    if db_ok and init_ok:
        logger.log_success("Server Ready", {
            "database": "Connected",
            "measurements": len(PLAN.measurements),
            "mesh_axes": len(MESH.axes),
            "grace_period_s": config.GRACE_PERIOD_SECONDS
        })
    else:
        logger.log_error("Startup Failed", Exception("Database initialization issue"))


@app.on_event("shutdown")
async def shutdown_event():
    """Cancel pending grace timers"""
    logger.log_lifecycle("SHUTDOWN", "Stopping all services")
    ARENA.scheduler.cancel_all()


# ============================================================================
# HEALTH CHECK
# ============================================================================

@app.get("/health")
async def health_check():
    db_ok = database.test_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "timestamp": utc_now().isoformat()
    }


# ============================================================================
# CAPTURE SESSION ROUTES
# ============================================================================

@app.post("/sessions/start")
async def start_session(
    request: StartSessionRequest,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena)
):
    """
    Start a capture session calibrated against the user's height

    Height may be given in cm or in feet/inches; the default height is used
    when neither is provided.
    """
    logger.log_api("POST /sessions/start", {"user_id": user_id})

    try:
        reference = CalibrationReference.from_height(
            height_cm=request.height_cm, height_ft=request.height_ft, height_in=request.height_in
        )
    except MeasurementError as e:
        raise to_http(e)
    session = arena.start_session(user_id, reference)

    return {
        "success": True,
        "session_id": session.session_id,
        "state": session.state.value,
        "reference_height_cm": round(reference.physical_length_cm, 2)
    }


@app.post("/sessions/{session_id}/frames")
async def submit_frame(
    session_id: str,
    request: FrameInput,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena),
    plan: MeasurementPlan = Depends(get_plan)
):
    """
    Submit one keypoint frame from the pose detector

    Rejected frames are reported (reason + joint) and the session stays
    captured so the client can capture again.
    """
    logger.log_api("POST /sessions/frames", {"session_id": session_id, "view": request.view.value})
    owned_session(arena, session_id, user_id)

    try:
        frame = KeypointFrame(
            frame_id=request.frame_id or uuid.uuid4().hex,
            capture_session_id=session_id,
            user_id=user_id,
            view=request.view,
            width=request.width,
            height=request.height,
            normalized=request.normalized,
            joints=request.joints,
            captured_at=request.captured_at or utc_now(),
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        outcome = ingest_frame(arena, session_id, frame, plan)
    except MeasurementError as e:
        raise to_http(e)

    return outcome.model_dump(mode="json")


@app.post("/sessions/{session_id}/reconcile")
async def reconcile(
    session_id: str,
    request: ReconcileRequest,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena),
    plan: MeasurementPlan = Depends(get_plan)
):
    """Measure all accepted frames, merge the views and move the session to review"""
    logger.log_api("POST /sessions/reconcile", {"session_id": session_id})
    owned_session(arena, session_id, user_id)

    try:
        reconciled = reconcile_session(arena, session_id, plan, request.tolerance)
    except MeasurementError as e:
        raise to_http(e)

    return {
        "success": True,
        "session_id": session_id,
        "state": arena.get(session_id).state.value,
        "persisted": not arena.get(session_id).listener_failed("pending_review"),
        "is_accurate": reconciled.is_accurate,
        "conflicts": reconciled.conflicts,
        "missing": reconciled.missing,
        "measurements": reconciled.summary(),
        "provenance": {k: [v.value for v in views] for k, views in reconciled.provenance.items()}
    }


@app.post("/sessions/{session_id}/accept")
async def accept(
    session_id: str,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena)
):
    logger.log_api("POST /sessions/accept", {"session_id": session_id})
    owned_session(arena, session_id, user_id)
    try:
        accepted = arena.accept(session_id)
    except MeasurementError as e:
        raise to_http(e)
    return {
        "success": True,
        "session_id": session_id,
        "state": "accepted",
        "persisted": not arena.get(session_id).listener_failed("accepted"),
        "set_id": accepted.set_id,
        "measurements": accepted.summary()
    }


@app.post("/sessions/{session_id}/reject")
async def reject(
    session_id: str,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena)
):
    logger.log_api("POST /sessions/reject", {"session_id": session_id})
    owned_session(arena, session_id, user_id)
    try:
        session = arena.reject(session_id)
    except MeasurementError as e:
        raise to_http(e)
    return {"success": True, "session_id": session_id, "state": session.state.value}


@app.post("/sessions/{session_id}/retake/acknowledge")
async def acknowledge_retake(
    session_id: str,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena)
):
    logger.log_api("POST /sessions/retake/acknowledge", {"session_id": session_id})
    owned_session(arena, session_id, user_id)
    try:
        session = arena.acknowledge_retake(session_id)
    except MeasurementError as e:
        raise to_http(e)
    return {"success": True, "session_id": session_id, "state": session.state.value}


@app.post("/sessions/{session_id}/abandon")
async def abandon(
    session_id: str,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena)
):
    logger.log_api("POST /sessions/abandon", {"session_id": session_id})
    owned_session(arena, session_id, user_id)
    try:
        session = arena.abandon(session_id)
    except MeasurementError as e:
        raise to_http(e)
    return {"success": True, "session_id": session_id, "state": session.state.value}


@app.post("/sessions/{session_id}/retake")
async def start_retake(
    session_id: str,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena)
):
    """Open a fresh capture session replacing one in retaking"""
    logger.log_api("POST /sessions/retake", {"session_id": session_id})
    owned_session(arena, session_id, user_id)
    try:
        new = arena.start_retake(session_id)
    except MeasurementError as e:
        raise to_http(e)
    return {
        "success": True,
        "previous_session_id": session_id,
        "session_id": new.session_id,
        "retake_count": new.retake_count,
        "state": new.state.value
    }


@app.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena)
):
    session = owned_session(arena, session_id, user_id)
    with session.lock:
        return session.status().model_dump(mode="json")


@app.get("/sessions/{session_id}/events")
async def get_events(
    session_id: str,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena)
):
    owned_session(arena, session_id, user_id)
    events = arena.events(session_id)
    return {
        "session_id": session_id,
        "total_events": len(events),
        "events": [event.model_dump(mode="json") for event in events]
    }


@app.get("/sessions/{session_id}/mesh")
async def get_mesh(
    session_id: str,
    user_id: str = Depends(get_current_user),
    arena: SessionArena = Depends(get_arena),
    metadata: ReferenceMeshMetadata = Depends(get_mesh_metadata)
):
    """Mesh deformation parameters for an accepted session"""
    logger.log_api("GET /sessions/mesh", {"session_id": session_id})
    owned_session(arena, session_id, user_id)
    try:
        mesh = mesh_for_session(arena, session_id, metadata)
    except MeasurementError as e:
        raise to_http(e)

    result = mesh.model_dump(mode="json")
    result["shape_coefficients"] = shape_coefficients(mesh, metadata)
    return result


# ============================================================================
# STORED MEASUREMENTS
# ============================================================================

@app.get("/measurements")
async def list_measurements(
    session_id: Optional[str] = None,
    user_id: str = Depends(get_current_user)
):
    """Stored measurement records of the caller, newest first"""
    logger.log_api("GET /measurements", {"user_id": user_id})
    records = database.load_measurement_sets(user_id, session_id)
    return {
        "total": len(records),
        "records": [
            {
                "set_id": record.set_id,
                "capture_session_id": record.capture_session_id,
                "pose_type": record.pose_type.value,
                "is_accurate": record.is_accurate,
                "verified_by_user": record.verified_by_user,
                "calibration_ratio": record.calibration_ratio,
                "measurements": record.summary(),
                "created_at": record.created_at.isoformat()
            }
            for record in records
        ]
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
