# Verification State Machine - per-session lifecycle from capture to acceptance
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from measure_engine import config, logger
from measure_engine.errors import (
    ImmutableRecordError,
    InvalidTransition,
    RetakeLimitExceeded,
    SessionMismatch,
    SessionNotFound,
)
from measure_engine.models import (
    CalibrationReference,
    KeypointFrame,
    ListenerFailure,
    MeasurementSet,
    ReconciledMeasurementSet,
    RejectionRecord,
    TransitionEvent,
    VerificationState,
    utc_now,
)
from measure_engine.timers import ManualScheduler

Listener = Callable[[TransitionEvent], None]

TERMINAL_STATES = {VerificationState.ACCEPTED, VerificationState.ABANDONED, VerificationState.FAILED}


class SessionStatus(BaseModel):
    session_id: str
    user_id: str
    state: VerificationState
    retake_count: int
    retake_proposed: bool
    previous_session_id: Optional[str] = None
    superseded_by: Optional[str] = None
    frames: int
    rejections: List[RejectionRecord]
    listener_failures: List[ListenerFailure]
    reconciled: Optional[ReconciledMeasurementSet] = None
    created_at: datetime


class CaptureSession:
    """Frames, per-view sets and verification state of one measurement attempt"""

    def __init__(self, session_id: str, user_id: str, reference: CalibrationReference,
                 created_at: datetime, retake_count: int = 0,
                 previous_session_id: Optional[str] = None):
        self.session_id = session_id
        self.user_id = user_id
        self.reference = reference
        self.created_at = created_at
        self.retake_count = retake_count
        self.previous_session_id = previous_session_id
        self.superseded_by: Optional[str] = None

        self.state = VerificationState.CAPTURED
        self.frames: List[KeypointFrame] = []
        self.rejections: List[RejectionRecord] = []
        self.view_sets: List[MeasurementSet] = []
        self.reconciled: Optional[ReconciledMeasurementSet] = None
        self.retake_proposed = False
        self.events: List[TransitionEvent] = []
        self.listener_failures: List[ListenerFailure] = []

        # Serialises transitions of this session only
        self.lock = threading.RLock()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES or self.superseded_by is not None

    def listener_failed(self, kind: str) -> bool:
        """True when a listener raised while handling a transition of this kind"""
        return any(failure.kind == kind for failure in self.listener_failures)

    def status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.session_id,
            user_id=self.user_id,
            state=self.state,
            retake_count=self.retake_count,
            retake_proposed=self.retake_proposed,
            previous_session_id=self.previous_session_id,
            superseded_by=self.superseded_by,
            frames=len(self.frames),
            rejections=list(self.rejections),
            listener_failures=list(self.listener_failures),
            reconciled=self.reconciled,
            created_at=self.created_at,
        )


class SessionArena:
    """
    Session-scoped store of capture sessions and their verification lifecycle

    captured → pending_review → accepted
                              → retaking → (new session) | abandoned | failed

    Each session carries its own lock, so transitions of one session never
    overlap while different sessions proceed independently.
    """

    def __init__(self, scheduler=None, grace_period: float = None, max_retakes: int = None,
                 clock: Callable[[], datetime] = utc_now):
        self.scheduler = scheduler if scheduler is not None else ManualScheduler()
        self.grace_period = config.GRACE_PERIOD_SECONDS if grace_period is None else grace_period
        self.max_retakes = config.MAX_RETAKES if max_retakes is None else max_retakes
        self.clock = clock

        self._sessions: Dict[str, CaptureSession] = {}
        self._registry_lock = threading.Lock()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

    def get(self, session_id: str) -> CaptureSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(f"Capture session {session_id} not found") from None

    def start_session(self, user_id: str, reference: CalibrationReference,
                      session_id: Optional[str] = None, retake_count: int = 0,
                      previous_session_id: Optional[str] = None) -> CaptureSession:
        session_id = session_id or uuid.uuid4().hex
        session = CaptureSession(session_id, user_id, reference, self.clock(),
                                 retake_count=retake_count, previous_session_id=previous_session_id)
        with self._registry_lock:
            if session_id in self._sessions:
                raise InvalidTransition(session_id, self._sessions[session_id].state, "start")
            self._sessions[session_id] = session

        with session.lock:
            self._record(session, None, VerificationState.CAPTURED, "captured",
                         {"retake_count": str(retake_count)})
        return session

    # ------------------------------------------------------------------
    # Captured
    # ------------------------------------------------------------------

    def _require(self, session: CaptureSession, allowed: VerificationState, action: str):
        if session.state == VerificationState.ACCEPTED:
            raise ImmutableRecordError(f"Session {session.session_id} was accepted and is immutable")
        if session.state != allowed or session.superseded_by is not None:
            raise InvalidTransition(session.session_id, session.state, action)

    def add_frame(self, session_id: str, frame: KeypointFrame) -> CaptureSession:
        session = self.get(session_id)
        with session.lock:
            self._require(session, VerificationState.CAPTURED, "add a frame")
            if (frame.capture_session_id, frame.user_id) != (session.session_id, session.user_id):
                raise SessionMismatch(f"Frame {frame.frame_id} does not belong to session {session_id}")
            session.frames.append(frame)
        return session

    def record_rejection(self, session_id: str, frame: KeypointFrame, reason: str,
                         joint: Optional[str] = None, detail: str = "") -> RejectionRecord:
        """Keep a failed frame on record; the session stays captured awaiting a new frame"""
        session = self.get(session_id)
        with session.lock:
            self._require(session, VerificationState.CAPTURED, "record a rejection")
            record = RejectionRecord(frame_id=frame.frame_id, view=frame.view, reason=reason,
                                     joint=joint, detail=detail, at=self.clock())
            session.rejections.append(record)
            self._record(session, session.state, session.state, "frame_rejected",
                         {"frame_id": frame.frame_id, "reason": reason})
        return record

    def submit_reconciled(self, session_id: str, reconciled: ReconciledMeasurementSet,
                          view_sets: Optional[List[MeasurementSet]] = None) -> CaptureSession:
        """captured → pending_review; inaccurate sets start the grace timer"""
        session = self.get(session_id)
        with session.lock:
            self._require(session, VerificationState.CAPTURED, "submit measurements")
            if (reconciled.capture_session_id, reconciled.user_id) != (session.session_id, session.user_id):
                raise SessionMismatch(f"Reconciled set {reconciled.set_id} does not belong to session {session_id}")

            session.reconciled = reconciled
            session.view_sets = list(view_sets or [])
            self._record(session, session.state, VerificationState.PENDING_REVIEW, "pending_review",
                         {"is_accurate": str(reconciled.is_accurate),
                          "conflicts": ",".join(reconciled.conflicts)})

            if not reconciled.is_accurate:
                self.scheduler.schedule(session_id, self.grace_period,
                                        lambda: self._on_grace_expired(session_id))
        return session

    # ------------------------------------------------------------------
    # Pending review
    # ------------------------------------------------------------------

    def accept(self, session_id: str) -> ReconciledMeasurementSet:
        """pending_review → accepted; the record becomes immutable"""
        session = self.get(session_id)
        with session.lock:
            self._require(session, VerificationState.PENDING_REVIEW, "accept")
            self.scheduler.cancel(session_id)
            session.reconciled = session.reconciled.revise(verified_by_user=True, updated_at=self.clock())
            session.retake_proposed = False
            self._record(session, session.state, VerificationState.ACCEPTED, "accepted")
            logger.log_verify("Accepted Measurements", {
                "session_id": session_id,
                "fields": len(session.reconciled.values)
            })
            return session.reconciled

    def reject(self, session_id: str) -> CaptureSession:
        """pending_review → retaking on explicit user rejection"""
        session = self.get(session_id)
        with session.lock:
            self._require(session, VerificationState.PENDING_REVIEW, "reject")
            self.scheduler.cancel(session_id)
            self._record(session, session.state, VerificationState.RETAKING, "retaking",
                         {"trigger": "user_rejected"})
        return session

    def acknowledge_retake(self, session_id: str) -> CaptureSession:
        """pending_review → retaking after the user confirms a proposed retake"""
        session = self.get(session_id)
        with session.lock:
            self._require(session, VerificationState.PENDING_REVIEW, "acknowledge a retake")
            if not session.retake_proposed:
                raise InvalidTransition(session_id, session.state, "acknowledge a retake that was not proposed")
            session.retake_proposed = False
            self._record(session, session.state, VerificationState.RETAKING, "retaking",
                         {"trigger": "grace_period_expired"})
        return session

    def _on_grace_expired(self, session_id: str):
        session = self.get(session_id)
        with session.lock:
            if session.state != VerificationState.PENDING_REVIEW or session.reconciled.is_accurate:
                return
            session.retake_proposed = True
            self._record(session, session.state, session.state, "retake_proposed",
                         {"grace_period_seconds": str(self.grace_period)})
            logger.log_verify("Retake Proposed", {
                "session_id": session_id,
                "conflicts": session.reconciled.conflicts or "none"
            })

    # ------------------------------------------------------------------
    # Retaking
    # ------------------------------------------------------------------

    def abandon(self, session_id: str) -> CaptureSession:
        session = self.get(session_id)
        with session.lock:
            self._require(session, VerificationState.RETAKING, "abandon")
            self._record(session, session.state, VerificationState.ABANDONED, "abandoned")
        return session

    def start_retake(self, session_id: str) -> CaptureSession:
        """
        Open a fresh capture session replacing a session in retaking

        Raises:
            RetakeLimitExceeded: the retake cap is exhausted; the old session
                moves to failed and needs manual intervention
        """
        old = self.get(session_id)
        with old.lock:
            self._require(old, VerificationState.RETAKING, "start a retake")
            if old.retake_count >= self.max_retakes:
                self._record(old, old.state, VerificationState.FAILED, "retake_limit_reached",
                             {"retake_count": str(old.retake_count), "max_retakes": str(self.max_retakes)})
                logger.log_warning("Retake Limit Reached", {
                    "session_id": session_id,
                    "retake_count": old.retake_count,
                    "max_retakes": self.max_retakes
                })
                raise RetakeLimitExceeded(session_id, old.retake_count, self.max_retakes)

            new = self.start_session(old.user_id, old.reference, retake_count=old.retake_count + 1,
                                     previous_session_id=old.session_id)
            old.superseded_by = new.session_id
            logger.log_verify("Retake Started", {
                "previous_session": session_id,
                "new_session": new.session_id,
                "retake": f"{new.retake_count}/{self.max_retakes}"
            })
        return new

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _record(self, session: CaptureSession, from_state: Optional[VerificationState],
                to_state: VerificationState, kind: str, detail: Optional[Dict[str, str]] = None):
        session.state = to_state
        event = TransitionEvent(
            session_id=session.session_id,
            user_id=session.user_id,
            kind=kind,
            from_state=from_state,
            to_state=to_state,
            at=self.clock(),
            detail=detail or {},
        )
        session.events.append(event)
        logger.log_debug("Transition", {
            "session_id": session.session_id,
            "kind": kind,
            "state": to_state.value
        })
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                session.listener_failures.append(
                    ListenerFailure(kind=kind, error=f"{type(e).__name__}: {e}", at=event.at)
                )
                logger.log_error("Transition Listener Failed", e, {"session_id": session.session_id, "kind": kind})

    def events(self, session_id: str) -> List[TransitionEvent]:
        return list(self.get(session_id).events)
