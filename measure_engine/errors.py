# Error kinds raised by the measurement core
from typing import Optional


class MeasurementError(Exception):
    """Base class for all measurement engine errors"""


class FrameRejected(MeasurementError):
    """A keypoint frame failed validation"""

    def __init__(self, reason, joint: Optional[str] = None, detail: str = ""):
        self.reason = reason
        self.joint = joint
        self.detail = detail
        super().__init__(f"{reason.value}: {detail or joint}")


class InvalidCalibration(MeasurementError):
    """No usable pixel-to-centimetre scale could be derived from the frame"""


class PlanMismatch(MeasurementError):
    """A measurement record does not fit the active measurement plan"""


class SessionMismatch(MeasurementError):
    """Measurement sets from different capture sessions or users were mixed"""


class SessionNotFound(MeasurementError):
    pass


class InvalidTransition(MeasurementError):
    """The requested verification transition is not allowed from the current state"""

    def __init__(self, session_id: str, current, requested: str):
        self.session_id = session_id
        self.current = current
        self.requested = requested
        super().__init__(f"Session {session_id}: cannot {requested} while {current.value}")


class ImmutableRecordError(MeasurementError):
    """Accepted measurement records cannot be changed"""


class RetakeLimitExceeded(MeasurementError):
    """Maximum retake count reached; the session needs manual intervention"""

    def __init__(self, session_id: str, retake_count: int, max_retakes: int):
        self.session_id = session_id
        self.retake_count = retake_count
        self.max_retakes = max_retakes
        super().__init__(
            f"Session {session_id}: retake limit reached ({retake_count}/{max_retakes})"
        )


class NotAccepted(MeasurementError):
    """Mesh parameters are only derived from user-accepted measurement sets"""
