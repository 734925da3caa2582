from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from measure_engine import config
from measure_engine.errors import ImmutableRecordError, InvalidCalibration
from measure_engine.utils import cm_to_inches

# A joint name, or a tuple of joint names standing for their midpoint
JointRef = Union[str, Tuple[str, ...]]

ESTIMATED_FROM_FRONT_ONLY = "estimated_from_front_only"
CONFLICTING = "conflicting"
OUTSIDE_PLAUSIBLE_RANGE = "outside_plausible_range"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def joint_names(ref: JointRef) -> Tuple[str, ...]:
    """Flatten a joint reference into the joint names it uses"""
    return (ref,) if isinstance(ref, str) else tuple(ref)


class PoseType(str, Enum):
    FRONT = "front"
    SIDE = "side"
    COMBINED = "combined"


class MeasurementModel(str, Enum):
    LINEAR = "linear"
    CIRCUMFERENCE = "circumference"


class RejectionReason(str, Enum):
    MISSING_JOINT = "MissingJoint"
    LOW_CONFIDENCE = "LowConfidence"
    OUT_OF_BOUNDS = "OutOfBounds"


class VerificationState(str, Enum):
    CAPTURED = "captured"
    PENDING_REVIEW = "pending_review"
    ACCEPTED = "accepted"
    RETAKING = "retaking"
    ABANDONED = "abandoned"
    FAILED = "failed"


# ============================================================================
# CAPTURE INPUT
# ============================================================================

class Keypoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    z: Optional[float] = None
    confidence: float = Field(ge=0.0, le=1.0)


class KeypointFrame(BaseModel):
    """One pose detection: named joints with coordinates and confidence"""
    model_config = ConfigDict(frozen=True)

    frame_id: str
    capture_session_id: str
    user_id: str
    view: PoseType
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    normalized: bool = False
    joints: Dict[str, Keypoint]
    captured_at: datetime = Field(default_factory=utc_now)

    @field_validator("view")
    @classmethod
    def single_camera_view(cls, view: PoseType) -> PoseType:
        if view == PoseType.COMBINED:
            raise ValueError("a captured frame is either a front or a side view")
        return view

    def pixel_point(self, name: str) -> Tuple[float, float]:
        joint = self.joints[name]
        if self.normalized:
            return joint.x * self.width, joint.y * self.height
        return joint.x, joint.y

    def point(self, ref: JointRef) -> Tuple[float, float]:
        """Pixel position of a joint, or the midpoint of a group of joints"""
        points = [self.pixel_point(name) for name in joint_names(ref)]
        xs = sum(p[0] for p in points) / len(points)
        ys = sum(p[1] for p in points) / len(points)
        return xs, ys

    def confidence_of(self, ref: JointRef) -> float:
        return min(self.joints[name].confidence for name in joint_names(ref))


class CalibrationReference(BaseModel):
    """A known physical length and the joints whose pixel distance spans it"""
    model_config = ConfigDict(frozen=True)

    physical_length_cm: float
    joint_a: JointRef = config.CALIBRATION_JOINTS[0]
    joint_b: JointRef = config.CALIBRATION_JOINTS[1]

    @classmethod
    def from_height(cls, height_cm: Optional[float] = None, height_ft: Optional[float] = None,
                    height_in: Optional[float] = None, **joints) -> "CalibrationReference":
        """
        Build a reference from user-entered height in cm or feet/inches

        The configured default height applies only when no height is given.

        Raises:
            InvalidCalibration: metric and imperial heights mixed, or a
                non-positive height
        """
        imperial = height_ft is not None or height_in is not None
        if height_cm is not None and imperial:
            raise InvalidCalibration("Give the height either in cm or in feet/inches, not both")

        if imperial:
            if (height_ft or 0) < 0 or (height_in or 0) < 0:
                raise InvalidCalibration(f"Height parts must not be negative, got {height_ft} ft {height_in} in")
            height_cm = (height_ft or 0) * config.CM_PER_FOOT + (height_in or 0) * config.CM_PER_INCH
        elif height_cm is None:
            height_cm = config.DEFAULT_HEIGHT_CM

        if height_cm <= 0:
            raise InvalidCalibration(f"Reference height must be positive, got {height_cm} cm")
        return cls(physical_length_cm=height_cm, **joints)


class Calibration(BaseModel):
    model_config = ConfigDict(frozen=True)

    scale_factor: float  # cm per pixel
    pixel_distance: float
    reference_length_cm: float
    frame_id: str
    view: PoseType


# ============================================================================
# MEASUREMENT PLAN
# ============================================================================

class MeasurementSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: MeasurementModel
    joints: List[JointRef] = Field(default_factory=list)
    views: List[PoseType] = Field(default_factory=lambda: [PoseType.FRONT])
    width_joints: Optional[Tuple[JointRef, JointRef]] = None
    depth_joints: Optional[Tuple[JointRef, JointRef]] = None
    width_factor: float = 1.0
    depth_factor: float = 1.0
    plausible_ratio: Optional[Tuple[float, float]] = None

    @model_validator(mode="after")
    def check_model_inputs(self) -> "MeasurementSpec":
        if self.model == MeasurementModel.LINEAR and len(self.joints) < 2:
            raise ValueError("linear measurements need a joint pair or path")
        if self.model == MeasurementModel.CIRCUMFERENCE:
            if self.width_joints is None or self.depth_joints is None:
                raise ValueError("circumference measurements need width and depth joints")
        return self

    @property
    def authoritative_views(self) -> List[PoseType]:
        if self.model == MeasurementModel.CIRCUMFERENCE:
            return [PoseType.COMBINED]
        return list(self.views)

    def joints_for(self, view: PoseType) -> List[str]:
        """Joint names this measurement reads from a frame of the given view"""
        if self.model == MeasurementModel.LINEAR:
            if view not in self.views:
                return []
            refs = self.joints
        elif view == PoseType.FRONT:
            refs = list(self.width_joints)
        elif view == PoseType.SIDE:
            refs = list(self.depth_joints)
        else:
            refs = []
        return [name for ref in refs for name in joint_names(ref)]


class MeasurementPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    measurements: Dict[str, MeasurementSpec]

    @classmethod
    def from_config(cls, raw: Optional[dict] = None) -> "MeasurementPlan":
        return cls(measurements=raw if raw is not None else config.MEASUREMENT_PLAN)

    def __contains__(self, name: str) -> bool:
        return name in self.measurements

    def __getitem__(self, name: str) -> MeasurementSpec:
        return self.measurements[name]


# ============================================================================
# MEASUREMENT RECORDS
# ============================================================================

class MeasuredValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    value_cm: float
    confidence: float
    model: MeasurementModel
    joints: List[str] = Field(default_factory=list)
    flags: List[str] = Field(default_factory=list)
    sources: List[PoseType] = Field(default_factory=list)

    @property
    def inches(self) -> float:
        return cm_to_inches(self.value_cm)

    @property
    def conflicting(self) -> bool:
        return CONFLICTING in self.flags


class MeasurementSet(BaseModel):
    """Named physical measurements from one view (or from combined views)"""
    model_config = ConfigDict(frozen=True)

    set_id: str
    user_id: str
    capture_session_id: str
    pose_type: PoseType
    calibration_ratio: float
    values: Dict[str, MeasuredValue]
    is_accurate: bool
    verified_by_user: bool = False
    frame_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @property
    def is_locked(self) -> bool:
        return self.verified_by_user

    def value(self, name: str) -> Optional[float]:
        field = self.values.get(name)
        return field.value_cm if field else None

    def revise(self, **changes) -> "MeasurementSet":
        """Copy with changes; accepted records refuse any change"""
        if self.is_locked:
            raise ImmutableRecordError(f"Measurement set {self.set_id} was accepted and is immutable")
        return self.model_copy(update=changes)

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {"cm": round(field.value_cm, 2), "inches": field.inches,
                   "confidence": round(field.confidence, 3)}
            for name, field in self.values.items()
        }


class ReconciledMeasurementSet(MeasurementSet):
    provenance: Dict[str, List[PoseType]] = Field(default_factory=dict)
    conflicts: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)  # plan fields no view supplied
    source_set_ids: List[str] = Field(default_factory=list)


# ============================================================================
# VALIDATION RESULTS
# ============================================================================

class FrameRejection(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: RejectionReason
    joint: Optional[str] = None
    detail: str = ""


class FrameValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    frame: Optional[KeypointFrame] = None
    rejection: Optional[FrameRejection] = None
    issues: List[FrameRejection] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.rejection is None


# ============================================================================
# MESH
# ============================================================================

class MeshAxis(BaseModel):
    model_config = ConfigDict(frozen=True)

    measurement: str
    min_physical: float
    max_physical: float
    neutral: float = config.NEUTRAL_MESH_PARAM

    @model_validator(mode="after")
    def check_range(self) -> "MeshAxis":
        if self.max_physical <= self.min_physical:
            raise ValueError("max_physical must be greater than min_physical")
        return self


class ReferenceMeshMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    axes: Dict[str, MeshAxis]

    @classmethod
    def from_config(cls, name: Optional[str] = None, axes: Optional[dict] = None) -> "ReferenceMeshMetadata":
        return cls(name=name or config.MESH_NAME,
                   axes=axes if axes is not None else config.MESH_AXES)


class OutOfSupportedRange(BaseModel):
    """Warning: a measurement lies outside the range the mesh was calibrated for"""
    model_config = ConfigDict(frozen=True)

    axis: str
    measurement: str
    value_cm: float
    min_physical: float
    max_physical: float


class MeshParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    mesh: str
    params: Dict[str, float]
    warnings: List[OutOfSupportedRange] = Field(default_factory=list)
    source_set_id: str


# ============================================================================
# VERIFICATION EVENTS
# ============================================================================

class TransitionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str
    kind: str
    from_state: Optional[VerificationState] = None
    to_state: VerificationState
    at: datetime
    detail: Dict[str, str] = Field(default_factory=dict)


class RejectionRecord(BaseModel):
    """A frame the session could not use; kept so re-capture can be prompted"""
    model_config = ConfigDict(frozen=True)

    frame_id: str
    view: PoseType
    reason: str  # a RejectionReason value or "InvalidCalibration"
    joint: Optional[str] = None
    detail: str = ""
    at: datetime


class ListenerFailure(BaseModel):
    """A transition listener that raised; the transition itself still stands"""
    model_config = ConfigDict(frozen=True)

    kind: str
    error: str
    at: datetime
