# Multi-View Aggregator - reconcile per-view measurement sets of one capture session
from typing import Dict, List, Sequence, Tuple

from measure_engine import config, logger
from measure_engine.errors import SessionMismatch
from measure_engine.measurements import check_against_plan, is_accurate
from measure_engine.models import (
    CONFLICTING,
    ESTIMATED_FROM_FRONT_ONLY,
    MeasuredValue,
    MeasurementPlan,
    MeasurementSet,
    MeasurementSpec,
    PoseType,
    ReconciledMeasurementSet,
)
from measure_engine.utils import relative_spread

Candidate = Tuple[MeasurementSet, MeasuredValue]


def _ordered_unique(items):
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def authority(measurement_set: MeasurementSet, field: MeasuredValue, spec: MeasurementSpec) -> int:
    """
    2 when the set's view is authoritative for the field, 1 otherwise

    Circumferences are authoritative only from a combined front + side set;
    linear fields from any view the plan lists for them.
    """
    if measurement_set.pose_type in spec.authoritative_views and ESTIMATED_FROM_FRONT_ONLY not in field.flags:
        return 2
    return 1


def _check_same_session(sets: Sequence[MeasurementSet]):
    if not sets:
        raise SessionMismatch("No measurement sets to reconcile")
    owner = (sets[0].capture_session_id, sets[0].user_id)
    for measurement_set in sets[1:]:
        if (measurement_set.capture_session_id, measurement_set.user_id) != owner:
            raise SessionMismatch(
                f"Set {measurement_set.set_id} belongs to session {measurement_set.capture_session_id} "
                f"of user {measurement_set.user_id}, expected session {owner[0]} of user {owner[1]}"
            )


def merge_field(name: str, candidates: List[Candidate], spec: MeasurementSpec,
                tolerance: float) -> Tuple[MeasuredValue, List[PoseType]]:
    """
    Pick or merge the value of one field from the views that supplied it

    Returns:
        (merged field, pose types of the contributing sets)
    """
    best = max(authority(ms, field, spec) for ms, field in candidates)
    winners = [(ms, field) for ms, field in candidates if authority(ms, field, spec) == best]

    if len(winners) == 1:
        ms, field = winners[0]
        return field, [ms.pose_type]

    values = [field.value_cm for _, field in winners]
    confidences = [field.confidence for _, field in winners]
    weights = confidences if sum(confidences) > 0 else [1.0] * len(winners)
    merged_value = sum(v * w for v, w in zip(values, weights)) / sum(weights)

    flags = _ordered_unique(flag for _, field in winners for flag in field.flags)
    spread = relative_spread(values)
    if spread > tolerance:
        flags.append(CONFLICTING)
        confidence = min(confidences)
        logger.log_warning("Conflicting Measurement", {
            "measurement": name,
            "values_cm": [round(v, 2) for v in values],
            "spread": f"{spread:.1%}",
            "tolerance": f"{tolerance:.1%}"
        })
    else:
        confidence = max(confidences)

    merged = MeasuredValue(
        value_cm=merged_value,
        confidence=confidence,
        model=spec.model,
        joints=_ordered_unique(j for _, field in winners for j in field.joints),
        flags=flags,
        sources=_ordered_unique(s for _, field in winners for s in field.sources),
    )
    return merged, _ordered_unique(ms.pose_type for ms, _ in winners)


def reconcile(sets: Sequence[MeasurementSet], plan: MeasurementPlan, tolerance: float = None,
              accuracy_threshold: float = None) -> ReconciledMeasurementSet:
    """
    Merge the per-view sets of one capture session into a combined set

    Args:
        sets: Per-view measurement sets sharing capture_session_id and user
        plan: Active measurement plan (decides authority per field)
        tolerance: Relative disagreement above which a field is conflicting
        accuracy_threshold: Per-field confidence needed for is_accurate

    Returns:
        ReconciledMeasurementSet with per-field provenance. Plan fields no
        view supplied are listed in `missing` and make the set inaccurate.

    Raises:
        SessionMismatch: empty input or sets from different sessions/users
        PlanMismatch: a set carries a field outside the plan
    """
    tolerance = config.CONFLICT_TOLERANCE if tolerance is None else tolerance
    _check_same_session(sets)
    for measurement_set in sets:
        check_against_plan(measurement_set, plan)

    candidates: Dict[str, List[Candidate]] = {}
    for measurement_set in sets:
        for name, field in measurement_set.values.items():
            candidates.setdefault(name, []).append((measurement_set, field))

    values: Dict[str, MeasuredValue] = {}
    provenance: Dict[str, List[PoseType]] = {}
    for name in plan.measurements:
        if name not in candidates:
            continue
        values[name], provenance[name] = merge_field(name, candidates[name], plan[name], tolerance)

    conflicts = [name for name, field in values.items() if field.conflicting]
    missing = [name for name in plan.measurements if name not in values]
    accurate = is_accurate(values, accuracy_threshold) and not conflicts and not missing

    primary = next((ms for ms in sets if ms.pose_type == PoseType.FRONT), sets[0])
    created_at = max(ms.created_at for ms in sets)
    session_id = sets[0].capture_session_id

    logger.log_aggregate("Reconciled Session", {
        "session_id": session_id,
        "views": [ms.pose_type.value for ms in sets],
        "fields": len(values),
        "conflicts": conflicts or "none",
        "missing": missing or "none",
        "is_accurate": accurate
    })

    return ReconciledMeasurementSet(
        set_id=f"{session_id}:reconciled",
        user_id=sets[0].user_id,
        capture_session_id=session_id,
        pose_type=PoseType.COMBINED,
        calibration_ratio=primary.calibration_ratio,
        values=values,
        is_accurate=accurate,
        frame_ids=_ordered_unique(fid for ms in sets for fid in ms.frame_ids),
        created_at=created_at,
        updated_at=created_at,
        provenance=provenance,
        conflicts=conflicts,
        missing=missing,
        source_set_ids=[ms.set_id for ms in sets],
    )
