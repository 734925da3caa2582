# Mesh Parametrization Engine - accepted measurements to bounded deformation parameters
from typing import Dict, List

from measure_engine import config, logger
from measure_engine.errors import NotAccepted
from measure_engine.models import (
    MeasurementSet,
    MeshParameters,
    OutOfSupportedRange,
    ReferenceMeshMetadata,
)
from measure_engine.utils import clamp


def parametrize(measurement_set: MeasurementSet, metadata: ReferenceMeshMetadata,
                require_accepted: bool = True) -> MeshParameters:
    """
    Map measurements onto the deformation axes of a reference mesh

    For each axis: param = clamp((value - min) / (max - min), 0, 1).
    Axes without a measurement keep their neutral value; measurements
    without an axis are ignored. A value outside the axis range is still
    clamped and used, with one OutOfSupportedRange warning for that axis.

    Raises:
        NotAccepted: the set has not been verified by the user
    """
    if require_accepted and not measurement_set.verified_by_user:
        raise NotAccepted(f"Measurement set {measurement_set.set_id} has not been accepted")

    params: Dict[str, float] = {}
    warnings: List[OutOfSupportedRange] = []

    for axis_name, axis in metadata.axes.items():
        value = measurement_set.value(axis.measurement)
        if value is None:
            params[axis_name] = axis.neutral
            continue

        if value < axis.min_physical or value > axis.max_physical:
            warnings.append(OutOfSupportedRange(
                axis=axis_name,
                measurement=axis.measurement,
                value_cm=value,
                min_physical=axis.min_physical,
                max_physical=axis.max_physical,
            ))

        span = axis.max_physical - axis.min_physical
        params[axis_name] = clamp((value - axis.min_physical) / span, 0.0, 1.0)

    for warning in warnings:
        logger.log_warning("Mesh Range Exceeded", {
            "axis": warning.axis,
            "measurement": warning.measurement,
            "value_cm": round(warning.value_cm, 2),
            "supported": f"{warning.min_physical}-{warning.max_physical}"
        })

    logger.log_mesh("Mesh Parameters Derived", {
        "mesh": metadata.name,
        "set_id": measurement_set.set_id,
        "axes": len(params),
        "warnings": len(warnings)
    })

    return MeshParameters(
        mesh=metadata.name,
        params=params,
        warnings=warnings,
        source_set_id=measurement_set.set_id,
    )


def shape_coefficients(mesh_parameters: MeshParameters, metadata: ReferenceMeshMetadata,
                       spread: float = None) -> List[float]:
    """
    Blend-shape weights in axis order, centred on the neutral shape

    A normalised parameter p maps to (p - neutral) scaled into [-spread, spread],
    the symmetric coefficient range SMPL-style renderers take.
    """
    spread = config.SHAPE_COEFFICIENT_SPREAD if spread is None else spread
    coefficients = []
    for axis_name, axis in metadata.axes.items():
        p = mesh_parameters.params.get(axis_name, axis.neutral)
        if p >= axis.neutral:
            half = 1.0 - axis.neutral
        else:
            half = axis.neutral
        coefficients.append(spread * (p - axis.neutral) / half if half > 0 else 0.0)
    return coefficients
