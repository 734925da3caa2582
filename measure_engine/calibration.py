# Calibration Engine - pixel to centimetre scale from a known reference length
from measure_engine import config, logger
from measure_engine.errors import InvalidCalibration
from measure_engine.models import Calibration, CalibrationReference, KeypointFrame, joint_names
from measure_engine.utils import distance


def calibrate(frame: KeypointFrame, reference: CalibrationReference,
              min_pixels: float = None) -> Calibration:
    """
    Derive the cm-per-pixel scale factor of one frame

    scale_factor = reference_physical_length / pixel_distance(joint_a, joint_b)

    The result belongs to this frame only: camera distance and zoom change
    between captures, so a scale is never reused across frames or sessions.

    Args:
        frame: A validated keypoint frame
        reference: Known physical length and the joints spanning it
        min_pixels: Smallest usable pixel distance (default from config)

    Returns:
        Calibration for the frame

    Raises:
        InvalidCalibration: degenerate detection or unusable reference
    """
    min_pixels = config.MIN_CALIBRATION_PIXELS if min_pixels is None else min_pixels

    if reference.physical_length_cm <= 0:
        raise InvalidCalibration(
            f"Reference length must be positive, got {reference.physical_length_cm}"
        )

    missing = [
        name for ref in (reference.joint_a, reference.joint_b)
        for name in joint_names(ref) if name not in frame.joints
    ]
    if missing:
        raise InvalidCalibration(f"Frame {frame.frame_id} lacks calibration joints: {', '.join(missing)}")

    pixel_distance = distance(frame.point(reference.joint_a), frame.point(reference.joint_b))

    if pixel_distance <= 0 or pixel_distance < min_pixels:
        logger.log_calibration("Failed Calibration", {
            "frame_id": frame.frame_id,
            "pixel_distance": round(pixel_distance, 2),
            "min_pixels": min_pixels
        })
        raise InvalidCalibration(
            f"Frame {frame.frame_id}: reference spans {pixel_distance:.1f}px, need at least {min_pixels}px"
        )

    scale_factor = reference.physical_length_cm / pixel_distance

    logger.log_calibration("Calibrated Frame", {
        "frame_id": frame.frame_id,
        "view": frame.view.value,
        "pixel_distance": round(pixel_distance, 2),
        "scale_factor": f"{scale_factor:.5f} cm/px"
    })

    return Calibration(
        scale_factor=scale_factor,
        pixel_distance=pixel_distance,
        reference_length_cm=reference.physical_length_cm,
        frame_id=frame.frame_id,
        view=frame.view,
    )
