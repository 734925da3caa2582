# Helper utilities
import math
from typing import Sequence, Tuple

from measure_engine import config

Point = Tuple[float, float]


def distance(a: Point, b: Point) -> float:
    return math.hypot(b[0] - a[0], b[1] - a[1])


def path_length(points: Sequence[Point]) -> float:
    """Sum of segment lengths along a joint path"""
    return sum(distance(points[i], points[i + 1]) for i in range(len(points) - 1))


def ellipse_circumference(a: float, b: float) -> float:
    """Ramanujan's approximation for an ellipse with half-axes a and b"""
    return math.pi * (3 * (a + b) - math.sqrt((3 * a + b) * (a + 3 * b)))


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(value, high))


def cm_to_inches(cm: float) -> float:
    return round(cm * config.INCHES_PER_CM, 2)


def relative_spread(values: Sequence[float]) -> float:
    """(max - min) / min, the disagreement between candidate values"""
    low, high = min(values), max(values)
    if low <= 0:
        return math.inf if high > low else 0.0
    return (high - low) / low
