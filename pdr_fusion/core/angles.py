"""Angle wrapping and circular interpolation.

Every angle handed out by the fusion core lies in the half-open branch
(-pi, pi]. The atan2 trick lands on [-pi, pi], so -pi is folded onto +pi.
"""

import math
from typing import Sequence

import numpy as np


def wrap_angle(angle: float) -> float:
    """Wrap angle to the (-pi, pi] range.

    Args:
        angle: Angle in radians (any value).

    Returns:
        Equivalent angle in (-pi, pi].

    Example:
        >>> wrap_angle(3.5 * np.pi)
        -1.5707963267948966
        >>> wrap_angle(-np.pi)
        3.141592653589793
    """
    if -math.pi < angle <= math.pi:
        return float(angle)
    wrapped = math.atan2(math.sin(angle), math.cos(angle))
    if wrapped <= -math.pi:
        wrapped = math.pi
    return wrapped


def angle_diff(a: float, b: float) -> float:
    """Shortest signed arc from b to a, in (-pi, pi]."""
    return wrap_angle(a - b)


def interpolate_angle(a: float, b: float, fraction: float) -> float:
    """Interpolate along the shortest arc from a to b.

    Args:
        a: Start angle in radians.
        b: End angle in radians.
        fraction: 0 returns a, 1 returns b.
    """
    return wrap_angle(a + fraction * angle_diff(b, a))


def circular_mean(angles: Sequence[float]) -> float:
    """Mean direction of a set of angles."""
    if len(angles) == 0:
        raise ValueError("circular_mean() needs at least one angle")
    arr = np.asarray(angles, dtype=np.float64)
    return wrap_angle(float(np.arctan2(np.mean(np.sin(arr)), np.mean(np.cos(arr)))))
