"""Corridor and wall geometry for map matching.

Coordinates are metres in a site-local 2D frame. A map is read-only once it
has been handed to the filter.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Projection:
    """Closest point of a corridor to a query position."""
    point: NDArray[np.float64]
    distance: float
    corridor: int
    segment: int


def project_point_on_segment(
    point: NDArray[np.float64],
    p1: NDArray[np.float64],
    p2: NDArray[np.float64]
) -> Tuple[NDArray[np.float64], float]:
    """Project point onto segment p1-p2, clamping to the end points.

    Returns:
        (projected point, distance from point to it).
    """
    d = p2 - p1
    length2 = float(d @ d)
    if length2 == 0.0:
        return p1.copy(), float(np.linalg.norm(point - p1))

    t = float(np.clip((point - p1) @ d / length2, 0.0, 1.0))
    projected = p1 + t * d
    return projected, float(np.linalg.norm(point - projected))


def _orientation(a: NDArray[np.float64], b: NDArray[np.float64], c: NDArray[np.float64]) -> float:
    return float((b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0]))


def segments_intersect(
    a1: NDArray[np.float64],
    a2: NDArray[np.float64],
    b1: NDArray[np.float64],
    b2: NDArray[np.float64]
) -> bool:
    """Proper intersection test for two segments (touching counts)."""
    o1 = _orientation(a1, a2, b1)
    o2 = _orientation(a1, a2, b2)
    o3 = _orientation(b1, b2, a1)
    o4 = _orientation(b1, b2, a2)

    if o1 * o2 < 0 and o3 * o4 < 0:
        return True

    def on_segment(p, q, r) -> bool:
        return (min(p[0], r[0]) <= q[0] <= max(p[0], r[0])
                and min(p[1], r[1]) <= q[1] <= max(p[1], r[1]))

    if o1 == 0 and on_segment(a1, b1, a2):
        return True
    if o2 == 0 and on_segment(a1, b2, a2):
        return True
    if o3 == 0 and on_segment(b1, a1, b2):
        return True
    if o4 == 0 and on_segment(b1, a2, b2):
        return True
    return False


class VectorMap:
    """Corridor polylines and wall segments.

    Corridors with fewer than two vertices are ignored, as are walls that
    are not a pair of points.
    """

    def __init__(
        self,
        corridors: Iterable[Sequence[Sequence[float]]] = (),
        walls: Iterable[Sequence[Sequence[float]]] = ()
    ):
        self.corridors: List[NDArray[np.float64]] = []
        self.walls: List[NDArray[np.float64]] = []

        for corridor in corridors:
            points = np.asarray(corridor, dtype=np.float64)
            if points.ndim != 2 or points.shape[0] < 2 or points.shape[1] != 2:
                logger.warning("Ignoring corridor with shape %s", points.shape)
                continue
            self.corridors.append(points)

        for wall in walls:
            segment = np.asarray(wall, dtype=np.float64)
            if segment.shape != (2, 2):
                logger.warning("Ignoring wall with shape %s", segment.shape)
                continue
            self.walls.append(segment)

        for arr in self.corridors + self.walls:
            arr.setflags(write=False)

    @classmethod
    def from_dict(cls, data: dict) -> "VectorMap":
        """Build from {"corridors": [[(x, y), ...]], "walls": [[(x, y), (x, y)]]}.

        "tunnels" is accepted as an alias of "corridors".
        """
        corridors = data.get("corridors", data.get("tunnels", []))
        return cls(corridors=corridors, walls=data.get("walls", []))

    @property
    def segment_count(self) -> int:
        return sum(len(c) - 1 for c in self.corridors)

    def is_empty(self) -> bool:
        return not self.corridors

    def nearest(self, x: float, y: float) -> Optional[Projection]:
        """Closest projection of (x, y) over every corridor segment.

        Ties keep the first segment found, so the result is deterministic.
        """
        point = np.array([x, y], dtype=np.float64)
        best: Optional[Projection] = None

        for ci, corridor in enumerate(self.corridors):
            for si in range(len(corridor) - 1):
                projected, distance = project_point_on_segment(
                    point, corridor[si], corridor[si + 1]
                )
                if best is None or distance < best.distance:
                    best = Projection(point=projected, distance=distance,
                                      corridor=ci, segment=si)
        return best

    def crosses_wall(self, start: Sequence[float], end: Sequence[float]) -> bool:
        """True if moving from start to end crosses any wall."""
        a1 = np.asarray(start, dtype=np.float64)
        a2 = np.asarray(end, dtype=np.float64)
        if np.allclose(a1, a2):
            return False
        return any(segments_intersect(a1, a2, w[0], w[1]) for w in self.walls)
