"""
Trajectory Segmentation
=======================

Splits one repetition's tracked points into its two phases:

1. Extrema: single pass for the max/min x and max/min y points.
2. Descent: every point up to and including the lowest bar position
   (maximum image y), i.e. the rep's bottom.
3. Ascent: the remaining points, cut at the first point reaching the
   ascent's own highest position. Anything the tracker emits after that
   (re-racking, a second rep) is dropped.

Also holds the orientation normalization (the template's descent runs
right to left) and the sanity bounds applied before fitting geometry.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence

from .errors import TrajectoryRejected
from .object_tracking import TrajectoryPoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Extrema:
    """Axis extrema of a trajectory (image coordinates, y down)."""
    min_x: TrajectoryPoint
    max_x: TrajectoryPoint
    min_y: TrajectoryPoint
    max_y: TrajectoryPoint

    @property
    def width(self) -> int:
        return self.max_x.x - self.min_x.x

    @property
    def height(self) -> int:
        return self.max_y.y - self.min_y.y

    @property
    def bottom(self) -> TrajectoryPoint:
        """The rep's bottom: lowest bar position on screen."""
        return self.max_y


@dataclass(frozen=True)
class SegmentedTrajectory:
    descent: List[TrajectoryPoint]
    ascent: List[TrajectoryPoint]
    extrema: Extrema


def find_extrema(points: Sequence[TrajectoryPoint]) -> Extrema:
    """First point (in order) achieving each axis extreme."""
    first = points[0]
    min_x = max_x = min_y = max_y = first
    for p in points:
        if p.y > max_y.y:
            max_y = p
        if p.x > max_x.x:
            max_x = p
        if p.x < min_x.x:
            min_x = p
        if p.y < min_y.y:
            min_y = p
    return Extrema(min_x=min_x, max_x=max_x, min_y=min_y, max_y=max_y)


def segment_trajectory(points: Sequence[TrajectoryPoint]) -> SegmentedTrajectory:
    """
    Split a trajectory into descent and a single ascent cycle.

    Args:
        points: Tracked points in frame order (must not be empty)

    Returns:
        SegmentedTrajectory with descent, truncated ascent and extrema

    Raises:
        ValueError: if there are no points
    """
    if not points:
        raise ValueError("segment_trajectory requires at least one point")

    extrema = find_extrema(points)
    bottom_idx = extrema.bottom.frame_idx

    descent = [p for p in points if p.frame_idx <= bottom_idx]
    raw_ascent = [p for p in points if p.frame_idx > bottom_idx]

    ascent: List[TrajectoryPoint] = []
    if raw_ascent:
        top_y = min(p.y for p in raw_ascent)
        for p in raw_ascent:
            ascent.append(p)
            if p.y == top_y:
                break

    if len(ascent) < len(raw_ascent):
        logger.info(
            "Dropped %d points tracked after the ascent's top",
            len(raw_ascent) - len(ascent),
        )

    return SegmentedTrajectory(descent=descent, ascent=ascent, extrema=extrema)


# ============================================================================
# Orientation
# ============================================================================

def needs_mirror(descent: Sequence[TrajectoryPoint]) -> bool:
    """
    True when the observed rep runs opposite to the template.

    The template's descent starts on the right (lockout side) and ends at
    the bottom on the left; a descent starting left of its end is mirrored.
    """
    return len(descent) > 1 and descent[0].x < descent[-1].x


def mirror_points(points: Sequence[TrajectoryPoint], frame_width: int) -> List[TrajectoryPoint]:
    """Flip points horizontally inside a frame of the given width."""
    return [TrajectoryPoint(frame_width - 1 - p.x, p.y, p.frame_idx) for p in points]


# ============================================================================
# Sanity Bounds
# ============================================================================

def validate_extents(
    extrema: Extrema,
    min_extent_px: int = 30,
    max_aspect_ratio: float = 1.75,
) -> None:
    """
    Reject trajectories that cannot be a tracked bench-press rep.

    The vertical extent is checked after being forced even, the same value
    that later sizes the canvas.

    Raises:
        TrajectoryRejected: if either extent is below ``min_extent_px`` or
            their ratio falls outside [1/max_aspect_ratio, max_aspect_ratio]
    """
    height = extrema.height + extrema.height % 2
    width = extrema.width

    if width < min_extent_px or height < min_extent_px:
        raise TrajectoryRejected(
            f"Trajectory too small ({width}x{height}px, minimum {min_extent_px}px)"
        )
    if height > width * max_aspect_ratio or width > height * max_aspect_ratio:
        raise TrajectoryRejected(
            f"Trajectory aspect {width}x{height}px outside 1:{max_aspect_ratio:g}"
        )
