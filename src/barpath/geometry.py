"""
Reference Geometry
==================

Fits the reference primitives of the idealized bar path:

1. Arcs: the unique circle through three control points, using the
   determinant form of the circumcenter:

       D = 2 * (x1(y2 - y3) + x2(y3 - y1) + x3(y1 - y2))
       h = ((x1² + y1²)(y2 - y3) + (x2² + y2²)(y3 - y1) + (x3² + y3²)(y1 - y2)) / D
       k = ((x1² + y1²)(x3 - x2) + (x2² + y2²)(x1 - x3) + (x3² + y3²)(x2 - x1)) / D

   The arc's bounding box is the box of the three control points, not of
   the circle. It is only used as a vertical-range filter and a clip region.

2. Line: a vertical segment at the first point's x.

All coordinates are in path space (pixels, y up from the rep's bottom).
"""

import math
from dataclasses import dataclass
from typing import Tuple

from .errors import DegenerateFit
from .template import PathTemplate, template_points


Point = Tuple[float, float]

# Relative tolerance on D below which three points count as collinear
COLLINEAR_EPS = 1e-9


# ============================================================================
# Data Structures
# ============================================================================

@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in path space."""
    min_x: float
    max_x: float
    min_y: float
    max_y: float


@dataclass(frozen=True)
class ReferenceArc:
    """Circle through three control points, limited to their bounding box."""
    center_x: float
    center_y: float
    radius: float
    bbox: BoundingBox

    @property
    def min_y(self) -> float:
        return self.bbox.min_y

    @property
    def max_y(self) -> float:
        return self.bbox.max_y


@dataclass(frozen=True)
class ReferenceLine:
    """Vertical segment x = const, y in [y_min, y_max]."""
    x: float
    y_min: float
    y_max: float

    @property
    def min_y(self) -> float:
        return self.y_min

    @property
    def max_y(self) -> float:
        return self.y_max


@dataclass(frozen=True)
class ReferencePath:
    """All reference primitives of one template at one scale."""
    ascent_arcs: Tuple[ReferenceArc, ReferenceArc]
    ascent_line: ReferenceLine
    descent_arc: ReferenceArc
    scalor: float


# ============================================================================
# Fitting
# ============================================================================

def arc_from_points(p1: Point, p2: Point, p3: Point) -> ReferenceArc:
    """
    Fit the circle passing through three points.

    Raises:
        DegenerateFit: if the points are collinear (D == 0)
    """
    x1, y1 = p1
    x2, y2 = p2
    x3, y3 = p3

    d = 2.0 * (x1 * (y2 - y3) + x2 * (y3 - y1) + x3 * (y1 - y2))
    scale = max(abs(v) for v in (x1, y1, x2, y2, x3, y3, 1.0))
    if abs(d) <= COLLINEAR_EPS * scale * scale:
        raise DegenerateFit(f"Control points {p1}, {p2}, {p3} are collinear")

    s1 = x1 * x1 + y1 * y1
    s2 = x2 * x2 + y2 * y2
    s3 = x3 * x3 + y3 * y3

    h = (s1 * (y2 - y3) + s2 * (y3 - y1) + s3 * (y1 - y2)) / d
    k = (s1 * (x3 - x2) + s2 * (x1 - x3) + s3 * (x2 - x1)) / d
    r = math.hypot(x1 - h, y1 - k)

    bbox = BoundingBox(
        min_x=min(x1, x2, x3),
        max_x=max(x1, x2, x3),
        min_y=min(y1, y2, y3),
        max_y=max(y1, y2, y3),
    )
    return ReferenceArc(center_x=h, center_y=k, radius=r, bbox=bbox)


def line_from_points(p1: Point, p2: Point) -> ReferenceLine:
    """Vertical segment at p1.x spanning both points' y values."""
    return ReferenceLine(
        x=p1[0],
        y_min=min(p1[1], p2[1]),
        y_max=max(p1[1], p2[1]),
    )


def fit_reference_path(template: PathTemplate, scalor: float) -> ReferencePath:
    """Scale a template's control points and fit every primitive."""
    arc0, arc1 = (
        arc_from_points(*template_points(template, idx, scalor))
        for idx in template.ascent_arcs
    )
    line = line_from_points(*template_points(template, template.ascent_line, scalor))
    descent = arc_from_points(*template_points(template, template.descent_arc, scalor))
    return ReferencePath(
        ascent_arcs=(arc0, arc1),
        ascent_line=line,
        descent_arc=descent,
        scalor=scalor,
    )
