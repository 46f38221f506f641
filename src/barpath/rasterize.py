"""
Reference Rasterization
=======================

Draws the reference path onto two off-screen layers:

- ascent layer: ascent arcs 0 and 1 plus the vertical line
- descent layer: the descent arc

Each primitive is clipped to its bounding box expanded by half the scale
factor, so a stroke never bleeds outside its own part of the path when a
layer is later revealed piece by piece.

Canvas layout (window_size = canvas_size + 2 * padding):

    origin = (bottom.x - padding, top.y - padding) in frame coordinates
    path (x, y-up) -> canvas (padding + x, padding + canvas_size - y)
"""

import math
from dataclasses import dataclass
from typing import Tuple

from .geometry import ReferenceArc, ReferenceLine, ReferencePath
from .object_tracking import TrajectoryPoint
from .surfaces import COLORS, ClipRect, Color, Surface
from .trajectory import Extrema


@dataclass(frozen=True)
class CanvasGeometry:
    """Placement of the analysis canvas inside the (possibly mirrored) frame."""
    origin_x: int
    origin_y: int
    canvas_size: int
    padding: int = 10

    @classmethod
    def from_extrema(cls, extrema: Extrema, padding: int = 10) -> "CanvasGeometry":
        canvas_size = extrema.height
        # libx264/yuv420p needs even frame dimensions
        if canvas_size % 2 != 0:
            canvas_size += 1
        return cls(
            origin_x=extrema.bottom.x - padding,
            origin_y=extrema.min_y.y - padding,
            canvas_size=canvas_size,
            padding=padding,
        )

    @property
    def window_size(self) -> int:
        return self.canvas_size + 2 * self.padding

    @property
    def origin(self) -> Tuple[int, int]:
        return self.origin_x, self.origin_y

    def to_local(self, point: TrajectoryPoint) -> Tuple[int, int]:
        """Frame coordinates -> canvas (col, row)."""
        return point.x - self.origin_x, point.y - self.origin_y

    def contains(self, col: int, row: int) -> bool:
        return 0 <= col < self.window_size and 0 <= row < self.window_size

    def path_to_canvas(self, x: float, y: float) -> Tuple[float, float]:
        return self.padding + x, self.padding + self.canvas_size - y

    def row_to_path_y(self, row: int) -> int:
        """Canvas row -> path height above the rep's bottom."""
        return self.padding + self.canvas_size - row


@dataclass
class ReferenceLayers:
    ascent: Surface
    descent: Surface


class ReferenceRasterizer:
    """Renders a ReferencePath into ascent and descent layers."""

    def __init__(
        self,
        canvas: CanvasGeometry,
        half_width: int = 3,
        ascent_color: Color = COLORS["ascent_layer"],
        descent_color: Color = COLORS["descent_layer"],
    ):
        self.canvas = canvas
        self.half_width = half_width
        self.ascent_color = tuple(ascent_color)
        self.descent_color = tuple(descent_color)

    def _clip(self, min_x: float, max_x: float, min_y: float, max_y: float) -> ClipRect:
        left, bottom = self.canvas.path_to_canvas(min_x, min_y)
        right, top = self.canvas.path_to_canvas(max_x, max_y)
        return ClipRect(
            int(math.floor(left)),
            int(math.floor(top)),
            int(math.ceil(right)) + 1,
            int(math.ceil(bottom)) + 1,
        )

    def arc_clip(self, arc: ReferenceArc, scalor: float) -> ClipRect:
        box = arc.bbox
        return self._clip(box.min_x, box.max_x + scalor / 2,
                          box.min_y, box.max_y + scalor / 2)

    def line_clip(self, line: ReferenceLine, scalor: float) -> ClipRect:
        reach = max(scalor / 2, self.half_width)
        return self._clip(line.x - reach, line.x + reach,
                          line.y_min, line.y_max + scalor / 2)

    def draw_arc(self, surface: Surface, arc: ReferenceArc, scalor: float, color: Color):
        center = self.canvas.path_to_canvas(arc.center_x, arc.center_y)
        surface.draw_ring(center, arc.radius, self.half_width, color,
                          clip=self.arc_clip(arc, scalor))

    def draw_line(self, surface: Surface, line: ReferenceLine, scalor: float, color: Color):
        p1 = self.canvas.path_to_canvas(line.x, line.y_min)
        p2 = self.canvas.path_to_canvas(line.x, line.y_max)
        surface.draw_segment(p1, p2, self.half_width, color,
                             clip=self.line_clip(line, scalor))

    def rasterize(self, path: ReferencePath) -> ReferenceLayers:
        size = self.canvas.window_size
        ascent = Surface(size, size)
        descent = Surface(size, size)

        for arc in path.ascent_arcs:
            self.draw_arc(ascent, arc, path.scalor, self.ascent_color)
        self.draw_line(ascent, path.ascent_line, path.scalor, self.ascent_color)

        self.draw_arc(descent, path.descent_arc, path.scalor, self.descent_color)

        return ReferenceLayers(ascent=ascent, descent=descent)
