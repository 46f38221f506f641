"""
Visualization Module
====================

1. CompositorContext: owns every off-screen surface of a render run
   (reference layers, trail, composite target) and the optional preview
   window; released on every exit path.

2. FrameCompositor: per-frame state machine producing the overlay video.

       IDLE -> DESCENDING -> ASCENDING
                  |   ^          |   ^
                  v   |          v   |
                 HOLDING        HOLDING

   - DESCENDING: the descent layer is revealed down to the bar's row
   - ASCENDING: the descent layer is fully shown and the ascent layer is
     revealed from the bar's row downwards, growing as the bar rises
   - HOLDING: a frame without a tracked point repeats the last reveal
   Every tracked point is stamped as a dot on the trail layer, which is
   never cleared.

   Draw order per frame: video crop, descent layer, ascent layer, trail.

3. Deviation chart: bar chart of the six deviation percentages.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np
import matplotlib
matplotlib.use("Agg")  # Non-interactive backend
import matplotlib.pyplot as plt

from .object_tracking import TrajectoryPoint
from .rasterize import CanvasGeometry, ReferenceLayers
from .surfaces import COLORS, Color, Surface

logger = logging.getLogger(__name__)


# ============================================================================
# Data Structures
# ============================================================================

@dataclass(frozen=True)
class RenderedPoint:
    """Trajectory point in canvas coordinates with its phase."""
    x: int
    y: int
    ascending: bool


class CompositorState(Enum):
    IDLE = "idle"
    DESCENDING = "descending"
    ASCENDING = "ascending"
    HOLDING = "holding"


def build_rendered_points(
    descent: Sequence[TrajectoryPoint],
    ascent: Sequence[TrajectoryPoint],
    canvas: CanvasGeometry,
) -> Dict[int, RenderedPoint]:
    """Index both phases by frame; points off the canvas are left out."""
    rendered: Dict[int, RenderedPoint] = {}
    for points, ascending in ((descent, False), (ascent, True)):
        for p in points:
            col, row = canvas.to_local(p)
            if canvas.contains(col, row):
                rendered.setdefault(p.frame_idx, RenderedPoint(col, row, ascending))
    return rendered


# ============================================================================
# Compositor Context
# ============================================================================

class CompositorContext:
    """
    Exclusive owner of the render run's surfaces and preview window.

    Use as a context manager; surfaces are dropped and the window is
    destroyed on exit, including after cancellation or errors.
    """

    def __init__(
        self,
        layers: ReferenceLayers,
        show_preview: bool = False,
        window_title: str = "Bar Path",
    ):
        self.size = layers.ascent.width
        self.ascent_layer: Optional[Surface] = layers.ascent
        self.descent_layer: Optional[Surface] = layers.descent
        self.trail: Optional[Surface] = Surface(self.size, self.size)
        self.target: Optional[Surface] = Surface(self.size, self.size)
        self.show_preview = show_preview
        self.window_title = window_title
        self._window_open = False

    def __enter__(self) -> "CompositorContext":
        if self.show_preview:
            cv2.namedWindow(self.window_title, cv2.WINDOW_NORMAL)
            self._window_open = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()

    @property
    def released(self) -> bool:
        return self.target is None

    def show(self, pixels: np.ndarray) -> bool:
        """
        Display a composited frame.

        Returns:
            False when the user asked to stop ('q' or window closed)
        """
        if not self._window_open:
            return True
        cv2.imshow(self.window_title, cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGR))
        key = cv2.waitKey(1) & 0xFF
        if key == ord("q"):
            return False
        return cv2.getWindowProperty(self.window_title, cv2.WND_PROP_VISIBLE) >= 1

    def release(self):
        if self._window_open:
            cv2.destroyWindow(self.window_title)
            self._window_open = False
        self.ascent_layer = None
        self.descent_layer = None
        self.trail = None
        self.target = None


# ============================================================================
# Frame Compositor
# ============================================================================

class FrameCompositor:
    """Builds one output frame per decoded input frame, in frame order."""

    def __init__(
        self,
        context: CompositorContext,
        points: Dict[int, RenderedPoint],
        canvas: CanvasGeometry,
        scalor: float,
        mirror: bool = False,
        descent_trail_color: Color = COLORS["descent_trail"],
        ascent_trail_color: Color = COLORS["ascent_trail"],
    ):
        self.context = context
        self.points = points
        self.canvas = canvas
        self.scalor = scalor
        self.mirror = mirror
        self.descent_trail_color = tuple(descent_trail_color)
        self.ascent_trail_color = tuple(ascent_trail_color)

        self.state = CompositorState.IDLE
        self.recording = True
        self._descent_rows: Optional[Tuple[int, int]] = None
        self._ascent_rows: Optional[Tuple[int, int]] = None

    def stamp(self, rp: RenderedPoint):
        color = self.ascent_trail_color if rp.ascending else self.descent_trail_color
        self.context.trail.draw_dot((rp.x, rp.y), self.scalor / 3, color)

    def _advance(self, rp: Optional[RenderedPoint]):
        size = self.context.size
        if rp is None:
            if self.state is not CompositorState.IDLE:
                self.state = CompositorState.HOLDING
            return

        if rp.ascending:
            self._descent_rows = (0, size)
            self._ascent_rows = (rp.y - int(self.scalor / 2), size)
            self.state = CompositorState.ASCENDING
        else:
            self._descent_rows = (0, rp.y)
            self._ascent_rows = None
            self.state = CompositorState.DESCENDING

    def render(self, frame_idx: int, frame_bgr: np.ndarray) -> np.ndarray:
        """
        Composite the frame for ``frame_idx``.

        Returns:
            The target surface's RGBA pixels (valid until the next call)
        """
        ctx = self.context
        background = cv2.flip(frame_bgr, 1) if self.mirror else frame_bgr
        ctx.target.load_frame(background, self.canvas.origin)

        rp = self.points.get(frame_idx)
        if rp is not None and self.recording:
            self.stamp(rp)
        self._advance(rp)

        if self._descent_rows is not None:
            ctx.target.blit(ctx.descent_layer, rows=self._descent_rows)
        if self._ascent_rows is not None:
            ctx.target.blit(ctx.ascent_layer, rows=self._ascent_rows)
        ctx.target.blit(ctx.trail)

        return ctx.target.pixels


# ============================================================================
# Deviation Chart
# ============================================================================

def save_deviation_chart(
    averages: Mapping[str, float],
    save_path: str,
    title: str = "Bar path deviation",
) -> str:
    """
    Save a bar chart of the per-segment deviation percentages.

    Undefined (NaN) averages are drawn as empty bars labelled "n/a".
    """
    names = list(averages.keys())
    values = [averages[n] for n in names]
    heights = [0.0 if math.isnan(v) else v for v in values]
    colors = [
        np.array(COLORS["ascent_layer"][:3]) / 255.0 if n.startswith("ascent")
        else np.array(COLORS["descent_layer"][:3]) / 255.0
        for n in names
    ]

    fig, ax = plt.subplots(figsize=(8, 4))
    bars = ax.bar([n.replace("_", "\n") for n in names], heights, color=colors)
    for bar, v in zip(bars, values):
        label = "n/a" if math.isnan(v) else f"{v:+.1f}%"
        ax.annotate(
            label,
            (bar.get_x() + bar.get_width() / 2, bar.get_height()),
            ha="center",
            va="bottom" if bar.get_height() >= 0 else "top",
            fontsize=9,
        )

    ax.axhline(0, color="black", linewidth=0.8)
    ax.set_ylabel("Deviation (% of rep height)")
    ax.set_title(title)
    fig.tight_layout()
    try:
        fig.savefig(save_path, dpi=100)
    finally:
        plt.close(fig)

    logger.info("Saved deviation chart to %s", save_path)
    return save_path
