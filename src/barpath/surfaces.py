"""
Off-screen RGBA surfaces and the 2-D drawing primitives used on them.

Pixels are stored top-down (row 0 is the top scanline) as uint8 RGBA, so
a composited surface is already in video row order. A pixel whose four
channels are all zero is blank.
"""

from typing import Callable, NamedTuple, Optional, Tuple

import cv2
import numpy as np

Color = Tuple[int, int, int, int]

# ============================================================================
# Color Palette (RGBA)
# ============================================================================

COLORS = {
    "ascent_layer": (0x00, 0x83, 0x47, 0xFF),   # Dark green
    "descent_layer": (0x83, 0x22, 0x1C, 0xFF),  # Dark red
    "ascent_trail": (0x00, 0xFF, 0x89, 0xFF),   # Bright green
    "descent_trail": (0xFF, 0x3B, 0x2F, 0xFF),  # Bright red
}

# Fixed-point bits for sub-pixel circle/line coordinates
_SHIFT = 4
_ONE = 1 << _SHIFT


def _fixed(v: float) -> int:
    return int(round(v * _ONE))


class ClipRect(NamedTuple):
    """Scissor rectangle, half-open: [x0, x1) x [y0, y1)."""
    x0: int
    y0: int
    x1: int
    y1: int

    def clamp(self, width: int, height: int) -> "ClipRect":
        return ClipRect(
            max(0, min(self.x0, width)),
            max(0, min(self.y0, height)),
            max(0, min(self.x1, width)),
            max(0, min(self.y1, height)),
        )

    @property
    def empty(self) -> bool:
        return self.x1 <= self.x0 or self.y1 <= self.y0


class Surface:
    """Fixed-size RGBA pixel buffer, initially fully transparent."""

    def __init__(self, width: int, height: int):
        self.pixels = np.zeros((height, width, 4), dtype=np.uint8)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def clear(self, color: Color = (0, 0, 0, 0)):
        self.pixels[:] = color

    def nonblank_mask(self) -> np.ndarray:
        """Boolean (height, width) mask of pixels with any nonzero channel."""
        return self.pixels.any(axis=2)

    # ------------------------------------------------------------------
    # Drawing
    # ------------------------------------------------------------------

    def _draw(self, draw: Callable[[np.ndarray], None], clip: Optional[ClipRect]):
        if clip is None:
            draw(self.pixels)
            return

        clip = clip.clamp(self.width, self.height)
        if clip.empty:
            return

        scratch = np.zeros_like(self.pixels)
        draw(scratch)
        region = scratch[clip.y0:clip.y1, clip.x0:clip.x1]
        mask = region[..., 3] > 0
        self.pixels[clip.y0:clip.y1, clip.x0:clip.x1][mask] = region[mask]

    def draw_ring(
        self,
        center: Tuple[float, float],
        radius: float,
        half_width: int,
        color: Color,
        clip: Optional[ClipRect] = None,
    ):
        """Circle outline covering radius ± half_width."""
        def draw(img):
            cv2.circle(
                img,
                (_fixed(center[0]), _fixed(center[1])),
                _fixed(radius),
                color,
                thickness=2 * half_width,
                lineType=cv2.LINE_8,
                shift=_SHIFT,
            )
        self._draw(draw, clip)

    def draw_segment(
        self,
        p1: Tuple[float, float],
        p2: Tuple[float, float],
        half_width: int,
        color: Color,
        clip: Optional[ClipRect] = None,
    ):
        def draw(img):
            cv2.line(
                img,
                (_fixed(p1[0]), _fixed(p1[1])),
                (_fixed(p2[0]), _fixed(p2[1])),
                color,
                thickness=2 * half_width,
                lineType=cv2.LINE_8,
                shift=_SHIFT,
            )
        self._draw(draw, clip)

    def draw_dot(self, center: Tuple[float, float], radius: float, color: Color):
        """Filled circle, at least one pixel across."""
        cv2.circle(
            self.pixels,
            (_fixed(center[0]), _fixed(center[1])),
            max(_fixed(radius), _ONE),
            color,
            thickness=-1,
            lineType=cv2.LINE_8,
            shift=_SHIFT,
        )

    # ------------------------------------------------------------------
    # Compositing
    # ------------------------------------------------------------------

    def blit(self, src: "Surface", rows: Optional[Tuple[int, int]] = None):
        """
        Draw ``src`` over this surface at the same position.

        Args:
            src: Surface of identical size
            rows: Optional [start, stop) row range acting as a scissor
        """
        start, stop = rows if rows is not None else (0, self.height)
        start = max(0, min(int(start), self.height))
        stop = max(start, min(int(stop), self.height))
        if stop == start:
            return

        s = src.pixels[start:stop]
        d = self.pixels[start:stop]
        alpha = s[..., 3:4].astype(np.float32) / 255.0
        d[..., :3] = (s[..., :3] * alpha + d[..., :3] * (1.0 - alpha) + 0.5).astype(np.uint8)
        d[..., 3] = np.maximum(d[..., 3], s[..., 3])

    def load_frame(self, frame_bgr: np.ndarray, origin: Tuple[int, int]):
        """
        Fill the surface with the frame region starting at ``origin``.

        Parts of the surface falling outside the frame become opaque black.
        """
        ox, oy = origin
        fh, fw = frame_bgr.shape[:2]
        self.clear((0, 0, 0, 255))

        x0, y0 = max(ox, 0), max(oy, 0)
        x1, y1 = min(ox + self.width, fw), min(oy + self.height, fh)
        if x1 <= x0 or y1 <= y0:
            return

        crop = cv2.cvtColor(frame_bgr[y0:y1, x0:x1], cv2.COLOR_BGR2RGBA)
        self.pixels[y0 - oy:y1 - oy, x0 - ox:x1 - ox] = crop
