"""
Deviation Measurement
=====================

1. Scanner: for every trajectory point, look along the point's own row of
   a rasterized reference layer for the nearest nonblank pixel. The
   signed column offset (negative = reference stroke lies to the left)
   is the point's lateral distance from the reference path at that
   height. Points off the canvas, or rows without any stroke, have no
   distance (None).

2. Aggregator: distances are bucketed by which part of the reference path
   their height falls in, expressed as a percentage of the trajectory's
   vertical extent, stripped of extreme outliers and averaged:

       ascent_start   ascent arc 0 height range
       ascent_middle  ascent arc 1 height range
       ascent_end     ascent line height range
       descent_start  top third of the descent arc
       descent_middle middle third
       descent_end    bottom third
"""

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import EmptyBucket
from .geometry import ReferencePath
from .object_tracking import TrajectoryPoint
from .rasterize import CanvasGeometry
from .surfaces import Surface

logger = logging.getLogger(__name__)

BUCKET_NAMES: Tuple[str, ...] = (
    "ascent_start",
    "ascent_middle",
    "ascent_end",
    "descent_start",
    "descent_middle",
    "descent_end",
)

# Samples further than this many standard deviations from the bucket mean
# are treated as scanner mis-hits
OUTLIER_THRESHOLD = 20.0


# ============================================================================
# Data Structures
# ============================================================================

@dataclass(frozen=True)
class DistanceSample:
    """Canvas-local point and its signed lateral distance (None = not found)."""
    point: TrajectoryPoint
    distance: Optional[int]


@dataclass(frozen=True)
class DeviationBucket:
    """Named height range in path space, bounds inclusive."""
    name: str
    min_y: float
    max_y: float

    def contains(self, y: float) -> bool:
        return self.min_y <= y <= self.max_y


@dataclass
class DeviationReport:
    """Per-bucket averages (percent of canvas size) and sample counts."""
    averages: "OrderedDict[str, float]"
    sample_counts: Dict[str, int]

    def as_tuple(self) -> Tuple[float, ...]:
        return tuple(self.averages[name] for name in BUCKET_NAMES)


# ============================================================================
# 1. Scanner
# ============================================================================

def nearest_offset(row_mask: np.ndarray, x: int) -> Optional[int]:
    """
    Signed offset from column ``x`` to the nearest True entry of a row.

    Expands outward d = 0, 1, 2, ... checking the left side before the
    right, so a tie resolves to the negative offset.
    """
    cols = np.flatnonzero(row_mask)
    if cols.size == 0:
        return None

    left = cols[cols <= x]
    right = cols[cols >= x]
    d_left = x - int(left[-1]) if left.size else None
    d_right = int(right[0]) - x if right.size else None

    if d_right is None or (d_left is not None and d_left <= d_right):
        return -d_left
    return d_right


def measure_distances(
    layer: Surface,
    points: Sequence[TrajectoryPoint],
    canvas: CanvasGeometry,
) -> List[DistanceSample]:
    """Scan one reference layer for every trajectory point."""
    mask = layer.nonblank_mask()
    height, width = mask.shape
    samples = []

    for p in points:
        col, row = canvas.to_local(p)
        local = TrajectoryPoint(col, row, p.frame_idx)
        if col < 0 or col >= width or row < 0 or row >= height:
            samples.append(DistanceSample(local, None))
        else:
            samples.append(DistanceSample(local, nearest_offset(mask[row], col)))

    return samples


# ============================================================================
# 2. Aggregator
# ============================================================================

def split_into_three(min_y: int, max_y: int) -> List[Tuple[int, int]]:
    """
    Split [min_y, max_y] into three contiguous inclusive integer ranges.

    Sizes differ by at most one; the remainder goes to the earliest ranges
    (a span of 10 splits into 4, 3, 3).
    """
    span = max_y - min_y + 1
    part, remainder = divmod(span, 3)

    ranges = []
    start = min_y
    for _ in range(3):
        end = start + part - 1
        if remainder > 0:
            end += 1
            remainder -= 1
        ranges.append((start, end))
        start = end + 1
    return ranges


def build_buckets(path: ReferencePath) -> Tuple[List[DeviationBucket], List[DeviationBucket]]:
    """Ascent and descent buckets for a fitted reference path."""
    arc0, arc1 = path.ascent_arcs
    ascent = [
        DeviationBucket("ascent_start", arc0.min_y, arc0.max_y),
        DeviationBucket("ascent_middle", arc1.min_y, arc1.max_y),
        DeviationBucket("ascent_end", path.ascent_line.min_y, path.ascent_line.max_y),
    ]

    # Thirds run bottom-up; the descent starts at the top
    low, mid, high = split_into_three(int(path.descent_arc.min_y), int(path.descent_arc.max_y))
    descent = [
        DeviationBucket("descent_start", *high),
        DeviationBucket("descent_middle", *mid),
        DeviationBucket("descent_end", *low),
    ]
    return ascent, descent


def bucket_percentages(
    samples: Sequence[DistanceSample],
    bucket: DeviationBucket,
    canvas: CanvasGeometry,
) -> List[float]:
    """Distances of the samples inside ``bucket``, as % of canvas size."""
    values = []
    for sample in samples:
        if sample.distance is None:
            continue
        y = canvas.row_to_path_y(sample.point.y)
        if bucket.contains(y):
            values.append(sample.distance / canvas.canvas_size * 100.0)
    return values


def remove_outliers(data: Sequence[float], threshold: float = OUTLIER_THRESHOLD) -> np.ndarray:
    """Keep values within ``threshold`` standard deviations of the mean."""
    values = np.asarray(data, dtype=np.float64)
    if values.size == 0:
        return values
    mean = values.mean()
    std = values.std()
    kept = values[np.abs(values - mean) <= threshold * std]
    if kept.size < values.size:
        logger.warning(
            "Discarded %d of %d samples beyond %g standard deviations",
            values.size - kept.size, values.size, threshold,
        )
    return kept


def filtered_mean(data: Sequence[float], threshold: float = OUTLIER_THRESHOLD) -> float:
    """
    Mean after outlier rejection.

    Returns NaN when there is nothing to average.
    """
    kept = remove_outliers(data, threshold)
    if kept.size == 0:
        return math.nan
    return float(kept.mean())


def aggregate_deviation(
    ascent_samples: Sequence[DistanceSample],
    descent_samples: Sequence[DistanceSample],
    path: ReferencePath,
    canvas: CanvasGeometry,
    outlier_threshold: float = OUTLIER_THRESHOLD,
    strict: bool = False,
) -> DeviationReport:
    """
    Average signed deviation per reference segment.

    Args:
        ascent_samples: Distances measured on the ascent layer
        descent_samples: Distances measured on the descent layer
        path: Fitted reference path (defines the buckets)
        canvas: Canvas geometry the samples were measured in
        outlier_threshold: Outlier cut-off in standard deviations
        strict: Raise EmptyBucket instead of reporting NaN

    Returns:
        DeviationReport in BUCKET_NAMES order
    """
    ascent_buckets, descent_buckets = build_buckets(path)
    grouped = [(b, ascent_samples) for b in ascent_buckets]
    grouped += [(b, descent_samples) for b in descent_buckets]

    averages: "OrderedDict[str, float]" = OrderedDict((name, math.nan) for name in BUCKET_NAMES)
    counts: Dict[str, int] = {}

    for bucket, samples in grouped:
        values = bucket_percentages(samples, bucket, canvas)
        counts[bucket.name] = len(values)

        if not values:
            if strict:
                raise EmptyBucket(bucket.name)
            logger.warning("No samples for %s, average is undefined", bucket.name)
            continue

        averages[bucket.name] = filtered_mean(values, outlier_threshold)

    return DeviationReport(averages=averages, sample_counts=counts)
