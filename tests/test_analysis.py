"""
Unit tests for the bar path analysis modules.

Covers template loading, reference geometry, trajectory segmentation and
sanity bounds, the horizontal scanner, deviation aggregation, tracking
with a scripted tracker, Kalman smoothing and clip metadata.

Run:
    python -m pytest tests/test_analysis.py -v --tb=short
"""

import math
import sys
import types
from pathlib import Path

import cv2
import numpy as np
import pytest

# ---------------------------------------------------------------------------
# Setup: add src/ to path so we can import project modules
# ---------------------------------------------------------------------------
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
sys.path.insert(0, str(SRC_DIR))

from barpath.clip import ClipMetadata, edited_path, trim_clip
from barpath.deviation import (
    BUCKET_NAMES,
    DistanceSample,
    aggregate_deviation,
    build_buckets,
    filtered_mean,
    measure_distances,
    nearest_offset,
    remove_outliers,
    split_into_three,
)
from barpath.errors import DegenerateFit, EmptyBucket, SourceUnavailable, TrajectoryRejected
from barpath.geometry import arc_from_points, fit_reference_path, line_from_points
from barpath.object_tracking import (
    PointTracker,
    TrajectoryPoint,
    TrajectorySmoother,
    create_cv_tracker,
)
from barpath.rasterize import CanvasGeometry, ReferenceRasterizer
from barpath.surfaces import Surface
from barpath.template import BENCH_PRESS_TEMPLATE, load_template, template_from_dict
from barpath.trajectory import (
    find_extrema,
    mirror_points,
    needs_mirror,
    segment_trajectory,
    validate_extents,
)
from barpath.video_io import VideoSource


SCALOR = 10.0


@pytest.fixture(scope="module")
def reference_path():
    return fit_reference_path(BENCH_PRESS_TEMPLATE, SCALOR)


@pytest.fixture(scope="module")
def canvas():
    # Rep bottom at frame (10, 280): path space equals canvas offset by padding
    return CanvasGeometry(origin_x=0, origin_y=0, canvas_size=270, padding=10)


def _pts(coords):
    return [TrajectoryPoint(x, y, i) for i, (x, y) in enumerate(coords)]


# ============================================================================
# 1. Templates
# ============================================================================

class TestTemplates:

    def test_default_is_bench_press(self):
        assert load_template(None) is BENCH_PRESS_TEMPLATE
        assert load_template("bench_press") is BENCH_PRESS_TEMPLATE

    def test_scaled_points(self):
        scaled = BENCH_PRESS_TEMPLATE.scaled_points(2.0)
        assert scaled[5] == (30.0, 56.0)
        assert scaled[8] == (26.0, 54.0)

    def test_from_dict(self):
        data = {
            "name": "narrow_grip",
            "points": [[0, 0], [5, 9], [12, 15], [13, 16], [14, 17], [14, 28],
                       [0, 0], [3, 16], [12, 27]],
            "ascent_arcs": [[0, 1, 2], [2, 3, 4]],
            "ascent_line": [4, 5],
            "descent_arc": [6, 7, 8],
        }
        template = load_template(data)
        assert template.name == "narrow_grip"
        assert template.unit_height == 27.0
        assert template.points[7] == (3.0, 16.0)

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "template.yaml"
        path.write_text(
            "name: yaml_template\n"
            "points: [[0, 0], [6, 9], [13, 15], [14.5, 16], [15, 17], [15, 28],"
            " [0, 0], [4, 16], [13, 27]]\n"
            "ascent_arcs: [[0, 1, 2], [2, 3, 4]]\n"
            "ascent_line: [4, 5]\n"
            "descent_arc: [6, 7, 8]\n"
        )
        template = load_template(str(path))
        assert template.name == "yaml_template"
        assert template.points == BENCH_PRESS_TEMPLATE.points

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            load_template("deadlift")

    def test_index_out_of_range(self):
        with pytest.raises(ValueError):
            template_from_dict({
                "points": [[0, 0], [1, 1]],
                "ascent_arcs": [[0, 1, 2], [0, 1, 2]],
                "ascent_line": [0, 1],
                "descent_arc": [0, 1, 2],
            })

    def test_missing_key(self):
        with pytest.raises(ValueError):
            template_from_dict({"points": [[0, 0]]})


# ============================================================================
# 2. Reference Geometry
# ============================================================================

class TestGeometry:

    def test_arc_passes_through_control_points(self):
        points = [(0.0, 0.0), (40.0, 160.0), (130.0, 270.0)]
        arc = arc_from_points(*points)
        for x, y in points:
            d = math.hypot(x - arc.center_x, y - arc.center_y)
            assert d == pytest.approx(arc.radius, abs=1e-9)

    def test_descent_arc_center(self, reference_path):
        arc = reference_path.descent_arc
        assert arc.center_x == pytest.approx(351.2)
        assert arc.center_y == pytest.approx(-2.8)

    def test_arc_bbox_is_control_point_box(self, reference_path):
        arc0 = reference_path.ascent_arcs[0]
        assert (arc0.bbox.min_x, arc0.bbox.max_x) == (0.0, 130.0)
        assert (arc0.min_y, arc0.max_y) == (0.0, 150.0)

    def test_collinear_points_rejected(self):
        with pytest.raises(DegenerateFit):
            arc_from_points((0.0, 0.0), (1.0, 1.0), (2.0, 2.0))

    def test_coincident_points_rejected(self):
        with pytest.raises(DegenerateFit):
            arc_from_points((5.0, 5.0), (5.0, 5.0), (9.0, 1.0))

    def test_line(self, reference_path):
        line = reference_path.ascent_line
        assert line.x == 150.0
        assert (line.min_y, line.max_y) == (170.0, 280.0)

    def test_line_orders_endpoints(self):
        line = line_from_points((3.0, 9.0), (3.0, 2.0))
        assert (line.y_min, line.y_max) == (2.0, 9.0)

    def test_scalor_recorded(self, reference_path):
        assert reference_path.scalor == SCALOR


# ============================================================================
# 3. Segmentation and Sanity Bounds
# ============================================================================

class TestTrajectory:

    def test_segmentation(self):
        points = _pts([(50, 100), (48, 120), (45, 150), (47, 140),
                       (50, 110), (52, 90), (52, 95), (51, 130)])
        seg = segment_trajectory(points)
        assert [p.frame_idx for p in seg.descent] == [0, 1, 2]
        # Cut at the first point reaching the ascent's top
        assert [p.frame_idx for p in seg.ascent] == [3, 4, 5]
        assert seg.extrema.bottom.frame_idx == 2

    def test_descent_only(self):
        seg = segment_trajectory(_pts([(10, 10), (10, 20), (10, 30)]))
        assert len(seg.descent) == 3
        assert seg.ascent == []

    def test_first_extreme_wins(self):
        ext = find_extrema(_pts([(0, 10), (5, 20), (5, 20), (0, 10)]))
        assert ext.max_y.frame_idx == 1
        assert ext.max_x.frame_idx == 1
        assert ext.min_x.frame_idx == 0
        assert ext.min_y.frame_idx == 0

    def test_empty_trajectory_rejected(self):
        with pytest.raises(ValueError, match="at least one point"):
            segment_trajectory([])

    def test_needs_mirror(self):
        assert not needs_mirror(_pts([(100, 0), (50, 10)]))
        assert needs_mirror(_pts([(50, 0), (100, 10)]))
        assert not needs_mirror(_pts([(50, 0)]))

    def test_mirror_points(self):
        mirrored = mirror_points(_pts([(0, 5), (399, 6)]), 400)
        assert [(p.x, p.y) for p in mirrored] == [(399, 5), (0, 6)]
        assert mirror_points(mirrored, 400) == _pts([(0, 5), (399, 6)])

    def test_valid_extents(self):
        validate_extents(find_extrema(_pts([(0, 0), (160, 270)])))

    def test_too_small(self):
        with pytest.raises(TrajectoryRejected):
            validate_extents(find_extrema(_pts([(0, 0), (100, 20)])))

    def test_too_narrow(self):
        # The ideal bench press path itself is narrower than 1:1.75
        with pytest.raises(TrajectoryRejected):
            validate_extents(find_extrema(_pts([(0, 0), (150, 270)])))

    def test_too_wide(self):
        with pytest.raises(TrajectoryRejected):
            validate_extents(find_extrema(_pts([(0, 0), (200, 100)])))

    def test_odd_height_checked_after_rounding_up(self):
        # 279 rounds up to 280 = 160 * 1.75
        validate_extents(find_extrema(_pts([(0, 0), (160, 279)])))
        with pytest.raises(TrajectoryRejected):
            validate_extents(find_extrema(_pts([(0, 0), (159, 279)])))

    def test_relaxed_ratio(self):
        validate_extents(find_extrema(_pts([(0, 0), (150, 270)])), max_aspect_ratio=2.0)


# ============================================================================
# 4. Rasterization and Scanner
# ============================================================================

class TestScanner:

    def test_nearest_offset(self):
        row = np.array([False, True, False, False, False, True])
        assert nearest_offset(row, 1) == 0
        assert nearest_offset(row, 2) == -1
        assert nearest_offset(row, 4) == 1

    def test_tie_goes_left(self):
        row = np.array([False, True, False, False, False, True])
        assert nearest_offset(row, 3) == -2

    def test_one_sided(self):
        assert nearest_offset(np.array([False, False, False, True]), 0) == 3
        assert nearest_offset(np.array([True, False, False, False]), 3) == -3

    def test_not_found(self):
        assert nearest_offset(np.zeros(8, dtype=bool), 4) is None

    def test_measure_distances(self, canvas):
        layer = Surface(canvas.window_size, canvas.window_size)
        layer.pixels[50, 100] = (255, 0, 0, 255)
        samples = measure_distances(layer, [
            TrajectoryPoint(104, 50, 0),   # stroke 4px to the left
            TrajectoryPoint(100, 60, 1),   # empty row
            TrajectoryPoint(-1, 50, 2),    # off canvas
            TrajectoryPoint(100, 290, 3),  # off canvas (row == size)
        ], canvas)
        assert [s.distance for s in samples] == [-4, None, None, None]
        assert samples[0].point == TrajectoryPoint(104, 50, 0)

    def test_point_on_reference_has_zero_distance(self, reference_path, canvas):
        layers = ReferenceRasterizer(canvas).rasterize(reference_path)
        arc = reference_path.descent_arc
        points = []
        for i, y in enumerate(range(10, 261, 25)):
            x = arc.center_x - math.sqrt(arc.radius ** 2 - (y - arc.center_y) ** 2)
            col, row = canvas.path_to_canvas(x, y)
            points.append(TrajectoryPoint(int(round(col)), int(round(row)), i))
        samples = measure_distances(layers.descent, points, canvas)
        assert all(s.distance == 0 for s in samples)

    def test_ascent_layer_has_no_descent_arc(self, reference_path, canvas):
        layers = ReferenceRasterizer(canvas).rasterize(reference_path)
        # At path y=200 the ascent layer holds only the line at x=150
        col, row = canvas.path_to_canvas(75.0, 200.0)
        mask = layers.ascent.nonblank_mask()
        assert not mask[int(row), int(col) - 5:int(col) + 5].any()
        assert mask[int(row), 155:166].any()

    def test_stroke_clipped_to_bbox(self, reference_path, canvas):
        layers = ReferenceRasterizer(canvas).rasterize(reference_path)
        mask = layers.descent.nonblank_mask()
        # Clip box: path x in [0, 135], y in [0, 275]
        assert not mask[:, 146:].any()
        assert not mask[:5, :].any()


# ============================================================================
# 5. Aggregation
# ============================================================================

class TestAggregation:

    def test_split_into_three(self):
        assert split_into_three(0, 9) == [(0, 3), (4, 6), (7, 9)]
        assert split_into_three(0, 270) == [(0, 90), (91, 180), (181, 270)]
        assert split_into_three(3, 11) == [(3, 5), (6, 8), (9, 11)]

    def test_buckets(self, reference_path):
        ascent, descent = build_buckets(reference_path)
        assert [b.name for b in ascent + descent] == list(BUCKET_NAMES)
        assert (ascent[0].min_y, ascent[0].max_y) == (0.0, 150.0)
        assert (ascent[1].min_y, ascent[1].max_y) == (150.0, 170.0)
        assert (ascent[2].min_y, ascent[2].max_y) == (170.0, 280.0)
        assert (descent[0].min_y, descent[0].max_y) == (181, 270)
        assert (descent[2].min_y, descent[2].max_y) == (0, 90)

    def test_filtered_mean_rejects_outlier(self):
        data = [4.9] * 250 + [5.1] * 250 + [10000.0]
        assert filtered_mean(data) == pytest.approx(5.0)

    def test_small_sample_outlier_with_lower_threshold(self):
        data = [5.0] * 20 + [10000.0]
        assert filtered_mean(data, threshold=3.0) == pytest.approx(5.0)

    def test_small_sample_keeps_outlier_at_default_threshold(self):
        # No value of 21 can sit 20 standard deviations from their mean
        data = [5.0] * 20 + [10000.0]
        assert filtered_mean(data) == pytest.approx(10100.0 / 21)

    def test_constant_values(self):
        assert filtered_mean([2.5, 2.5, 2.5]) == 2.5
        assert len(remove_outliers([2.5, 2.5, 2.5])) == 3

    def test_empty(self):
        assert math.isnan(filtered_mean([]))
        assert remove_outliers([]).size == 0

    def _sample(self, canvas, path_y, distance, idx=0):
        col, row = canvas.path_to_canvas(50, path_y)
        return DistanceSample(TrajectoryPoint(int(col), int(row), idx), distance)

    def test_bucket_averages(self, reference_path, canvas):
        descent = [
            self._sample(canvas, 45, 27),     # 10% in descent_end
            self._sample(canvas, 100, -27),   # -10% in descent_middle
            self._sample(canvas, 100, None),  # not found, ignored
            self._sample(canvas, 200, 54),
            self._sample(canvas, 250, 0),
        ]
        ascent = [self._sample(canvas, 75, 5), self._sample(canvas, 200, -5)]
        report = aggregate_deviation(ascent, descent, reference_path, canvas)

        avg = report.averages
        assert avg["descent_end"] == pytest.approx(10.0)
        assert avg["descent_middle"] == pytest.approx(-10.0)
        assert avg["descent_start"] == pytest.approx(10.0)
        assert avg["ascent_start"] == pytest.approx(500 / 270)
        assert avg["ascent_end"] == pytest.approx(-500 / 270)
        assert math.isnan(avg["ascent_middle"])
        assert report.sample_counts["descent_middle"] == 1
        assert report.as_tuple()[3] == pytest.approx(10.0)

    def test_bucket_boundaries_inclusive(self, reference_path, canvas):
        # y=150 lies in both ascent arc buckets
        report = aggregate_deviation(
            [self._sample(canvas, 150, 27)], [], reference_path, canvas
        )
        assert report.averages["ascent_start"] == pytest.approx(10.0)
        assert report.averages["ascent_middle"] == pytest.approx(10.0)

    def test_empty_bucket_is_nan(self, reference_path, canvas):
        report = aggregate_deviation([], [], reference_path, canvas)
        assert all(math.isnan(v) for v in report.as_tuple())

    def test_strict_empty_bucket_raises(self, reference_path, canvas):
        with pytest.raises(EmptyBucket) as exc:
            aggregate_deviation([], [], reference_path, canvas, strict=True)
        assert exc.value.bucket_name == "ascent_start"


# ============================================================================
# 6. Tracking and Smoothing
# ============================================================================

class ScriptedTracker:
    """Moves the box 1px right per frame and loses it on the third update."""

    def __init__(self):
        self.updates = 0
        self.seed_bbox = None

    def init(self, frame, bbox):
        self.seed_bbox = bbox

    def update(self, frame):
        self.updates += 1
        if self.updates == 3:
            return False, None
        x, y, w, h = self.seed_bbox
        return True, (x + self.updates, y, w, h)


@pytest.fixture
def small_video(tmp_path):
    path = str(tmp_path / "small.avi")
    writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*"MJPG"), 30, (64, 48))
    for i in range(6):
        writer.write(np.full((48, 64, 3), 40 * i, dtype=np.uint8))
    writer.release()
    return path


class TestTracking:

    def test_center_of(self):
        assert PointTracker.center_of((10, 20, 11, 7)) == (15, 23)

    def test_track_with_scripted_tracker(self, small_video):
        scripted = ScriptedTracker()
        tracker = PointTracker(show_progress=False, tracker_factory=lambda: scripted)
        with VideoSource(small_video) as source:
            points = tracker.track(source, (10, 20, 10, 6))

        assert scripted.seed_bbox == (10, 20, 10, 6)
        assert scripted.updates == 5
        # Seed frame excluded; frame 2 lost
        assert [p.frame_idx for p in points] == [0, 1, 3, 4]
        assert (points[0].x, points[0].y) == (16, 23)

    def test_unknown_tracker(self):
        with pytest.raises(ValueError):
            create_cv_tracker("boosting-deluxe")

    def test_tracker_from_legacy_namespace(self, monkeypatch):
        sentinel = object()
        monkeypatch.delattr(cv2, "TrackerCSRT_create", raising=False)
        monkeypatch.setattr(
            cv2, "legacy", types.SimpleNamespace(TrackerCSRT_create=lambda: sentinel),
            raising=False,
        )
        assert create_cv_tracker("csrt") is sentinel

    def test_missing_video(self, tmp_path):
        with pytest.raises(SourceUnavailable):
            VideoSource(str(tmp_path / "missing.mp4"))

    def test_smoother_stationary(self):
        points = [TrajectoryPoint(100, 200, i) for i in (0, 1, 2, 5, 6)]
        smoothed = TrajectorySmoother().smooth(points)
        assert smoothed == points

    def test_smoother_damps_jitter(self):
        raw = [TrajectoryPoint(100 + (8 if i % 2 else -8), 200, i) for i in range(40)]
        smoothed = TrajectorySmoother(process_noise_std=0.5).smooth(raw)
        assert len(smoothed) == len(raw)
        assert [p.frame_idx for p in smoothed] == list(range(40))
        spread_raw = np.std([p.x for p in raw[10:]])
        spread_smooth = np.std([p.x for p in smoothed[10:]])
        assert spread_smooth < spread_raw

    def test_smoother_empty(self):
        assert TrajectorySmoother().smooth([]) == []


# ============================================================================
# 7. Clip Metadata
# ============================================================================

class TestClip:

    def test_from_json(self):
        meta = ClipMetadata.from_json(
            '{"start_time": 1.5, "end_time": 6, "video_url": "uploads/set3.mp4",'
            ' "barbell_area": {"x": 410, "y": 220, "width": 90, "height": 60}}'
        )
        assert meta.barbell_area == (410, 220, 90, 60)
        assert meta.duration == pytest.approx(4.5)

    def test_rejects_reversed_times(self):
        with pytest.raises(ValueError):
            ClipMetadata.from_dict({
                "start_time": 5, "end_time": 2, "video_url": "a.mp4",
                "barbell_area": {"x": 0, "y": 0, "width": 1, "height": 1},
            })

    def test_rejects_missing_fields(self):
        with pytest.raises(ValueError):
            ClipMetadata.from_dict({"start_time": 0, "end_time": 2})

    def test_edited_path(self):
        assert edited_path("uploads/set3.mov") == str(Path("uploads") / "set3-edited.mp4")
        assert edited_path("set3.mp4") == "set3-edited.mp4"

    def test_trim_without_ffmpeg(self, tmp_path):
        meta = ClipMetadata(0.0, 1.0, (0, 0, 1, 1), str(tmp_path / "a.mp4"))
        with pytest.raises(SourceUnavailable):
            trim_clip(meta, ffmpeg_bin=str(tmp_path / "no-such-ffmpeg"))
