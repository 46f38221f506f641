"""
Pipeline: End-to-End Integration
================================

1. Video Input -> Point tracking (object_tracking)
2. Segmentation -> Descent / single ascent cycle (trajectory)
3. Orientation + sanity bounds -> mirror, reject impossible paths
4. Geometry -> Reference arcs and line scaled to the rep (geometry)
5. Rasterization -> Ascent / descent reference layers (rasterize)
6. Deviation -> Scan distances, bucket, filter, average (deviation)
7. Compositing -> Annotated overlay video (visualization, video_io)

Usage:
    result = process_bar_path("rep.mp4", "rep_bar_path.mp4", (410, 220, 90, 60))
    if result.succeeded:
        print(result.named_averages())
"""

import argparse
import json
import logging
import math
import os
import sys
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm
import yaml

from .clip import ClipMetadata, trim_clip
from .deviation import (
    BUCKET_NAMES,
    OUTLIER_THRESHOLD,
    DeviationReport,
    DistanceSample,
    aggregate_deviation,
    measure_distances,
)
from .errors import (
    BarPathError,
    Cancelled,
    ConfigError,
    ReportError,
    SourceUnavailable,
    TrajectoryRejected,
)
from .geometry import ReferencePath, fit_reference_path
from .object_tracking import (
    TRACKER_CLASSES,
    BBox,
    PointTracker,
    TrajectoryPoint,
    TrajectorySmoother,
)
from .rasterize import CanvasGeometry, ReferenceLayers, ReferenceRasterizer
from .surfaces import COLORS
from .template import PathTemplate, describe, load_template
from .trajectory import (
    SegmentedTrajectory,
    mirror_points,
    needs_mirror,
    segment_trajectory,
    validate_extents,
)
from .video_io import ENCODERS, VideoSource, create_encoder, remove_output
from .visualization import (
    CompositorContext,
    FrameCompositor,
    build_rendered_points,
    save_deviation_chart,
)

logger = logging.getLogger(__name__)

FAILED_PATH = "Failed"


class PipelineConfig:
    """Configuration container for the pipeline."""

    def __init__(self, config_path: Optional[str] = None, **overrides):
        self.config = {}
        if config_path:
            if os.path.exists(config_path):
                with open(config_path, "r") as f:
                    self.config = yaml.safe_load(f) or {}
            else:
                logger.warning("Config file %s not found, using defaults", config_path)
        self.config.update(overrides)

        # Point tracker: "csrt", "kcf", "mil"
        self.tracker = self.config.get("tracker", "csrt")

        # Kalman smoothing of the tracked trail
        self.smooth_trajectory = self.config.get("smooth_trajectory", False)
        self.process_noise = self.config.get("process_noise", 5.0)
        self.measurement_noise = self.config.get("measurement_noise", 2.0)

        # Reference path template: built-in name, YAML path or inline mapping
        self.template = self.config.get("template", "bench_press")

        # Canvas and strokes
        self.canvas_padding = self.config.get("canvas_padding", 10)
        self.stroke_half_width = self.config.get("stroke_half_width", 3)

        # Trajectory sanity bounds
        self.min_extent_px = self.config.get("min_extent_px", 30)
        self.max_aspect_ratio = self.config.get("max_aspect_ratio", 1.75)

        # Aggregation
        self.outlier_threshold = self.config.get("outlier_threshold", OUTLIER_THRESHOLD)
        self.strict_buckets = self.config.get("strict_buckets", False)

        # Layer and trail colors (RGBA)
        self.colors = dict(COLORS)
        self.colors.update({
            k: tuple(v) for k, v in (self.config.get("colors") or {}).items()
        })

        # Output
        self.encoder = self.config.get("encoder", "ffmpeg")
        self.output_codec = self.config.get("output_codec", "mp4v")
        self.ffmpeg_preset = self.config.get("ffmpeg_preset", "fast")
        self.output_fps = self.config.get("output_fps", None)  # None = same as input
        self.max_path_length = self.config.get("max_path_length", 255)
        self.report_path = self.config.get("report_path", None)

        # Interaction
        self.show_preview = self.config.get("show_preview", False)
        self.show_progress = self.config.get("show_progress", True)


# ============================================================================
# Results
# ============================================================================

@dataclass
class ProcessedVideoResult:
    """Externally observed outcome of one run."""
    succeeded: bool
    averages: Tuple[float, ...] = (0.0,) * len(BUCKET_NAMES)
    output_path: str = FAILED_PATH
    reason: Optional[str] = None

    @classmethod
    def failed(cls, reason: str) -> "ProcessedVideoResult":
        return cls(succeeded=False, reason=reason)

    def named_averages(self) -> "OrderedDict[str, float]":
        return OrderedDict(zip(BUCKET_NAMES, self.averages))

    def to_dict(self) -> Dict:
        """JSON-friendly form; undefined averages become null."""
        return {
            "succeeded": self.succeeded,
            "averages": [None if math.isnan(v) else v for v in self.averages],
            "output_path": self.output_path,
            "reason": self.reason,
        }


@dataclass
class TrajectoryAnalysis:
    """Everything measured from one trajectory, ready for rendering."""
    segmented: SegmentedTrajectory
    mirrored: bool
    canvas: CanvasGeometry
    path: ReferencePath
    layers: ReferenceLayers
    descent_samples: List[DistanceSample] = field(default_factory=list)
    ascent_samples: List[DistanceSample] = field(default_factory=list)
    report: Optional[DeviationReport] = None


# ============================================================================
# Analysis
# ============================================================================

def analyze_trajectory(
    points: Sequence[TrajectoryPoint],
    frame_width: int,
    config: Optional[PipelineConfig] = None,
    template: Optional[PathTemplate] = None,
) -> TrajectoryAnalysis:
    """
    Measure a tracked rep against the reference path.

    Args:
        points: Tracked points in frame order
        frame_width: Width of the source frames (for mirroring)
        config: Pipeline configuration (defaults if None)
        template: Reference template (config's template if None)

    Returns:
        TrajectoryAnalysis with canvas, layers, samples and averages
    """
    cfg = config or PipelineConfig()
    template = template or load_template(cfg.template)

    if not points:
        raise TrajectoryRejected("No trajectory points were tracked")

    segmented = segment_trajectory(points)
    mirrored = needs_mirror(segmented.descent)
    if mirrored:
        segmented = segment_trajectory(mirror_points(points, frame_width))
    logger.info(
        "Descent: %d points, ascent: %d points%s",
        len(segmented.descent), len(segmented.ascent),
        " (mirrored)" if mirrored else "",
    )

    extrema = segmented.extrema
    validate_extents(extrema, cfg.min_extent_px, cfg.max_aspect_ratio)

    scalor = extrema.height / template.unit_height
    canvas = CanvasGeometry.from_extrema(extrema, cfg.canvas_padding)
    path = fit_reference_path(template, scalor)
    logger.info(
        "Canvas %dpx (window %dpx), scale %.2f px/unit",
        canvas.canvas_size, canvas.window_size, scalor,
    )

    rasterizer = ReferenceRasterizer(
        canvas,
        half_width=cfg.stroke_half_width,
        ascent_color=cfg.colors["ascent_layer"],
        descent_color=cfg.colors["descent_layer"],
    )
    layers = rasterizer.rasterize(path)

    descent_samples = measure_distances(layers.descent, segmented.descent, canvas)
    ascent_samples = measure_distances(layers.ascent, segmented.ascent, canvas)
    report = aggregate_deviation(
        ascent_samples,
        descent_samples,
        path,
        canvas,
        outlier_threshold=cfg.outlier_threshold,
        strict=cfg.strict_buckets,
    )

    return TrajectoryAnalysis(
        segmented=segmented,
        mirrored=mirrored,
        canvas=canvas,
        path=path,
        layers=layers,
        descent_samples=descent_samples,
        ascent_samples=ascent_samples,
        report=report,
    )


# ============================================================================
# Pipeline
# ============================================================================

class BarPathPipeline:
    """
    Complete video processing pipeline for one bench-press rep.

    The point tracker and encoder factory can be swapped (tests use
    scripted trackers and in-memory encoders).
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        point_tracker: Optional[PointTracker] = None,
        encoder_factory: Optional[Callable] = None,
    ):
        self.config = config or PipelineConfig()
        cfg = self.config

        try:
            self.template = load_template(cfg.template)
        except (OSError, TypeError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"Bad template '{cfg.template}': {e}") from e
        if point_tracker is None and cfg.tracker not in TRACKER_CLASSES:
            raise ConfigError(
                f"Unknown tracker '{cfg.tracker}', expected one of {sorted(TRACKER_CLASSES)}"
            )
        if encoder_factory is None and cfg.encoder not in ENCODERS:
            raise ConfigError(
                f"Unknown encoder '{cfg.encoder}', expected one of {list(ENCODERS)}"
            )

        self.point_tracker = point_tracker or PointTracker(
            method=cfg.tracker, show_progress=cfg.show_progress
        )
        self.smoother = None
        if cfg.smooth_trajectory:
            self.smoother = TrajectorySmoother(
                process_noise_std=cfg.process_noise,
                measurement_noise_std=cfg.measurement_noise,
            )
        self.encoder_factory = encoder_factory or self._create_encoder

    def _create_encoder(self, output_path: str, size: int, fps: float, hflip: bool):
        cfg = self.config
        return create_encoder(
            cfg.encoder,
            output_path,
            size,
            fps,
            hflip=hflip,
            codec=cfg.output_codec,
            preset=cfg.ffmpeg_preset,
        )

    def process_video(
        self,
        input_path: str,
        output_path: str,
        seed_bbox: BBox,
        stop_event: Optional[threading.Event] = None,
    ) -> ProcessedVideoResult:
        """
        Track, measure and render one rep.

        Args:
            input_path: Path to input video
            output_path: Path of the annotated output video
            seed_bbox: (x, y, width, height) of the barbell in the first frame
            stop_event: Set to cancel; checked once per rendered frame

        Returns:
            Successful ProcessedVideoResult

        Raises:
            BarPathError: on any terminal failure
        """
        cfg = self.config
        logger.info("Template %s", describe(self.template))

        with VideoSource(input_path) as source:
            points = self.point_tracker.track(source, seed_bbox)
            if self.smoother is not None:
                points = self.smoother.smooth(points)

            analysis = analyze_trajectory(points, source.width, cfg, self.template)
            self.render_video(source, analysis, output_path, stop_event)

        averages = analysis.report.averages
        logger.info(
            "Deviation: %s",
            ", ".join(f"{k}={v:+.2f}%" for k, v in averages.items()),
        )

        if cfg.report_path:
            try:
                save_deviation_chart(averages, cfg.report_path)
            except (OSError, ValueError) as e:
                remove_output(output_path)
                raise ReportError(f"Could not write report {cfg.report_path}: {e}") from e

        return ProcessedVideoResult(
            succeeded=True,
            averages=analysis.report.as_tuple(),
            output_path=output_path[:cfg.max_path_length],
        )

    def render_video(
        self,
        source: VideoSource,
        analysis: TrajectoryAnalysis,
        output_path: str,
        stop_event: Optional[threading.Event] = None,
    ) -> int:
        """
        Composite every frame of the source and stream it to the encoder.

        The encoder is finalized the first time the source runs out; with a
        preview window open the loop then keeps replaying the source until
        the user stops it.

        Returns:
            Number of frames encoded
        """
        cfg = self.config

        source.rewind()
        if source.read() is None:
            raise SourceUnavailable("Could not read the first frame")

        fps = cfg.output_fps or source.fps
        rendered = build_rendered_points(
            analysis.segmented.descent, analysis.segmented.ascent, analysis.canvas
        )

        with CompositorContext(analysis.layers, show_preview=cfg.show_preview) as ctx, \
                self.encoder_factory(output_path, ctx.size, fps, analysis.mirrored) as encoder:
            compositor = FrameCompositor(
                ctx,
                rendered,
                analysis.canvas,
                analysis.path.scalor,
                mirror=analysis.mirrored,
                descent_trail_color=cfg.colors["descent_trail"],
                ascent_trail_color=cfg.colors["ascent_trail"],
            )

            total = max(source.frame_count - 1, 0) or None
            progress = tqdm(total=total, desc="Rendering overlay", disable=not cfg.show_progress)

            frame_idx = 0
            while True:
                if stop_event is not None and stop_event.is_set():
                    if compositor.recording:
                        raise Cancelled("Stopped before the output video was finalized")
                    break

                frame = source.read()
                if frame is None:
                    # Replay from the seed frame so indices stay aligned
                    source.rewind()
                    frame = source.read()
                    frame_idx = -1
                    if compositor.recording:
                        encoder.close()
                        compositor.recording = False
                        progress.close()
                    if not ctx.show_preview or frame is None:
                        break

                pixels = compositor.render(frame_idx, frame)
                if compositor.recording:
                    encoder.write(pixels)
                    progress.update(1)

                if not ctx.show(pixels):
                    if compositor.recording:
                        raise Cancelled("Preview closed before the output video was finalized")
                    break

                frame_idx += 1

            progress.close()

        return encoder.frames_written


def process_bar_path(
    input_path: str,
    output_path: str,
    tracker_seed_bbox: BBox,
    config: Optional[PipelineConfig] = None,
    stop_event: Optional[threading.Event] = None,
    point_tracker: Optional[PointTracker] = None,
    encoder_factory: Optional[Callable] = None,
) -> ProcessedVideoResult:
    """
    Analyze one bench-press rep video.

    Never raises for pipeline failures: any of them yields
    ``succeeded=False`` with zero averages and the "Failed" path.
    """
    try:
        pipeline = BarPathPipeline(config, point_tracker=point_tracker,
                                   encoder_factory=encoder_factory)
        return pipeline.process_video(input_path, output_path, tracker_seed_bbox, stop_event)
    except BarPathError as e:
        logger.error("Bar path processing failed (%s): %s", e.reason, e)
        return ProcessedVideoResult.failed(e.reason)


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for running the pipeline from command line."""
    parser = argparse.ArgumentParser(
        description="Bench-press bar path tracking and deviation scoring"
    )
    parser.add_argument(
        "input", type=str, nargs="?", default=None,
        help="Path to input video file"
    )
    parser.add_argument(
        "-o", "--output", type=str, default=None,
        help="Path to output video file"
    )
    parser.add_argument(
        "--bbox", type=int, nargs=4, metavar=("X", "Y", "W", "H"),
        help="Barbell bounding box in the first frame"
    )
    parser.add_argument(
        "--metadata", type=str, default=None,
        help="Clip metadata JSON (trims the video and supplies the bbox)"
    )
    parser.add_argument(
        "-c", "--config", type=str, default=None,
        help="Path to pipeline config YAML"
    )
    parser.add_argument(
        "--encoder", type=str, default=None, choices=["ffmpeg", "opencv"],
        help="Output encoder"
    )
    parser.add_argument(
        "--show", action="store_true",
        help="Show preview window (press q to quit)"
    )
    parser.add_argument(
        "--report", type=str, default=None,
        help="Save a deviation bar chart to this path"
    )
    parser.add_argument(
        "--json", action="store_true",
        help="Print the result as JSON"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("LOGLEVEL", "DEBUG" if args.verbose else "INFO").upper(),
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    input_path = args.input
    bbox = tuple(args.bbox) if args.bbox else None

    if args.metadata:
        try:
            meta = ClipMetadata.load(args.metadata)
            input_path = trim_clip(meta)
        except (OSError, ValueError, BarPathError) as e:
            logger.error("Could not prepare clip: %s", e)
            return 1
        bbox = bbox or meta.barbell_area

    if input_path is None:
        parser.error("an input video or --metadata is required")
    if bbox is None:
        parser.error("--bbox is required unless --metadata provides it")

    # Build config
    config = PipelineConfig(args.config)
    if args.encoder:
        config.encoder = args.encoder
    if args.show:
        config.show_preview = True
    if args.report:
        config.report_path = args.report

    output = args.output
    if output is None:
        base = os.path.splitext(input_path)[0]
        output = f"{base}_bar_path.mp4"

    result = process_bar_path(input_path, output, bbox, config)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.succeeded else 1

    # Print summary
    print("\n" + "=" * 60)
    print("Processing Complete" if result.succeeded else f"Processing Failed ({result.reason})")
    print("=" * 60)
    if result.succeeded:
        print(f"Output: {result.output_path}")
        for name, value in result.named_averages().items():
            shown = "n/a" if math.isnan(value) else f"{value:+.2f}%"
            print(f"  {name:<15} {shown}")

    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
