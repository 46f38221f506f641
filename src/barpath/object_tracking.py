"""
Object Tracking
===============

Turns the raw video into an ordered sequence of per-frame bar positions.

1. PointTracker - OpenCV single-object tracker (CSRT by default):
   initialized on the seed frame with the user's barbell bounding box,
   then updated on every following frame. The center of the tracked box
   becomes the frame's trajectory point; frames where the tracker reports
   failure produce no point.

2. TrajectorySmoother - optional Kalman filter over the tracked points:
   State: [x, y, vx, vy], constant velocity model. Predicts across
   frames without a detection and corrects on every tracked point.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from filterpy.kalman import KalmanFilter
from tqdm import tqdm

from .errors import SourceUnavailable
from .video_io import VideoSource

logger = logging.getLogger(__name__)

BBox = Tuple[int, int, int, int]  # x, y, width, height


# ============================================================================
# Data Structures
# ============================================================================

@dataclass(frozen=True)
class TrajectoryPoint:
    """Tracked bar center for one frame (integer pixel coordinates)."""
    x: int
    y: int
    frame_idx: int


# ============================================================================
# 1. OpenCV Point Tracker
# ============================================================================

# OpenCV tracker classes by config name
TRACKER_CLASSES: Dict[str, str] = {
    "csrt": "TrackerCSRT",
    "kcf": "TrackerKCF",
    "mil": "TrackerMIL",
}


def create_cv_tracker(method: str = "csrt"):
    """Instantiate an OpenCV tracker by name (csrt, kcf, mil)."""
    try:
        class_name = TRACKER_CLASSES[method]
    except KeyError:
        raise ValueError(
            f"Unknown tracker '{method}', expected one of {sorted(TRACKER_CLASSES)}"
        ) from None

    factory = getattr(cv2, f"{class_name}_create", None)
    if factory is None:
        # opencv-contrib builds that only ship the old trackers under cv2.legacy
        factory = getattr(getattr(cv2, "legacy", None), f"{class_name}_create", None)
    if factory is None:
        factory = getattr(cv2, class_name).create
    return factory()


class PointTracker:
    """
    Single barbell tracker producing one TrajectoryPoint per tracked frame.

    The seed frame (first frame of the video) is only used to initialize
    the tracker; frame_idx 0 is the frame right after it.
    """

    def __init__(
        self,
        method: str = "csrt",
        show_progress: bool = True,
        tracker_factory: Optional[Callable[[], object]] = None,
    ):
        """
        Args:
            method: OpenCV tracker name (csrt, kcf, mil)
            show_progress: Show a tqdm progress bar while tracking
            tracker_factory: Override for the OpenCV tracker constructor
        """
        self.method = method
        self.show_progress = show_progress
        self._factory = tracker_factory or (lambda: create_cv_tracker(method))

    @staticmethod
    def center_of(bbox: Sequence[float]) -> Tuple[int, int]:
        x, y, w, h = (int(v) for v in bbox)
        return x + w // 2, y + h // 2

    def track(self, source: VideoSource, seed_bbox: BBox) -> List[TrajectoryPoint]:
        """
        Track the barbell through the whole video.

        Args:
            source: Opened video source (rewound before tracking)
            seed_bbox: (x, y, width, height) of the barbell in the seed frame

        Returns:
            Trajectory points in frame order
        """
        source.rewind()
        seed = source.read()
        if seed is None:
            raise SourceUnavailable("Could not read the first frame")

        tracker = self._factory()
        tracker.init(seed, tuple(int(v) for v in seed_bbox))

        points: List[TrajectoryPoint] = []
        total = max(source.frame_count - 1, 0) or None
        progress = tqdm(total=total, desc="Tracking barbell", disable=not self.show_progress)

        frame_idx = 0
        while True:
            frame = source.read()
            if frame is None:
                break

            ok, bbox = tracker.update(frame)
            if ok:
                cx, cy = self.center_of(bbox)
                points.append(TrajectoryPoint(cx, cy, frame_idx))

            frame_idx += 1
            progress.update(1)

        progress.close()
        logger.info(
            "Tracked %d/%d frames with %s", len(points), frame_idx, self.method.upper()
        )
        return points


# ============================================================================
# 2. Kalman Trail Smoothing
# ============================================================================

class TrajectorySmoother:
    """
    Constant-velocity Kalman filter run over a tracked trajectory.

    State model:
        x = [x, y, vx, vy]^T,  F = [[1,0,dt,0],[0,1,0,dt],[0,0,1,0],[0,0,0,1]]
        z = [x, y]^T,          H = [[1,0,0,0],[0,1,0,0]]

    Frames missing from the trajectory are predicted through, so a gap
    does not drag the estimate; output points exist only where input
    points did.
    """

    def __init__(
        self,
        process_noise_std: float = 5.0,
        measurement_noise_std: float = 2.0,
        initial_covariance: float = 100.0,
        dt: float = 1.0,
    ):
        self.process_noise_std = process_noise_std
        self.measurement_noise_std = measurement_noise_std
        self.initial_covariance = initial_covariance
        self.dt = dt

    def _create_kalman_filter(self, x0: float, y0: float) -> KalmanFilter:
        kf = KalmanFilter(dim_x=4, dim_z=2)
        dt = self.dt

        kf.F = np.array([
            [1, 0, dt, 0],
            [0, 1, 0, dt],
            [0, 0, 1, 0],
            [0, 0, 0, 1],
        ], dtype=np.float64)

        kf.H = np.array([
            [1, 0, 0, 0],
            [0, 1, 0, 0],
        ], dtype=np.float64)

        q = self.process_noise_std ** 2
        kf.Q = np.array([
            [q * dt**4 / 4, 0, q * dt**3 / 2, 0],
            [0, q * dt**4 / 4, 0, q * dt**3 / 2],
            [q * dt**3 / 2, 0, q * dt**2, 0],
            [0, q * dt**3 / 2, 0, q * dt**2],
        ], dtype=np.float64)

        r = self.measurement_noise_std ** 2
        kf.R = np.array([[r, 0], [0, r]], dtype=np.float64)

        kf.P *= self.initial_covariance
        kf.x = np.array([[x0], [y0], [0], [0]], dtype=np.float64)
        return kf

    def smooth(self, points: Sequence[TrajectoryPoint]) -> List[TrajectoryPoint]:
        if not points:
            return []

        first = points[0]
        kf = self._create_kalman_filter(first.x, first.y)
        smoothed = [first]
        last_idx = first.frame_idx

        for point in points[1:]:
            # Predict through frames the tracker lost
            for _ in range(point.frame_idx - last_idx):
                kf.predict()
            kf.update(np.array([[point.x], [point.y]], dtype=np.float64))
            last_idx = point.frame_idx

            smoothed.append(TrajectoryPoint(
                int(round(float(kf.x[0, 0]))),
                int(round(float(kf.x[1, 0]))),
                point.frame_idx,
            ))

        return smoothed
