"""
Clip preparation: cut the uploaded recording down to the single rep the
user marked before tracking it.

Metadata JSON:

    {
        "start_time": 1.5,
        "end_time": 6.0,
        "barbell_area": {"x": 410, "y": 220, "width": 90, "height": 60},
        "video_url": "uploads/set3.mp4"
    }
"""

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, Tuple

from .errors import SourceUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClipMetadata:
    start_time: float
    end_time: float
    barbell_area: Tuple[int, int, int, int]
    video_url: str

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @classmethod
    def from_dict(cls, data: Dict) -> "ClipMetadata":
        try:
            area = data["barbell_area"]
            meta = cls(
                start_time=float(data["start_time"]),
                end_time=float(data["end_time"]),
                barbell_area=(
                    int(area["x"]), int(area["y"]),
                    int(area["width"]), int(area["height"]),
                ),
                video_url=str(data["video_url"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid clip metadata: {e}") from e

        if meta.duration <= 0:
            raise ValueError("Clip end_time must be after start_time")
        return meta

    @classmethod
    def from_json(cls, text: str) -> "ClipMetadata":
        return cls.from_dict(json.loads(text))

    @classmethod
    def load(cls, path: str) -> "ClipMetadata":
        with open(path, "r") as f:
            return cls.from_json(f.read())


def edited_path(path: str) -> str:
    """uploads/set3.mp4 -> uploads/set3-edited.mp4"""
    parent = os.path.dirname(path)
    stem = os.path.splitext(os.path.basename(path))[0]
    return os.path.join(parent, f"{stem}-edited.mp4")


def trim_clip(meta: ClipMetadata, ffmpeg_bin: str = "ffmpeg") -> str:
    """
    Cut [start_time, end_time] out of the source video with ffmpeg.

    Returns:
        Path of the trimmed clip
    """
    output = edited_path(meta.video_url)
    cmd = [
        ffmpeg_bin, "-y", "-hide_banner", "-loglevel", "error",
        "-i", meta.video_url,
        "-ss", f"{meta.start_time:g}",
        "-t", f"{meta.duration:g}",
        "-c:v", "libx264",
        "-c:a", "aac",
        output,
    ]
    logger.info("Trimming %s to %.2fs-%.2fs", meta.video_url, meta.start_time, meta.end_time)

    try:
        proc = subprocess.run(cmd, capture_output=True)
    except OSError as e:
        raise SourceUnavailable(f"Could not run {ffmpeg_bin}: {e}") from e

    if proc.returncode != 0:
        message = proc.stderr.decode(errors="replace").strip()
        raise SourceUnavailable(f"Trimming {meta.video_url} failed: {message}")
    return output
