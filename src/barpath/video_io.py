"""
Video Input / Output
====================

VideoSource wraps ``cv2.VideoCapture`` with rewind support.

Encoders take fixed-size RGBA frames:

- FFmpegEncoder streams raw RGBA bytes into an ``ffmpeg`` process
  (libx264, yuv420p), optionally with ``-vf hflip``.
- OpenCVEncoder writes through ``cv2.VideoWriter`` and applies the
  horizontal flip itself.

Encoders are context managers: leaving the block without ``close()``
aborts the encoder and deletes the partial output.
"""

import logging
import os
import subprocess
import tempfile
from typing import List, Optional

import cv2
import numpy as np

from .errors import EncoderError, SourceUnavailable

logger = logging.getLogger(__name__)

ENCODERS = ("ffmpeg", "opencv")


def remove_output(path: str):
    """Delete an output file left behind by a failed run."""
    if os.path.exists(path):
        os.remove(path)
        logger.info("Removed output %s", path)


# ============================================================================
# Source
# ============================================================================

class VideoSource:
    """Blocking frame reader over a video file."""

    def __init__(self, path: str):
        self.path = path
        self.cap = cv2.VideoCapture(path)
        if not self.cap.isOpened():
            self.cap.release()
            raise SourceUnavailable(f"Cannot open video: {path}")

        self.fps = self.cap.get(cv2.CAP_PROP_FPS) or 30.0
        self.width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.frame_count = int(self.cap.get(cv2.CAP_PROP_FRAME_COUNT))

    def read(self) -> Optional[np.ndarray]:
        """Next BGR frame, or None once the stream is exhausted."""
        ret, frame = self.cap.read()
        if not ret or frame is None or frame.size == 0:
            return None
        return frame

    def rewind(self):
        self.cap.set(cv2.CAP_PROP_POS_FRAMES, 0)

    def release(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None

    def __enter__(self) -> "VideoSource":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


# ============================================================================
# Encoders
# ============================================================================

class _Encoder:
    """Shared frame validation and lifecycle for the encoders."""

    def __init__(self, output_path: str, size: int, fps: float, hflip: bool = False):
        self.output_path = output_path
        self.size = size
        self.fps = fps
        self.hflip = hflip
        self.frames_written = 0
        self.closed = False

    def _check_frame(self, frame: np.ndarray):
        if self.closed:
            raise EncoderError("Encoder already closed")
        if frame.shape != (self.size, self.size, 4):
            raise ValueError(
                f"Expected RGBA frame of {self.size}x{self.size}, got {frame.shape}"
            )

    def _remove_partial_output(self):
        remove_output(self.output_path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.closed:
            self.abort()


class FFmpegEncoder(_Encoder):
    """Pipes raw RGBA frames into ffmpeg."""

    def __init__(
        self,
        output_path: str,
        size: int,
        fps: float,
        hflip: bool = False,
        preset: str = "fast",
        ffmpeg_bin: str = "ffmpeg",
    ):
        super().__init__(output_path, size, fps, hflip)
        self.preset = preset
        self.ffmpeg_bin = ffmpeg_bin
        # Spooled to disk so a chatty ffmpeg never blocks on a full stderr pipe
        self._stderr = tempfile.TemporaryFile()
        try:
            self.proc = subprocess.Popen(
                self.command(),
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=self._stderr,
            )
        except OSError as e:
            self._stderr.close()
            raise EncoderError(f"Could not start {ffmpeg_bin}: {e}") from e

    def command(self) -> List[str]:
        cmd = [
            self.ffmpeg_bin, "-y", "-hide_banner", "-loglevel", "error",
            "-f", "rawvideo",
            "-pixel_format", "rgba",
            "-video_size", f"{self.size}x{self.size}",
            "-r", f"{self.fps:g}",
            "-i", "-",
            "-c:v", "libx264",
        ]
        if self.hflip:
            cmd += ["-vf", "hflip"]
        cmd += ["-preset", self.preset, "-pix_fmt", "yuv420p", self.output_path]
        return cmd

    def write(self, frame: np.ndarray):
        self._check_frame(frame)
        try:
            self.proc.stdin.write(np.ascontiguousarray(frame).tobytes())
        except (BrokenPipeError, OSError) as e:
            raise EncoderError(f"ffmpeg stopped accepting frames: {e}") from e
        self.frames_written += 1

    def close(self):
        """Flush and wait for ffmpeg to finish writing the file."""
        if self.closed:
            return
        self.closed = True
        try:
            self.proc.communicate()
        except (BrokenPipeError, OSError):
            self.proc.wait()
        if self.proc.returncode != 0:
            message = self._read_stderr()
            self._remove_partial_output()
            raise EncoderError(f"ffmpeg exited with {self.proc.returncode}: {message}")
        self._stderr.close()
        logger.info("Encoded %d frames to %s", self.frames_written, self.output_path)

    def abort(self):
        self.closed = True
        if self.proc.poll() is None:
            self.proc.kill()
        try:
            self.proc.communicate()
        except (BrokenPipeError, OSError):
            self.proc.wait()
        self._stderr.close()
        self._remove_partial_output()

    def _read_stderr(self, limit: int = 2000) -> str:
        """Tail of ffmpeg's stderr; closes the spool file."""
        self._stderr.seek(0)
        text = self._stderr.read().decode(errors="replace").strip()
        self._stderr.close()
        return text[-limit:]


class OpenCVEncoder(_Encoder):
    """Writes frames with cv2.VideoWriter (BGR)."""

    def __init__(
        self,
        output_path: str,
        size: int,
        fps: float,
        hflip: bool = False,
        codec: str = "mp4v",
    ):
        super().__init__(output_path, size, fps, hflip)
        fourcc = cv2.VideoWriter_fourcc(*codec)
        self.writer = cv2.VideoWriter(output_path, fourcc, fps, (size, size))
        if not self.writer.isOpened():
            raise EncoderError(f"cv2.VideoWriter could not open {output_path} ({codec})")

    def write(self, frame: np.ndarray):
        self._check_frame(frame)
        bgr = cv2.cvtColor(frame, cv2.COLOR_RGBA2BGR)
        if self.hflip:
            bgr = cv2.flip(bgr, 1)
        self.writer.write(bgr)
        self.frames_written += 1

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.writer.release()
        logger.info("Encoded %d frames to %s", self.frames_written, self.output_path)

    def abort(self):
        self.closed = True
        self.writer.release()
        self._remove_partial_output()


def create_encoder(
    kind: str,
    output_path: str,
    size: int,
    fps: float,
    hflip: bool = False,
    codec: str = "mp4v",
    preset: str = "fast",
):
    """Build the encoder named in the pipeline config (ffmpeg or opencv)."""
    if kind == "ffmpeg":
        return FFmpegEncoder(output_path, size, fps, hflip=hflip, preset=preset)
    if kind == "opencv":
        return OpenCVEncoder(output_path, size, fps, hflip=hflip, codec=codec)
    raise ValueError(f"Unknown encoder '{kind}', expected one of {list(ENCODERS)}")
