"""Exceptions raised by the bar path pipeline.

Every error is terminal for the current run: ``process_bar_path`` turns
any :class:`BarPathError` into a failed result.
"""


class BarPathError(Exception):
    """Base class for all pipeline failures."""

    reason = "failed"


class SourceUnavailable(BarPathError):
    """The input video cannot be opened or its first frame cannot be read."""

    reason = "source_unavailable"


class TrajectoryRejected(BarPathError):
    """The tracked trajectory fails the geometry sanity bounds."""

    reason = "trajectory_rejected"


class DegenerateFit(BarPathError):
    """Arc fitting was given collinear control points."""

    reason = "degenerate_fit"


class EmptyBucket(BarPathError):
    """A deviation bucket received no samples (strict mode only)."""

    reason = "empty_bucket"

    def __init__(self, bucket_name: str):
        super().__init__(f"No distance samples fell inside bucket '{bucket_name}'")
        self.bucket_name = bucket_name


class EncoderError(BarPathError):
    """The output encoder could not be started or rejected frames."""

    reason = "encoder_failed"


class Cancelled(BarPathError):
    """A stop signal arrived before the output video was finalized."""

    reason = "cancelled"


class ConfigError(BarPathError):
    """A config value names an unknown template, tracker or encoder."""

    reason = "invalid_config"


class ReportError(BarPathError):
    """The deviation report could not be written."""

    reason = "report_failed"
