"""
Bench-Press Bar Path Analyzer
=============================

Tracks the barbell through one bench-press repetition, compares the
observed bar path with an idealized reference path built from circular
arcs and a vertical line, and renders an annotated overlay video.

Modules:
    - object_tracking: Point tracker (OpenCV CSRT) and Kalman trail smoothing
    - trajectory: Descent/ascent segmentation, mirroring, sanity bounds
    - template: Reference path control points and template loading
    - geometry: Circumscribed arcs and vertical line fitting
    - rasterize: Reference layers drawn onto off-screen surfaces
    - deviation: Horizontal scan distances and per-segment aggregation
    - visualization: Frame compositor, preview window, deviation chart
    - video_io: Video source and encoders (ffmpeg pipe, OpenCV writer)
    - clip: Clip trimming from upload metadata
    - pipeline: End-to-end integrated pipeline and CLI
"""

__version__ = "1.0.0"
