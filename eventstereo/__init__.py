"""Depth mapping for stereo event cameras: cameras, matching, depth refinement, fusion and the stereo mapper."""

__version__ = "0.1.0"