"""Helpers of the stereo mapper: disparity limits, masks, conversions and export."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Iterable

import numpy as np
from scipy.ndimage import median_filter

from eventstereo.camera import PerspectiveCamera
from eventstereo.depth_point import DepthMap, DepthPoint
from eventstereo.event_point import Event, EventMatchPair

# Pose of the left camera in the marker frame of the stereo rig.
T_MARKER_CAM = np.array(
    [
        [5.363262328777285e-01, -1.748374625145743e-02, -8.438296573030597e-01, -7.009849865398374e-02],
        [8.433577587813513e-01, -2.821937531845164e-02, 5.366109927684415e-01, 1.881333563905305e-02],
        [-3.319431623758162e-02, -9.994488408486204e-01, -3.897382049768972e-04, -6.966829200678797e-02],
        [0.0, 0.0, 0.0, 1.0],
    ]
)


def disparity_range(
    focal: float,
    baseline: float,
    inv_depth_min: float,
    inv_depth_max: float,
    min_disparity: int,
    max_disparity: int,
) -> tuple[int, int]:
    """Disparity search bounds implied by the inverse-depth range, clamped."""
    fb = focal * baseline
    low = max(math.floor(fb * inv_depth_min), 0)
    high = math.ceil(fb * inv_depth_max)
    return max(low, min_disparity), min(high, max_disparity)


def matches_to_depth_points(
    matches: Iterable[EventMatchPair], camera: PerspectiveCamera, age: int
) -> list[DepthPoint]:
    """Turn event matches into depth points of the given age."""
    points = []
    for match in matches:
        x = np.asarray(match.x_left, dtype=float)
        dp = DepthPoint(row=math.floor(x[1]), col=math.floor(x[0]), x=x)
        dp.p_cam = camera.cam_to_world(x, match.inv_depth)
        dp.update(match.inv_depth, 0.0)
        dp.residual = match.cost
        dp.age = age
        dp.T_world_cam = np.asarray(match.trans, dtype=float).copy()
        points.append(dp)
    return points


def create_edge_mask(
    events: Iterable[Event],
    camera: PerspectiveCamera,
    undistort: bool = True,
    radius: int = 0,
) -> tuple[np.ndarray, list[tuple[int, int]]]:
    """Mark event pixels, dilated by radius, in a height x width mask.

    Returns the mask (255 on edges) and every marked (x, y) in the order it
    was marked, repeats included.
    """
    cols, rows = camera.width, camera.height
    edge_map = np.zeros((rows, cols), dtype=np.uint8)
    coordinates: list[tuple[int, int]] = []
    for event in events:
        if undistort:
            coor = camera.rectified_coordinate(event.x, event.y)
        else:
            coor = (event.x, event.y)
        xc, yc = math.floor(coor[0]), math.floor(coor[1])
        for dy in range(-radius, radius + 1):
            for dx in range(-radius, radius + 1):
                x, y = xc + dx, yc + dy
                if 0 <= x < cols and 0 <= y < rows:
                    edge_map[y, x] = 255
                    coordinates.append((x, y))
    return edge_map, coordinates


def create_denoising_mask(events: Iterable[Event], rows: int, cols: int) -> np.ndarray:
    """Median-filtered map of event pixels; isolated events disappear."""
    event_map = np.zeros((rows, cols), dtype=np.uint8)
    for event in events:
        if 0 <= event.x < cols and 0 <= event.y < rows:
            event_map[event.y, event.x] = 255
    return median_filter(event_map, size=3, mode="nearest")


def extract_denoised_events(
    events: Iterable[Event], mask: np.ndarray, max_num: int
) -> list[Event]:
    """At most max_num events, in order, whose pixel is set in the mask."""
    kept: list[Event] = []
    for event in events:
        if len(kept) >= max_num:
            break
        if mask[event.y, event.x] == 255:
            kept.append(event)
    return kept


def marker_to_camera(T_world_marker: Any) -> np.ndarray:
    """Convert a pose of the rig's marker into the pose of the left camera."""
    return np.asarray(T_world_marker, dtype=float) @ T_MARKER_CAM


def save_depth_map(depth_map: DepthMap, directory: str | Path, t_ns: int) -> Path:
    """Write 'x y z' for every valid point to <directory>/<t_ns>.txt."""
    path = Path(directory) / f"{t_ns}.txt"
    with open(path, "w", encoding="utf-8") as handle:
        for point in depth_map:
            if point.is_valid():
                handle.write(f"{point.x[0]:g} {point.x[1]:g} {point.p_cam[2]:g}\n")
    return path