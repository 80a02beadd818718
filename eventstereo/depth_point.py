"""Depth points, sparse depth maps and depth frames."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Iterator

import numpy as np


@dataclass(eq=False)
class DepthPoint:
    """An inverse-depth estimate attached to a pixel."""

    row: int = 0
    col: int = 0
    x: np.ndarray | None = None
    inv_depth: float = -1.0
    variance: float = 0.0
    residual: float = 0.0
    age: int = 0
    scale_squared: float = 0.0
    nu: float = 0.0
    p_cam: np.ndarray = field(default_factory=lambda: np.zeros(3))
    T_world_cam: np.ndarray = field(default_factory=lambda: np.eye(4))

    def __post_init__(self) -> None:
        if self.x is None:
            self.x = np.array([self.col + 0.5, self.row + 0.5])
        else:
            self.x = np.asarray(self.x, dtype=float)

    def bound_variance(self) -> None:
        """Keep the variance from falling below a small positive floor."""
        self.variance = max(self.variance, 1e-6)

    def update(self, inv_depth: float, variance: float) -> None:
        """Fuse a Gaussian inverse-depth measurement."""
        if self.inv_depth > -1e-6:
            prior = self.inv_depth
            self.inv_depth = (self.variance * inv_depth + variance * prior) / (
                self.variance + variance
            )
            prior_var = self.variance
            self.variance = (prior_var * variance) / (prior_var + variance)
        else:
            self.inv_depth = inv_depth
            self.variance = variance
        self.bound_variance()

    def update_student_t(
        self, inv_depth: float, scale2: float, variance: float, nu: float
    ) -> None:
        """Fuse a Student-t inverse-depth measurement."""
        if self.inv_depth > -1e-6:
            nu_update = min(nu, self.nu)
            denom = self.scale_squared + scale2
            inv_depth_update = (scale2 * self.inv_depth + self.scale_squared * inv_depth) / denom
            scale2_update = (
                (nu_update + (self.inv_depth - inv_depth) ** 2 / denom)
                / (nu_update + 1)
                * (self.scale_squared * scale2)
                / denom
            )
            self.inv_depth = inv_depth_update
            self.scale_squared = scale2_update
            self.nu = nu_update + 1
            if self.nu == 2:
                self.variance = float("inf")
            else:
                self.variance = self.nu / (self.nu - 2) * self.scale_squared
            self.age += 1
        else:
            self.inv_depth = inv_depth
            self.scale_squared = scale2
            self.variance = variance
            self.nu = nu

    def is_valid(self) -> bool:
        return self.inv_depth > -1e-6

    def is_valid_within(
        self,
        var_threshold: float,
        age_threshold: float,
        inv_depth_max: float,
        inv_depth_min: float,
    ) -> bool:
        """Whether the point is valid and passes the given thresholds."""
        return (
            self.inv_depth > -1e-6
            and self.age >= age_threshold
            and self.variance <= var_threshold
            and self.inv_depth <= inv_depth_max
            and self.inv_depth >= inv_depth_min
        )

    def copy_from(self, other: "DepthPoint") -> None:
        """Take over every estimate of another point, keeping row and column."""
        self.inv_depth = other.inv_depth
        self.variance = other.variance
        self.scale_squared = other.scale_squared
        self.nu = other.nu
        self.x = np.array(other.x, dtype=float)
        self.p_cam = np.array(other.p_cam, dtype=float)
        self.T_world_cam = np.array(other.T_world_cam, dtype=float)
        self.residual = other.residual
        self.age = other.age


class DepthMap:
    """A sparse grid of depth points indexed by (row, col)."""

    def __init__(self, rows: int, cols: int) -> None:
        self.rows = rows
        self.cols = cols
        self._points: dict[tuple[int, int], DepthPoint] = {}

    def _in_bounds(self, row: int, col: int) -> bool:
        return 0 <= row < self.rows and 0 <= col < self.cols

    def exists(self, row: int, col: int) -> bool:
        return (row, col) in self._points

    def get(self, row: int, col: int) -> DepthPoint:
        """Return the stored point; changes to it change the map."""
        try:
            return self._points[(row, col)]
        except KeyError:
            raise KeyError(f"no depth point at ({row}, {col})") from None

    def set(self, row: int, col: int, point: DepthPoint) -> None:
        """Store a copy of the point at (row, col)."""
        if not self._in_bounds(row, col):
            raise IndexError(f"({row}, {col}) is outside the {self.rows}x{self.cols} map")
        self._points[(row, col)] = copy.deepcopy(point)

    def neighbourhood(self, row: int, col: int, radius: int) -> list[DepthPoint]:
        """Stored points in the square window around (row, col), centre included."""
        return [
            self._points[(r, c)]
            for r in range(max(0, row - radius), min(self.rows, row + radius + 1))
            for c in range(max(0, col - radius), min(self.cols, col + radius + 1))
            if (r, c) in self._points
        ]

    def clean(
        self,
        var_threshold: float,
        age_threshold: float,
        inv_depth_max: float,
        inv_depth_min: float,
    ) -> None:
        """Drop every point that fails the validity thresholds."""
        self._points = {
            key: point
            for key, point in self._points.items()
            if point.is_valid_within(var_threshold, age_threshold, inv_depth_max, inv_depth_min)
        }

    def clear(self) -> None:
        self._points.clear()

    def __iter__(self) -> Iterator[DepthPoint]:
        for key in sorted(self._points):
            yield self._points[key]

    def __len__(self) -> int:
        return len(self._points)


class DepthFrame:
    """A depth map attached to a camera pose."""

    def __init__(self, rows: int, cols: int) -> None:
        self.id = 0
        self.T_world_frame = np.eye(4)
        self.depth_map = DepthMap(rows, cols)

    def clear(self) -> None:
        self.depth_map.clear()