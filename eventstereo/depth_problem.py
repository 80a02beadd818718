"""Per-pixel inverse-depth problem on a stereo pair of time surfaces."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from eventstereo.camera import CameraSystem


class LSNorm(str, Enum):
    """The robust norm applied to temporal residuals."""

    L2 = "l2"
    ZNCC = "zncc"
    TDIST = "Tdist"


@dataclass
class DepthProblemConfig:
    """Settings shared by depth estimation, fusion and regularisation."""

    patch_size_x: int = 25
    patch_size_y: int = 25
    ls_norm: LSNorm | str = LSNorm.TDIST
    td_nu: float = 0.0
    td_scale: float = 0.0
    max_iteration: int = 10
    regularization_radius: int = 5
    regularization_min_neighbours: int = 8
    regularization_min_close_neighbours: int = 8

    def __post_init__(self) -> None:
        try:
            self.ls_norm = LSNorm(self.ls_norm)
        except ValueError:
            raise ValueError(f"unknown least-squares norm: {self.ls_norm!r}") from None

    @property
    def patch_size(self) -> int:
        return self.patch_size_x * self.patch_size_y

    @property
    def td_scale_squared(self) -> float:
        return self.td_scale**2

    @property
    def td_stdvar(self) -> float:
        """Standard deviation of the Student-t distribution."""
        if self.td_nu == 2:
            return float("inf")
        value = self.td_nu / (self.td_nu - 2) * self.td_scale_squared
        return math.sqrt(value) if value >= 0 else float("nan")


@dataclass
class TimeSurfacePair:
    """Left and right time surfaces observed at the left camera pose."""

    left: np.ndarray
    right: np.ndarray
    T_world_left: np.ndarray = field(default_factory=lambda: np.eye(4))
    id: int = 0

    def __post_init__(self) -> None:
        self.left = np.asarray(self.left, dtype=float)
        self.right = np.asarray(self.right, dtype=float)
        self.T_world_left = np.asarray(self.T_world_left, dtype=float)


def interpolate_patch(
    img: np.ndarray, location: Any, wx: int, wy: int
) -> np.ndarray | None:
    """Bilinearly sample a wy x wx patch centred at location (x, y).

    Returns None when the patch, or the extra row and column the
    interpolation reads, would leave the image.
    """
    img = np.asarray(img, dtype=float)
    rows, cols = img.shape
    half_x = (wx - 1) // 2
    half_y = (wy - 1) // 2
    fx = math.floor(location[0])
    fy = math.floor(location[1])
    left, top = fx - half_x, fy - half_y
    right, bottom = fx + half_x, fy + half_y
    if left < 0 or top < 0:
        return None
    if right >= cols or bottom >= rows:
        return None
    q1 = fx + 1 - location[0]
    q2 = location[0] - fx
    q3 = fy + 1 - location[1]
    q4 = location[1] - fy
    if top + wy >= rows or left + wx >= cols:
        return None
    src = img[top : top + wy + 1, left : left + wx + 1]
    blended_rows = q1 * src[:, :wx] + q2 * src[:, 1 : wx + 1]
    return q3 * blended_rows[:wy] + q4 * blended_rows[1 : wy + 1]


class DepthProblem:
    """Temporal residuals of one pixel as a function of its inverse depth."""

    def __init__(self, config: DepthProblemConfig, camera_system: CameraSystem) -> None:
        self.config = config
        self.camera_system = camera_system
        self.coordinate: np.ndarray | None = None
        self.T_world_virtual: np.ndarray | None = None
        self.observation: TimeSurfacePair | None = None
        self.T_left_virtual: np.ndarray | None = None

    @property
    def num_values(self) -> int:
        return self.config.patch_size

    def set_problem(
        self, coordinate: Any, T_world_virtual: Any, observation: TimeSurfacePair
    ) -> None:
        """Pose the problem for one pixel seen from a virtual view."""
        self.coordinate = np.asarray(coordinate, dtype=float)
        self.T_world_virtual = np.asarray(T_world_virtual, dtype=float)
        self.observation = observation
        T_left_world = np.linalg.inv(observation.T_world_left)
        self.T_left_virtual = (T_left_world @ self.T_world_virtual)[:3, :4]

    def _failure_residuals(self) -> np.ndarray:
        n = self.config.patch_size
        norm = self.config.ls_norm
        if norm is LSNorm.L2:
            return np.full(n, 255.0)
        if norm is LSNorm.ZNCC:
            return np.full(n, 2.0 / math.sqrt(n))
        residual = 255.0
        nu = self.config.td_nu
        with np.errstate(divide="ignore", invalid="ignore"):
            weight = (nu + 1) / (nu + (residual / self.config.td_scale) ** 2)
        return np.full(n, math.sqrt(weight) * residual)

    def _tdist_residuals(self, tau1: np.ndarray, tau2: np.ndarray) -> np.ndarray:
        n = self.config.patch_size
        nu = self.config.td_nu
        r = (tau1 - tau2).ravel()
        r2 = r**2
        nonzero = r != 0
        s1 = self.config.td_scale_squared
        s2 = -1.0
        first = True
        with np.errstate(divide="ignore", invalid="ignore"):
            while first or abs(s2 - s1) / s1 > 0.05:
                if not first:
                    s1 = s2
                total = float(np.sum(r2[nonzero] * (nu + 1) / (nu + r2[nonzero] / s1)))
                if total == 0:
                    s2 = self.config.td_scale_squared
                    break
                s2 = total / n
                first = False
            weight = (nu + 1) / (nu + r2 / s2)
        return np.sqrt(weight) * r

    def residuals(self, inv_depth: float) -> np.ndarray:
        """The weighted residual vector at the given inverse depth."""
        if self.observation is None:
            raise RuntimeError("set_problem must be called before residuals")
        warped = self.warp(self.coordinate, inv_depth, self.T_left_virtual)
        if warped is None:
            return self._failure_residuals()
        x1_s, x2_s = warped
        tau1 = self.patch(self.observation.left, x1_s)
        tau2 = self.patch(self.observation.right, x2_s)
        if tau1 is None or tau2 is None:
            return self._failure_residuals()
        norm = self.config.ls_norm
        if norm is LSNorm.L2:
            return (tau1 - tau2).ravel()
        if norm is LSNorm.ZNCC:
            n = self.config.patch_size
            z1 = (tau1 - tau1.mean()) / tau1.std()
            z2 = (tau2 - tau2.mean()) / tau2.std()
            return ((z1 - z2) / math.sqrt(n)).ravel()
        return self._tdist_residuals(tau1, tau2)

    def warp(
        self, x: Any, inv_depth: float, T_left_virtual: Any
    ) -> tuple[np.ndarray, np.ndarray] | None:
        """Project a virtual-view pixel into the left and right images.

        Returns None when either projection falls too close to the border.
        """
        left_cam = self.camera_system.left
        right_cam = self.camera_system.right
        T = np.asarray(T_left_virtual, dtype=float)
        p_rv = left_cam.cam_to_world(x, inv_depth)
        p_left = T[:3, :3] @ p_rv + T[:3, 3]
        x1_s = left_cam.world_to_cam(p_left)
        x2_s = right_cam.world_to_cam(p_left)
        half_x = (self.config.patch_size_x - 1) // 2
        half_y = (self.config.patch_size_y - 1) // 2
        width, height = left_cam.width, left_cam.height
        for point in (x1_s, x2_s):
            if (
                point[0] < half_x
                or point[0] > width - half_x
                or point[1] < half_y
                or point[1] > height - half_y
            ):
                return None
        return x1_s, x2_s

    def patch(self, img: np.ndarray, location: Any) -> np.ndarray | None:
        """Interpolate a configured-size patch at location."""
        return interpolate_patch(
            img, location, self.config.patch_size_x, self.config.patch_size_y
        )