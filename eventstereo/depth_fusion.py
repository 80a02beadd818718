"""Propagation and probabilistic fusion of depth points into depth frames."""

from __future__ import annotations

import math
from typing import Iterable

import numpy as np

from eventstereo.camera import CameraSystem
from eventstereo.depth_point import DepthFrame, DepthMap, DepthPoint
from eventstereo.depth_problem import DepthProblemConfig, LSNorm


def boundary_check(x: float, y: float, width: int, height: int) -> bool:
    """Whether (x, y) lies inside a width x height image."""
    return not (x < 0 or x >= width or y < 0 or y >= height)


def chi_square_test(inv_d1: float, inv_d2: float, var1: float, var2: float) -> bool:
    """Gaussian compatibility of two inverse-depth estimates."""
    delta_squared = (inv_d1 - inv_d2) ** 2
    return delta_squared / var1 + delta_squared / var2 < 5.99


def student_t_compatible_test(
    inv_d1: float, inv_d2: float, var1: float, var2: float
) -> bool:
    """Compatibility of two Student-t estimates within two standard deviations."""
    diff = abs(inv_d1 - inv_d2)
    return diff < 2 * math.sqrt(var1) or diff < 2 * math.sqrt(var2)


def _unsupported(norm: LSNorm) -> ValueError:
    return ValueError(f"depth fusion does not support the {norm.value!r} norm")


class DepthFusion:
    """Carries depth points into a frame and fuses them with its depth map."""

    def __init__(self, camera_system: CameraSystem, config: DepthProblemConfig) -> None:
        self.camera_system = camera_system
        self.config = config

    @property
    def _camera(self):
        return self.camera_system.left

    def _transfer(
        self, dp_prior: DepthPoint, T_prop_prior: np.ndarray
    ) -> tuple[DepthPoint, np.ndarray, float, float] | None:
        T = np.asarray(T_prop_prior, dtype=float)
        p_prior = np.asarray(dp_prior.p_cam, dtype=float)
        p_prop = T[:3, :3] @ p_prior + T[:3, 3]
        x_prop = self._camera.world_to_cam(p_prop)
        if not boundary_check(x_prop[0], x_prop[1], self._camera.width, self._camera.height):
            return None
        dp_prop = DepthPoint(row=math.floor(x_prop[1]), col=math.floor(x_prop[0]), x=x_prop)
        inv_depth = 1.0 / p_prop[2]
        denominator = (T[2, :2] @ p_prior[:2] + T[2, 3]) / p_prior[2] + T[2, 2]
        jacobian = T[2, 2] / denominator**2
        return dp_prop, p_prop, inv_depth, jacobian

    @staticmethod
    def _finish(dp_prop: DepthPoint, dp_prior: DepthPoint, p_prop: np.ndarray) -> DepthPoint:
        dp_prop.p_cam = p_prop
        dp_prop.residual = dp_prior.residual
        dp_prop.age = dp_prior.age
        return dp_prop

    def propagate_one_point(
        self, dp_prior: DepthPoint, T_prop_prior: np.ndarray
    ) -> DepthPoint | None:
        """Move a point into another view, or None if it leaves the image."""
        norm = self.config.ls_norm
        if norm not in (LSNorm.L2, LSNorm.TDIST):
            raise _unsupported(norm)
        transferred = self._transfer(dp_prior, T_prop_prior)
        if transferred is None:
            return None
        dp_prop, p_prop, inv_depth, J = transferred
        if norm is LSNorm.L2:
            dp_prop.update(inv_depth, J * J * dp_prior.variance)
        else:
            scale2 = J * J * dp_prior.scale_squared
            nu = dp_prior.nu
            variance = float("inf") if nu == 2 else nu / (nu - 2) * scale2
            dp_prop.update_student_t(inv_depth, scale2, variance, nu)
        return self._finish(dp_prop, dp_prior, p_prop)

    def naive_propagate_one_point(
        self, dp_prior: DepthPoint, T_prop_prior: np.ndarray
    ) -> DepthPoint | None:
        """Move a point into another view using Gaussian propagation only."""
        transferred = self._transfer(dp_prior, T_prop_prior)
        if transferred is None:
            return None
        dp_prop, p_prop, inv_depth, J = transferred
        dp_prop.update(inv_depth, J * J * dp_prior.variance)
        return self._finish(dp_prop, dp_prior, p_prop)

    def update(
        self, observations: Iterable[DepthPoint], frame: DepthFrame, fusion_radius: int
    ) -> int:
        """Fuse observations into the frame; return the number of fusions."""
        T_frame_world = np.linalg.inv(frame.T_world_frame)
        count = 0
        for obs in observations:
            dp_prop = self.propagate_one_point(obs, T_frame_world @ obs.T_world_cam)
            if dp_prop is not None:
                count += self.fusion(dp_prop, frame.depth_map, fusion_radius)
        return count

    @staticmethod
    def _neighbours(dp: DepthPoint, fusion_radius: int) -> list[tuple[int, int]]:
        if fusion_radius == 0:
            return [(dp.row + dy, dp.col + dx) for dy in (0, 1) for dx in (0, 1)]
        return [(dp.row + dy, dp.col + dx) for dy in (-1, 0, 1) for dx in (-1, 0, 1)]

    def _apply_measurement(self, target: DepthPoint, dp_prop: DepthPoint) -> None:
        if self.config.ls_norm is LSNorm.L2:
            target.update(dp_prop.inv_depth, dp_prop.variance)
        else:
            target.update_student_t(
                dp_prop.inv_depth, dp_prop.scale_squared, dp_prop.variance, dp_prop.nu
            )

    def fusion(self, dp_prop: DepthPoint, depth_map: DepthMap, fusion_radius: int) -> int:
        """Fuse one propagated point with the map pixels around it."""
        norm = self.config.ls_norm
        if norm not in (LSNorm.L2, LSNorm.TDIST):
            raise _unsupported(norm)
        camera = self._camera
        count = 0
        for row, col in self._neighbours(dp_prop, fusion_radius):
            if not boundary_check(col, row, camera.width, camera.height):
                continue
            if not depth_map.exists(row, col):
                dp_new = DepthPoint(row=row, col=col)
                self._apply_measurement(dp_new, dp_prop)
                dp_new.residual = dp_prop.residual
                dp_new.age = dp_prop.age
                dp_new.p_cam = camera.cam_to_world(dp_new.x, dp_prop.inv_depth)
                depth_map.set(row, col, dp_new)
                continue
            existing = depth_map.get(row, col)
            test = chi_square_test if norm is LSNorm.L2 else student_t_compatible_test
            if test(dp_prop.inv_depth, existing.inv_depth, dp_prop.variance, existing.variance):
                self._apply_measurement(existing, dp_prop)
                existing.age += 1
                existing.residual = min(existing.residual, dp_prop.residual)
                existing.p_cam = camera.cam_to_world(existing.x, dp_prop.inv_depth)
                count += 1
            else:
                # The pixel already holds a point clearly closer to the camera.
                if existing.inv_depth - 2 * math.sqrt(existing.variance) > dp_prop.inv_depth:
                    continue
                if (
                    dp_prop.variance < existing.variance
                    and dp_prop.residual < existing.residual
                ):
                    depth_map.set(row, col, dp_prop)
        return count

    def naive_propagation(self, observations: Iterable[DepthPoint], frame: DepthFrame) -> None:
        """Splat observations into the frame, keeping the nearest, best-fitting points."""
        camera = self._camera
        depth_map = frame.depth_map
        T_frame_world = np.linalg.inv(frame.T_world_frame)
        for obs in observations:
            dp_prop = self.naive_propagate_one_point(obs, T_frame_world @ obs.T_world_cam)
            if dp_prop is None:
                continue
            for row, col in self._neighbours(dp_prop, 0):
                if not boundary_check(col, row, camera.width, camera.height):
                    continue
                if not depth_map.exists(row, col):
                    dp_new = DepthPoint(row=row, col=col)
                    dp_new.update(dp_prop.inv_depth, dp_prop.variance)
                    dp_new.residual = dp_prop.residual
                    dp_new.age = dp_prop.age
                    dp_new.p_cam = camera.cam_to_world(dp_new.x, dp_prop.inv_depth)
                    depth_map.set(row, col, dp_new)
                    continue
                existing = depth_map.get(row, col)
                if existing.inv_depth > dp_prop.inv_depth:
                    continue
                if dp_prop.residual < existing.residual:
                    depth_map.set(row, col, dp_prop)