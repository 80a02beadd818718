"""Neighbourhood smoothing of inverse depths in a depth map."""

from __future__ import annotations

import math

from eventstereo.depth_point import DepthMap, DepthPoint
from eventstereo.depth_problem import DepthProblemConfig, LSNorm


class DepthRegularization:
    """Replaces each inverse depth by a statistical mean of its close neighbours."""

    def __init__(self, config: DepthProblemConfig) -> None:
        self.config = config
        self.radius = config.regularization_radius
        self.min_neighbours = config.regularization_min_neighbours
        self.min_close_neighbours = config.regularization_min_close_neighbours

    def apply(self, depth_map: DepthMap) -> None:
        """Regularise the map in place.

        Valid points without enough close neighbours are invalidated.
        Every point is judged against the map as it was before the call.
        """
        updates = [
            (point, self._regularized(point, depth_map))
            for point in depth_map
            if point.is_valid()
        ]
        for point, inv_depth in updates:
            point.inv_depth = inv_depth

    def _regularized(self, point: DepthPoint, depth_map: DepthMap) -> float:
        neighbours = depth_map.neighbourhood(point.row, point.col, self.radius)
        if len(neighbours) <= self.min_neighbours:
            return -1.0
        close = [n for n in neighbours if n.is_valid() and self._is_close(point, n)]
        if len(close) <= self.min_close_neighbours:
            return -1.0
        return self._statistical_mean(close)

    @staticmethod
    def _is_close(point: DepthPoint, other: DepthPoint) -> bool:
        diff = abs(point.inv_depth - other.inv_depth)
        return diff < 2.0 * math.sqrt(point.variance) or diff < 2.0 * math.sqrt(
            other.variance
        )

    def _statistical_mean(self, points: list[DepthPoint]) -> float:
        norm = self.config.ls_norm
        if norm is LSNorm.L2:
            total_information = sum(1.0 / p.variance for p in points)
            return sum(
                p.inv_depth * (1.0 / p.variance) / total_information for p in points
            )
        if norm is LSNorm.TDIST:
            first = points[0]
            nu_post = first.nu
            inv_depth_post = first.inv_depth
            scale2_post = first.scale_squared
            for obs in points[1:]:
                nu_prior, inv_depth_prior, scale2_prior = nu_post, inv_depth_post, scale2_post
                denom = obs.scale_squared + scale2_prior
                nu_post = min(nu_prior, obs.nu)
                inv_depth_post = (
                    obs.scale_squared * inv_depth_prior + scale2_prior * obs.inv_depth
                ) / denom
                scale2_post = (
                    (nu_post + (inv_depth_prior - obs.inv_depth) ** 2 / denom)
                    / (nu_post + 1)
                    * (scale2_prior * obs.scale_squared)
                    / denom
                )
            return inv_depth_post
        raise ValueError(f"regularization does not support the {norm.value!r} norm")