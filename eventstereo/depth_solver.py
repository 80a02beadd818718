"""Nonlinear refinement of inverse depths from stereo event matches."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

import numpy as np

from eventstereo.camera import CameraSystem
from eventstereo.depth_point import DepthPoint
from eventstereo.depth_problem import (
    DepthProblem,
    DepthProblemConfig,
    LSNorm,
    TimeSurfacePair,
)
from eventstereo.event_point import EventMatchPair

_FTOL = 1e-6
_XTOL = 1e-6
_DIFF_STEP = math.sqrt(np.finfo(float).eps)
_MIN_INV_DEPTH = 0.001


class _Status(Enum):
    RUNNING = 0
    REDUCTION_TOO_SMALL = 1
    STEP_TOO_SMALL = 2
    BOTH_TOO_SMALL = 3
    TOO_MANY_EVALUATIONS = 4


@dataclass
class _LMState:
    x: float
    f: np.ndarray
    damping: float = 1e-3
    evaluations: int = 1

    @property
    def cost(self) -> float:
        return float(self.f @ self.f)


def _evaluate(problem: DepthProblem, x: float) -> np.ndarray:
    try:
        with np.errstate(all="ignore"):
            return np.asarray(problem.residuals(x), dtype=float)
    except (ZeroDivisionError, np.linalg.LinAlgError):
        return np.full(problem.num_values, np.nan)


def _jacobian(problem: DepthProblem, x: float, f: np.ndarray) -> np.ndarray:
    h = _DIFF_STEP * abs(x) or _DIFF_STEP
    with np.errstate(all="ignore"):
        return (_evaluate(problem, x + h) - f) / h


def point_culling(
    points: Iterable[DepthPoint],
    std_variance_threshold: float,
    cost_threshold: float,
    inv_depth_min_range: float,
    inv_depth_max_range: float,
) -> list[DepthPoint]:
    """Keep the valid points that are certain, cheap and within range."""
    variance_limit = std_variance_threshold**2
    return [
        dp
        for dp in points
        if dp.variance <= variance_limit
        and dp.residual <= cost_threshold
        and dp.is_valid()
        and inv_depth_min_range <= dp.inv_depth <= inv_depth_max_range
    ]


class DepthProblemSolver:
    """Refines the inverse depth of every matched event with Levenberg-Marquardt."""

    def __init__(
        self,
        camera_system: CameraSystem,
        config: DepthProblemConfig,
        num_threads: int = 4,
    ) -> None:
        if num_threads < 1:
            raise ValueError("num_threads must be at least 1")
        self.camera_system = camera_system
        self.config = config
        self.num_threads = num_threads

    def _check_norm(self) -> LSNorm:
        norm = self.config.ls_norm
        if norm not in (LSNorm.L2, LSNorm.TDIST):
            raise ValueError(f"depth refinement does not support the {norm.value!r} norm")
        return norm

    def solve(
        self, matches: Iterable[EventMatchPair], observation: TimeSurfacePair
    ) -> list[DepthPoint]:
        """Refine every match; return depth points for those that converge.

        The matches are dealt round-robin to the configured number of
        workers and the results are gathered worker by worker.
        """
        norm = self._check_norm()
        matches = list(matches)
        problem = DepthProblem(self.config, self.camera_system)
        points: list[DepthPoint] = []
        for start in range(self.num_threads):
            for match in matches[start :: self.num_threads]:
                problem.set_problem(match.x_left, match.trans, observation)
                result = self.solve_single(match.inv_depth, problem)
                if result is not None:
                    points.append(self._depth_point(match, result, norm))
        return points

    def _depth_point(
        self,
        match: EventMatchPair,
        result: tuple[float, float, float],
        norm: LSNorm,
    ) -> DepthPoint:
        inv_depth, variance, cost = result
        coor = np.asarray(match.x_left, dtype=float)
        dp = DepthPoint(row=math.floor(coor[1]), col=math.floor(coor[0]), x=coor)
        dp.p_cam = self.camera_system.left.cam_to_world(coor, inv_depth)
        if norm is LSNorm.L2:
            dp.update(inv_depth, variance)
        else:
            nu = self.config.td_nu
            scale2_rho = variance * (nu - 2) / nu
            dp.update_student_t(inv_depth, scale2_rho, variance, nu)
        dp.residual = cost
        dp.T_world_cam = np.asarray(match.trans, dtype=float).copy()
        return dp

    def solve_single(
        self, d_init: float, problem: DepthProblem
    ) -> tuple[float, float, float] | None:
        """Minimise one problem from d_init.

        Returns (inverse depth, variance, cost), or None when the solution
        lies at or beyond an inverse depth of 0.001.
        """
        norm = self._check_norm()
        max_iteration = self.config.max_iteration
        state = _LMState(x=float(d_init), f=_evaluate(problem, float(d_init)))
        iteration = 0
        converged_once = False
        while True:
            status = self._step(problem, state, max_iteration * 3)
            iteration += 1
            if iteration >= max_iteration:
                break
            if status in (_Status.STEP_TOO_SMALL, _Status.BOTH_TOO_SMALL):
                if converged_once:
                    break
                converged_once = True

        if not state.x > _MIN_INV_DEPTH:
            return None

        J = _jacobian(problem, state.x, state.f)
        jtj = float(J @ J)
        inv_information = 1.0 / jtj if math.isfinite(jtj) and jtj > 0 else 0.0
        cost = state.cost
        if norm is LSNorm.L2:
            dof = state.f.size - 1
            covfac = cost / dof if dof > 0 else float("inf")
            variance = covfac * inv_information
        else:
            variance = self.config.td_stdvar**2 * inv_information
        return state.x, variance, cost

    @staticmethod
    def _step(problem: DepthProblem, state: _LMState, max_evaluations: int) -> _Status:
        if state.evaluations >= max_evaluations:
            return _Status.TOO_MANY_EVALUATIONS
        J = _jacobian(problem, state.x, state.f)
        state.evaluations += 1
        jtj = float(J @ J)
        if jtj == 0.0:
            return _Status.STEP_TOO_SMALL
        gradient = float(J @ state.f)
        dx = -gradient / (jtj * (1.0 + state.damping))
        cost = state.cost
        x_new = state.x + dx
        f_new = _evaluate(problem, x_new)
        state.evaluations += 1
        cost_new = float(f_new @ f_new)

        model = state.f + J * dx
        if cost > 0:
            predicted = (cost - float(model @ model)) / cost
            actual = (cost - cost_new) / cost
        else:
            predicted = actual = 0.0

        if cost_new < cost:
            state.x = x_new
            state.f = f_new
            state.damping = max(state.damping / 10.0, 1e-12)
        else:
            state.damping *= 10.0

        step_small = abs(dx) <= _XTOL * abs(state.x)
        reduction_small = abs(actual) <= _FTOL and predicted <= _FTOL
        if step_small and reduction_small:
            return _Status.BOTH_TOO_SMALL
        if step_small:
            return _Status.STEP_TOO_SMALL
        if reduction_small:
            return _Status.REDUCTION_TOO_SMALL
        return _Status.RUNNING