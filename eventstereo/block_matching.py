"""Event-driven block matching of time-surface patches along epipolar lines."""

from __future__ import annotations

import math
from bisect import bisect_left
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import numpy as np
from scipy.ndimage import gaussian_filter

from eventstereo.camera import CameraSystem
from eventstereo.depth_problem import TimeSurfacePair
from eventstereo.event_point import Event, EventMatchPair

ZNCC_MAX = 1.0
_SMOOTH_KERNEL = 5


def normalize_patch(patch: Any) -> np.ndarray:
    """Shift a patch to zero mean and scale it to unit standard deviation.

    A constant patch has no spread to scale and comes back as zeros.
    """
    patch = np.asarray(patch, dtype=float)
    centred = patch - patch.mean()
    std = centred.std()
    if std == 0:
        return np.zeros_like(centred)
    return centred / std


def zncc_cost(patch_left: Any, patch_right: Any, normalized: bool = False) -> float:
    """Zero-normalised cross-correlation turned into a cost in [0, 1].

    Identical patches cost 0 and inverted patches cost 1. With normalized
    set, the patches are taken to be normalised already.
    """
    left = np.asarray(patch_left, dtype=float)
    right = np.asarray(patch_right, dtype=float)
    if not normalized:
        left = normalize_patch(left)
        right = normalize_patch(right)
    return 0.5 * (1.0 - float(np.sum(left * right)) / left.size)


def _gaussian_blur(img: np.ndarray, ksize: int) -> np.ndarray:
    sigma = 0.3 * ((ksize - 1) * 0.5 - 1) + 0.8
    radius = (ksize - 1) // 2
    return gaussian_filter(
        np.asarray(img, dtype=float), sigma=sigma, mode="mirror", truncate=radius / sigma
    )


@dataclass
class _Search:
    min_cost: float = ZNCC_MAX
    best_match: tuple[int, int] | None = None
    best_disp: int | None = None


class EventBlockMatcher:
    """Matches left events to the right time surface by patch similarity."""

    def __init__(
        self,
        camera_system: CameraSystem,
        num_threads: int = 1,
        smooth_ts: bool = False,
        patch_size_x: int = 25,
        patch_size_y: int = 25,
        min_disparity: int = 1,
        max_disparity: int = 40,
        step: int = 1,
        zncc_threshold: float = 0.1,
        up_down: bool = False,
    ) -> None:
        if num_threads < 1:
            raise ValueError("num_threads must be at least 1")
        self.camera_system = camera_system
        self.num_threads = num_threads
        self.smooth_ts = smooth_ts
        self.observation: TimeSurfacePair | None = None
        self.events: list[Event] = []
        self.disparity_bounds: list[tuple[int, int]] = []
        self._pose_times: list[float] = []
        self._poses: list[np.ndarray] = []
        self.reset_parameters(
            patch_size_x, patch_size_y, min_disparity, max_disparity,
            step, zncc_threshold, up_down,
        )

    def reset_parameters(
        self,
        patch_size_x: int,
        patch_size_y: int,
        min_disparity: int,
        max_disparity: int,
        step: int,
        zncc_threshold: float,
        up_down: bool,
    ) -> None:
        """Set the matching parameters and zero the failure counters."""
        if step < 1:
            raise ValueError("step must be at least 1")
        self.patch_size_x = int(patch_size_x)
        self.patch_size_y = int(patch_size_y)
        self.min_disparity = int(min_disparity)
        self.max_disparity = int(max_disparity)
        self.step = int(step)
        self.zncc_threshold = float(zncc_threshold)
        self.up_down = bool(up_down)
        self.coarse_searching_fail_num = 0
        self.fine_searching_fail_num = 0
        self.info_noise_ratio_low_num = 0

    def create_match_problem(
        self,
        observation: TimeSurfacePair,
        stamped_poses: Mapping[float, Any],
        events: Iterable[Event],
    ) -> None:
        """Set the time surfaces, the poses of the virtual views and the events.

        With smoothing enabled, the observation's time surfaces are blurred
        in place.
        """
        self.observation = observation
        items = sorted(stamped_poses.items(), key=lambda item: item[0])
        self._pose_times = [float(t) for t, _ in items]
        self._poses = [np.asarray(T, dtype=float) for _, T in items]
        self.events = list(events)
        if self.smooth_ts and observation is not None:
            observation.left = _gaussian_blur(observation.left, _SMOOTH_KERNEL)
            observation.right = _gaussian_blur(observation.right, _SMOOTH_KERNEL)
        self.disparity_bounds = [
            (self.min_disparity, self.max_disparity) for _ in self.events
        ]

    def is_valid_patch(self, x: Any) -> tuple[int, int] | None:
        """Top-left corner of the patch centred at x, or None if it touches the border.

        The patch may not reach the outermost row or column, since the later
        interpolation reads one pixel beyond it.
        """
        camera = self.camera_system.left
        wx = (self.patch_size_x - 1) // 2
        wy = (self.patch_size_y - 1) // 2
        left, top = int(x[0]) - wx, int(x[1]) - wy
        right, bottom = int(x[0]) + wx, int(x[1]) + wy
        if left < 1 or top < 1 or right >= camera.width - 1 or bottom >= camera.height - 1:
            return None
        return left, top

    def _window(self, img: np.ndarray, left_top: tuple[int, int]) -> np.ndarray:
        left, top = left_top
        return img[top : top + self.patch_size_y, left : left + self.patch_size_x]

    def _epipolar_search(
        self,
        search: _Search,
        start: int,
        end: int,
        step: int,
        x1: tuple[int, int],
        patch_src: np.ndarray,
    ) -> bool:
        costs: dict[int, float] = {}
        right = self.observation.right
        for disp in range(start, end + 1, step):
            if self.up_down:
                x2 = (x1[0], x1[1] - disp)
            else:
                x2 = (x1[0] - disp, x1[1])
            left_top = self.is_valid_patch(x2)
            if left_top is None:
                costs[disp] = ZNCC_MAX
                continue
            cost = zncc_cost(patch_src, self._window(right, left_top), False)
            costs[disp] = cost
            if cost <= search.min_cost:
                search.min_cost = cost
                search.best_match = x2
                search.best_disp = disp

        if step > 1:
            best = search.best_disp
            if best is None:
                return False
            below, above = costs.get(best - step), costs.get(best + step)
            return (
                below is not None
                and above is not None
                and below < ZNCC_MAX
                and above < ZNCC_MAX
                and search.min_cost < self.zncc_threshold
            )
        return search.min_cost < self.zncc_threshold

    def _pose_at_or_after(self, t: float) -> np.ndarray | None:
        index = bisect_left(self._pose_times, t)
        if index == len(self._poses):
            return None
        return self._poses[index]

    def match_an_event(
        self, event: Event, disparity_bound: tuple[int, int]
    ) -> EventMatchPair | None:
        """Match one left event, or return None when no reliable match is found."""
        if self.observation is None:
            raise RuntimeError("create_match_problem must be called before matching")
        camera = self.camera_system.left
        low, up = disparity_bound
        x_rect = camera.rectified_coordinate(event.x, event.y)
        if (
            x_rect[0] < 0
            or x_rect[0] > camera.width - 1
            or x_rect[1] < 0
            or x_rect[1] > camera.height - 1
        ):
            return None
        if camera.undistort_rectify_mask[int(x_rect[1]), int(x_rect[0])] <= 125:
            return None
        x1 = (math.floor(x_rect[0]), math.floor(x_rect[1]))
        left_top = self.is_valid_patch(x1)
        if left_top is None:
            return None
        patch_src = self._window(self.observation.left, left_top)
        if np.count_nonzero(patch_src < 1) > 0.95 * patch_src.size:
            self.info_noise_ratio_low_num += 1
            return None

        search = _Search()
        if not self._epipolar_search(search, low, up, self.step, x1, patch_src):
            self.coarse_searching_fail_num += 1
            return None
        fine_start = max(search.best_disp - (self.step - 1), 0)
        fine_end = search.best_disp + (self.step - 1)
        if not self._epipolar_search(search, fine_start, fine_end, 1, x1, patch_src):
            self.fine_searching_fail_num += 1
            return None

        if search.min_cost > self.zncc_threshold:
            return None
        best = search.best_match
        if self.up_down:
            disparity = float(x1[1] - best[1])
        else:
            disparity = float(x1[0] - best[0])
        pose = self._pose_at_or_after(event.ts)
        if pose is None:
            return None
        depth = self.camera_system.baseline * camera.P[0, 0] / disparity
        return EventMatchPair(
            x_left_raw=np.array([float(event.x), float(event.y)]),
            x_left=np.asarray(x_rect, dtype=float),
            x_right=np.array([float(best[0]), float(best[1])]),
            t=event.ts,
            trans=pose.copy(),
            inv_depth=1.0 / depth,
            cost=search.min_cost,
            disp=disparity,
        )

    def match_all(self) -> list[EventMatchPair]:
        """Match every event of the current problem.

        Events are dealt round-robin to the configured number of workers and
        the matches are gathered worker by worker.
        """
        matches: list[EventMatchPair] = []
        n = len(self.events)
        for start in range(self.num_threads):
            for i in range(start, n, self.num_threads):
                match = self.match_an_event(self.events[i], self.disparity_bounds[i])
                if match is not None:
                    matches.append(match)
        return matches