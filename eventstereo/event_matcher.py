"""Event-to-event stereo matching by time, epipolar and motion consistency."""

from __future__ import annotations

import math
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

import numpy as np

from eventstereo.camera import CameraSystem
from eventstereo.depth_problem import TimeSurfacePair, interpolate_patch
from eventstereo.event_point import Event, EventMatchPair


@dataclass
class EventSlice:
    """A run of consecutive left events sharing one virtual view."""

    events: list[Event]
    t_median: float
    T_world_rv: np.ndarray = field(default_factory=lambda: np.eye(4))
    thickness: float = 1e-3

    @property
    def num_events(self) -> int:
        return len(self.events)


def slice_events(
    events: Sequence[Event],
    t_low: float,
    t_up: float,
    thickness: float,
    pose_lookup: Callable[[float], Any] | None = None,
) -> list[EventSlice]:
    """Cut time-ordered events into slices about thickness seconds long.

    At most floor((t_up - t_low) / thickness) slices are made; events left
    over after them are dropped. Each slice includes the first event at or
    beyond its time span and takes the pose that pose_lookup gives for its
    median timestamp, or the identity when there is none.
    """
    if thickness <= 0:
        raise ValueError("thickness must be positive")
    events = list(events)
    if not events:
        return []
    times = [event.ts for event in events]
    num_slices = math.floor((t_up - t_low) / thickness)
    slices: list[EventSlice] = []
    begin = 0
    for _ in range(max(num_slices, 0)):
        t_end = events[begin].ts + thickness
        end = bisect_left(times, t_end)
        if end == len(events):
            end -= 1
        chunk = events[begin : end + 1]
        t_median = chunk[len(chunk) // 2].ts
        pose = pose_lookup(t_median) if pose_lookup is not None else None
        T_world_rv = np.eye(4) if pose is None else np.asarray(pose, dtype=float)
        slices.append(EventSlice(chunk, t_median, T_world_rv, thickness))
        begin = end + 1
        if begin == len(events):
            break
    return slices


def zncc_cost(patch_left: Any, patch_right: Any) -> float:
    """Zero-normalised cross-correlation as a cost: 0 for equal, 1 for inverted."""
    left = np.asarray(patch_left, dtype=float)
    right = np.asarray(patch_right, dtype=float)
    left_sub = left - left.mean()
    right_sub = right - right.mean()
    left_n = left_sub / (np.linalg.norm(left_sub) + 1e-6)
    right_n = right_sub / (np.linalg.norm(right_sub) + 1e-6)
    return 0.5 * (1.0 - float(np.sum(left_n * right_n)))


class EventMatcher:
    """Matches left events to right events seen at about the same time."""

    def __init__(
        self,
        camera_system: CameraSystem,
        num_threads: int = 1,
        time_threshold: float = 5e-5,
        epipolar_threshold: float = 0.5,
        ts_ncc_threshold: float = 0.1,
        patch_size_x: int = 25,
        patch_size_y: int = 25,
        patch_intensity_threshold: int = 125,
        patch_valid_ratio: float = 0.1,
    ) -> None:
        if num_threads < 1:
            raise ValueError("num_threads must be at least 1")
        self.camera_system = camera_system
        self.num_threads = num_threads
        self.observation: TimeSurfacePair | None = None
        self.slices: list[EventSlice] = []
        self.candidates: list[Event] = []
        self._candidate_times: list[float] = []
        self.reset_parameters(
            time_threshold,
            epipolar_threshold,
            ts_ncc_threshold,
            patch_size_x,
            patch_size_y,
            patch_intensity_threshold,
            patch_valid_ratio,
        )

    def reset_parameters(
        self,
        time_threshold: float,
        epipolar_threshold: float,
        ts_ncc_threshold: float,
        patch_size_x: int,
        patch_size_y: int,
        patch_intensity_threshold: int,
        patch_valid_ratio: float,
    ) -> None:
        """Replace all matching parameters."""
        self.time_threshold = float(time_threshold)
        self.epipolar_threshold = float(epipolar_threshold)
        self.ts_ncc_threshold = float(ts_ncc_threshold)
        self.patch_size_x = int(patch_size_x)
        self.patch_size_y = int(patch_size_y)
        self.patch_intensity_threshold = int(patch_intensity_threshold)
        self.patch_valid_ratio = float(patch_valid_ratio)

    def create_match_problem(
        self,
        observation: TimeSurfacePair,
        slices: Iterable[EventSlice],
        candidates: Iterable[Event],
    ) -> None:
        """Set the time surfaces, the left event slices and the time-ordered
        right events to match against."""
        self.observation = observation
        self.slices = list(slices)
        self.candidates = list(candidates)
        self._candidate_times = [event.ts for event in self.candidates]

    def warp(
        self, x: Any, inv_depth: float, T_left_rv: Any
    ) -> tuple[np.ndarray, np.ndarray] | None:
        """Project a virtual-view pixel into the left and right images.

        Returns None when either projection is too close to the border.
        """
        left_cam = self.camera_system.left
        right_cam = self.camera_system.right
        T = np.asarray(T_left_rv, dtype=float)
        p_rv = left_cam.cam_to_world(x, inv_depth)
        p_left = T[:3, :3] @ p_rv + T[:3, 3]
        x1_s = left_cam.world_to_cam(p_left)
        x2_s = right_cam.world_to_cam(p_left)
        half_x = (self.patch_size_x - 1) // 2
        half_y = (self.patch_size_y - 1) // 2
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

    def _time_candidates(self, event: Event) -> list[Event]:
        low = event.ts - self.time_threshold / 2
        up = event.ts + self.time_threshold / 2
        begin = bisect_left(self._candidate_times, low)
        end = bisect_left(self._candidate_times, up)
        return [
            cand
            for cand in self.candidates[begin:end]
            if low <= cand.ts <= up and cand.polarity == event.polarity
        ]

    def match_an_event(self, event: Event, T_world_rv: Any) -> EventMatchPair | None:
        """Match one left event, or return None when no candidate is consistent."""
        observation = self.observation
        if observation is None:
            raise RuntimeError("create_match_problem must be called before matching")

        in_time = self._time_candidates(event)
        if not in_time:
            return None

        x_left = self.camera_system.left.rectified_coordinate(event.x, event.y)
        xs_right = []
        for cand in in_time:
            x_right = self.camera_system.right.rectified_coordinate(cand.x, cand.y)
            if abs(x_left[1] - x_right[1]) <= self.epipolar_threshold and x_right[0] < x_left[0]:
                xs_right.append(x_right)
        if not xs_right:
            return None

        baseline = self.camera_system.baseline
        focal = self.camera_system.left.P[0, 0]
        T_world_rv = np.asarray(T_world_rv, dtype=float)
        T_left_rv = np.linalg.inv(observation.T_world_left) @ T_world_rv
        min_cost = 1.0
        best_index = 0
        best_depth = 0.0
        for index, x_right in enumerate(xs_right):
            disparity = x_left[0] - x_right[0]
            depth = baseline * focal / disparity
            warped = self.warp(x_left, 1.0 / depth, T_left_rv[:3, :4])
            if warped is None:
                continue
            x1_s, x2_s = warped
            patch_left = interpolate_patch(
                observation.left, x1_s, self.patch_size_x, self.patch_size_y
            )
            patch_right = interpolate_patch(
                observation.right, x2_s, self.patch_size_x, self.patch_size_y
            )
            if patch_left is None or patch_right is None:
                continue
            cost = zncc_cost(patch_left, patch_right)
            if cost < min_cost:
                min_cost = cost
                best_index = index
                best_depth = depth
        if min_cost > self.ts_ncc_threshold:
            return None

        return EventMatchPair(
            x_left=np.asarray(x_left, dtype=float),
            x_right=np.asarray(xs_right[best_index], dtype=float),
            t=event.ts,
            trans=T_world_rv.copy(),
            inv_depth=1.0 / best_depth if best_depth != 0 else float("inf"),
            cost=min_cost,
        )

    def match_all(self) -> list[EventMatchPair]:
        """Match every event of every slice.

        Events are dealt round-robin to the configured number of workers and
        the matches are gathered worker by worker.
        """
        if not self.slices:
            return []
        events = [event for piece in self.slices for event in piece.events]
        owners = [piece for piece in self.slices for _ in piece.events]
        matches: list[EventMatchPair] = []
        for start in range(self.num_threads):
            for i in range(start, len(events), self.num_threads):
                match = self.match_an_event(events[i], owners[i].T_world_rv)
                if match is not None:
                    matches.append(match)
        return matches