"""Multi-view stereo mapping from stereo event streams and time surfaces."""

from __future__ import annotations

import logging
import threading
from bisect import bisect_left
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Iterable

import numpy as np
from scipy.spatial.transform import Rotation

from eventstereo.block_matching import EventBlockMatcher
from eventstereo.camera import CameraSystem
from eventstereo.depth_fusion import DepthFusion
from eventstereo.depth_point import DepthFrame
from eventstereo.depth_problem import DepthProblemConfig, TimeSurfacePair
from eventstereo.depth_solver import DepthProblemSolver, point_culling
from eventstereo.event_matcher import EventMatcher, slice_events
from eventstereo.event_point import Event, EventMatchPair
from eventstereo.event_queue import EventQueue, FusionWindow, InconsistentTimestampError
from eventstereo.mapping_tools import (
    create_denoising_mask,
    disparity_range,
    extract_denoised_events,
    marker_to_camera,
    matches_to_depth_points,
)
from eventstereo.regularization import DepthRegularization

logger = logging.getLogger(__name__)

_MAX_TIME_GAP = 0.5
_MIN_HISTORY = 10
_MAX_INVOLVED_EVENTS = 10_000


class MVStereoMode(IntEnum):
    """How depth is obtained from the stereo data."""

    PURE_EVENT_MATCHING = 0
    PURE_BLOCK_MATCHING = 1
    EM_PLUS_ESTIMATION = 2
    BM_PLUS_ESTIMATION = 3

    @property
    def uses_event_matching(self) -> bool:
        return self in (MVStereoMode.PURE_EVENT_MATCHING, MVStereoMode.EM_PLUS_ESTIMATION)

    @property
    def uses_block_matching(self) -> bool:
        return self in (MVStereoMode.PURE_BLOCK_MATCHING, MVStereoMode.BM_PLUS_ESTIMATION)


class FusionStrategy(str, Enum):
    """How many past observations are kept for fusion."""

    CONST_POINTS = "CONST_POINTS"
    CONST_FRAMES = "CONST_FRAMES"


@dataclass
class MapperConfig:
    """Parameters of the stereo mapper."""

    inv_depth_min_range: float = 0.16
    inv_depth_max_range: float = 2.0
    patch_size_x: int = 25
    patch_size_y: int = 25
    residual_vis_threshold: float = 15.0
    stdvar_vis_threshold: float = 0.005
    age_max_range: int = 5
    age_vis_threshold: int = 0
    fusion_radius: int = 0
    fusion_strategy: FusionStrategy | str = FusionStrategy.CONST_FRAMES
    max_num_fusion_frames: int = 20
    max_num_fusion_points: int = 5000
    denoising: bool = False
    regularization: bool = False
    process_event_num: int = 500
    ts_history_length: int = 100
    ls_norm: str = "Tdist"
    td_nu: float = 0.0
    td_scale: float = 0.0
    max_iteration: int = 10
    regularization_radius: int = 5
    regularization_min_neighbours: int = 8
    regularization_min_close_neighbours: int = 8
    smooth_time_surface: bool = False
    em_slice_thickness: float = 1e-3
    em_time_threshold: float = 5e-5
    em_epipolar_threshold: float = 0.5
    em_ts_ncc_threshold: float = 0.1
    em_num_event_matching: int = 3000
    em_patch_intensity_threshold: int = 125
    em_patch_valid_ratio: float = 0.1
    bm_half_slice_thickness: float = 0.001
    bm_max_num_events_per_matching: int = 300
    bm_min_disparity: int = 3
    bm_max_disparity: int = 40
    bm_step: int = 1
    bm_zncc_threshold: float = 0.1
    bm_up_down: bool = False
    mode: MVStereoMode | int = MVStereoMode.PURE_BLOCK_MATCHING
    pose_frame: str = "dvs"
    num_threads: int = 4

    def __post_init__(self) -> None:
        try:
            self.mode = MVStereoMode(self.mode)
        except ValueError:
            raise ValueError(f"unknown stereo mode: {self.mode!r}") from None
        try:
            self.fusion_strategy = FusionStrategy(self.fusion_strategy)
        except ValueError:
            raise ValueError(f"invalid fusion strategy: {self.fusion_strategy!r}") from None

    @property
    def cost_vis_threshold(self) -> float:
        return self.residual_vis_threshold**2 * self.patch_size_x * self.patch_size_y

    def depth_problem_config(self) -> DepthProblemConfig:
        return DepthProblemConfig(
            patch_size_x=self.patch_size_x,
            patch_size_y=self.patch_size_y,
            ls_norm=self.ls_norm,
            td_nu=self.td_nu,
            td_scale=self.td_scale,
            max_iteration=self.max_iteration,
            regularization_radius=self.regularization_radius,
            regularization_min_neighbours=self.regularization_min_neighbours,
            regularization_min_close_neighbours=self.regularization_min_close_neighbours,
        )


class PoseBuffer:
    """Time-stamped camera poses with interpolation between them."""

    def __init__(self, cache_time: float = 100.0) -> None:
        self.cache_time = cache_time
        self._times: list[float] = []
        self._poses: list[np.ndarray] = []

    def add(self, t: float, T_world_cam: Any) -> None:
        """Store a 4x4 pose; poses older than the cache time are dropped."""
        T = np.asarray(T_world_cam, dtype=float)
        if T.shape != (4, 4):
            raise ValueError("a pose must be a 4x4 matrix")
        t = float(t)
        index = bisect_left(self._times, t)
        if index < len(self._times) and self._times[index] == t:
            self._poses[index] = T.copy()
        else:
            self._times.insert(index, t)
            self._poses.insert(index, T.copy())
        drop = bisect_left(self._times, self._times[-1] - self.cache_time)
        del self._times[:drop]
        del self._poses[:drop]

    def pose_at(self, t: float) -> np.ndarray | None:
        """The pose at t, interpolated between neighbours, or None outside the buffer."""
        if not self._times:
            return None
        t = float(t)
        if t < self._times[0] or t > self._times[-1]:
            return None
        index = bisect_left(self._times, t)
        if self._times[index] == t:
            return self._poses[index].copy()
        t0, t1 = self._times[index - 1], self._times[index]
        T0, T1 = self._poses[index - 1], self._poses[index]
        alpha = (t - t0) / (t1 - t0)
        r0 = Rotation.from_matrix(T0[:3, :3])
        r1 = Rotation.from_matrix(T1[:3, :3])
        relative = (r0.inv() * r1).as_rotvec()
        pose = np.eye(4)
        pose[:3, :3] = (r0 * Rotation.from_rotvec(relative * alpha)).as_matrix()
        pose[:3, 3] = (1 - alpha) * T0[:3, 3] + alpha * T1[:3, 3]
        return pose

    def latest_time(self) -> float | None:
        return self._times[-1] if self._times else None

    def clear(self) -> None:
        self._times.clear()
        self._poses.clear()

    def __len__(self) -> int:
        return len(self._times)


class StereoMapper:
    """Builds semi-dense inverse-depth maps from stereo events and time surfaces."""

    def __init__(self, camera_system: CameraSystem, config: MapperConfig | None = None) -> None:
        self.camera_system = camera_system
        self.config = config or MapperConfig()
        cfg = self.config
        self._lock = threading.RLock()
        dp_config = cfg.depth_problem_config()
        self.solver = DepthProblemSolver(camera_system, dp_config, cfg.num_threads)
        self.fusion = DepthFusion(camera_system, dp_config)
        self.regularizer = DepthRegularization(dp_config)
        self.event_matcher = EventMatcher(
            camera_system,
            cfg.num_threads,
            cfg.em_time_threshold,
            cfg.em_epipolar_threshold,
            cfg.em_ts_ncc_threshold,
            cfg.patch_size_x,
            cfg.patch_size_y,
            cfg.em_patch_intensity_threshold,
            cfg.em_patch_valid_ratio,
        )
        left = camera_system.left
        focal = (left.P[0, 0] + left.P[1, 1]) / 2
        min_disp, max_disp = disparity_range(
            focal,
            camera_system.baseline,
            cfg.inv_depth_min_range,
            cfg.inv_depth_max_range,
            cfg.bm_min_disparity,
            cfg.bm_max_disparity,
        )
        self.block_matcher = EventBlockMatcher(
            camera_system,
            cfg.num_threads,
            cfg.smooth_time_surface,
            cfg.patch_size_x,
            cfg.patch_size_y,
            min_disp,
            max_disp,
            cfg.bm_step,
            cfg.bm_zncc_threshold,
            cfg.bm_up_down,
        )
        self.events_left = EventQueue(max_time_gap=_MAX_TIME_GAP)
        self.events_right = EventQueue(max_time_gap=_MAX_TIME_GAP)
        self.poses = PoseBuffer()
        self.window = FusionWindow()
        self.depth_frame = DepthFrame(left.height, left.width)
        self.keyframe_pose: tuple[float, np.ndarray] | None = None
        self.total_num_fusion = 0
        self.total_num_count = 0
        self.reset_count = 0
        self._ts_times: list[float] = []
        self._ts_obs: list[TimeSurfacePair] = []
        self._ts_id = 0
        self._observation: tuple[float, TimeSurfacePair] | None = None
        self._em_left: list[Event] = []
        self._em_right: list[Event] = []
        self._t_low = 0.0
        self._t_up = 0.0
        self._all_events_left: list[Event] = []
        self._close_events_left: list[Event] = []
        self._stamped_poses: dict[float, np.ndarray] = {}

    @property
    def time_surfaces(self) -> list[tuple[float, TimeSurfacePair]]:
        return list(zip(self._ts_times, self._ts_obs))

    @property
    def observation(self) -> tuple[float, TimeSurfacePair] | None:
        return self._observation

    def _pose_lookup(self, t: float) -> np.ndarray | None:
        pose = self.poses.pose_at(t)
        if pose is not None and self.config.pose_frame == "marker":
            return marker_to_camera(pose)
        return pose

    def _add_events(self, queue: EventQueue, events: Iterable[Event]) -> None:
        events = list(events)
        with self._lock:
            try:
                queue.add(events)
            except InconsistentTimestampError as error:
                logger.info("%s in the event stream, resetting", error)
                self.reset()
                queue.add(events)

    def add_events_left(self, events: Iterable[Event]) -> None:
        """Queue left-camera events; a time jump resets the mapper first."""
        self._add_events(self.events_left, events)

    def add_events_right(self, events: Iterable[Event]) -> None:
        """Queue right-camera events; a time jump resets the mapper first."""
        self._add_events(self.events_right, events)

    def add_pose(self, t: float, T_world_cam: Any) -> None:
        """Record a camera pose; a time jump resets the mapper first."""
        with self._lock:
            latest = self.poses.latest_time()
            if latest:
                dt = t - latest
                if dt < 0 or abs(dt) >= _MAX_TIME_GAP:
                    logger.info(
                        "inconsistent pose timestamps (new: %f, old: %f), resetting", t, latest
                    )
                    self.reset()
            self.poses.add(t, T_world_cam)

    def add_time_surfaces(self, t: float, left: Any, right: Any) -> None:
        """Store a stereo pair of time surfaces, keeping the history bounded."""
        t = float(t)
        with self._lock:
            if self._ts_times:
                last = self._ts_times[-1]
                dt = t - last
                if dt < 0 or abs(dt) >= _MAX_TIME_GAP:
                    logger.info(
                        "inconsistent time-surface timestamps (new: %f, old: %f), resetting",
                        t,
                        last,
                    )
                    self.reset()
            index = bisect_left(self._ts_times, t)
            if index == len(self._ts_times) or self._ts_times[index] != t:
                self._ts_times.insert(index, t)
                self._ts_obs.insert(index, TimeSurfacePair(left, right, id=self._ts_id))
            self._ts_id += 1
            excess = len(self._ts_times) - self.config.ts_history_length
            if excess > 0:
                del self._ts_times[:excess]
                del self._ts_obs[:excess]

    def transfer_data(self) -> bool:
        """Pick the observation to map and gather the events and poses it needs."""
        with self._lock:
            self._observation = None
            if len(self._ts_times) <= _MIN_HISTORY:
                return False
            self.total_num_count = 0
            for index in range(len(self._ts_times) - 2, -1, -1):
                pose = self._pose_lookup(self._ts_times[index])
                if pose is not None:
                    obs = self._ts_obs[index]
                    obs.T_world_left = pose
                    self._observation = (self._ts_times[index], obs)
                    break
            if self._observation is None:
                return False

            cfg = self.config
            mode = cfg.mode
            if mode.uses_event_matching:
                self._t_low, self._t_up = self._ts_times[0], self._ts_times[-1]
                limit = cfg.em_num_event_matching + 1
                self._em_left = self.events_left.between(self._t_low, self._t_up, limit)
                self._em_right = self.events_right.between(self._t_low, self._t_up, limit)
                if not self._em_left or not self._em_right:
                    return False
                self.total_num_count = len(self._em_right)

            if mode.uses_block_matching:
                t_end = self._observation[0]
                t_begin = max(0.0, t_end - 10 * cfg.bm_half_slice_thickness)
                events = self.events_left.newest_before(t_begin, t_end, _MAX_INVOLVED_EVENTS)
                self._all_events_left = events
                self._close_events_left = list(events)
                self.total_num_count = len(events)
                step = 0.05 * cfg.bm_half_slice_thickness
                poses: dict[float, np.ndarray] = {}
                k = 0
                while (t_tmp := t_begin + k * step) <= t_end:
                    pose = self._pose_lookup(t_tmp)
                    if pose is not None:
                        poses[t_tmp] = pose
                    k += 1
                self._stamped_poses = poses
            return True

    def map_at_time(self, t: float) -> DepthFrame | None:
        """Compute a depth frame for the current observation.

        Returns the new frame, or None when event matching finds nothing.
        """
        with self._lock:
            if self._observation is None:
                raise RuntimeError("transfer_data must succeed before mapping")
            _, obs = self._observation
            cfg = self.config
            camera = self.camera_system.left
            frame = DepthFrame(camera.height, camera.width)
            frame.id = obs.id
            frame.T_world_frame = np.asarray(obs.T_world_left, dtype=float).copy()
            self.depth_frame = frame
            self.last_map_time = t
            mode = cfg.mode

            matches: list[EventMatchPair] = []
            if mode.uses_event_matching:
                slices = slice_events(
                    self._em_left, self._t_low, self._t_up,
                    cfg.em_slice_thickness, self._pose_lookup,
                )
                self.event_matcher.create_match_problem(obs, slices, self._em_right)
                matches = self.event_matcher.match_all()
                if not matches:
                    return None
                if mode is MVStereoMode.PURE_EVENT_MATCHING:
                    return self._accumulate(matches, frame)

            if mode.uses_block_matching:
                if cfg.denoising:
                    mask = create_denoising_mask(
                        self._all_events_left, camera.height, camera.width
                    )
                    events = extract_denoised_events(
                        self._close_events_left, mask, cfg.process_event_num
                    )
                    self.total_num_count = len(events)
                else:
                    events = self._close_events_left[: cfg.process_event_num]
                self.block_matcher.create_match_problem(obs, self._stamped_poses, events)
                matches = self.block_matcher.match_all()
                if mode is MVStereoMode.PURE_BLOCK_MATCHING:
                    return self._accumulate(matches, frame)

            return self._estimate_and_fuse(matches, obs, frame)

    def _accumulate(self, matches: list[EventMatchPair], frame: DepthFrame) -> DepthFrame:
        cfg = self.config
        points = matches_to_depth_points(
            matches, self.camera_system.left, cfg.age_vis_threshold
        )
        self.window.push(points)
        self.window.trim_frames(cfg.max_num_fusion_frames)
        for batch in self.window.newest_first():
            self.fusion.naive_propagation(batch, frame)
        return frame

    def _estimate_and_fuse(
        self, matches: list[EventMatchPair], obs: TimeSurfacePair, frame: DepthFrame
    ) -> DepthFrame:
        cfg = self.config
        points = self.solver.solve(matches, obs)
        points = point_culling(
            points,
            cfg.stdvar_vis_threshold,
            cfg.cost_vis_threshold,
            cfg.inv_depth_min_range,
            cfg.inv_depth_max_range,
        )
        self.window.push(points)
        if cfg.fusion_strategy is FusionStrategy.CONST_POINTS:
            self.window.trim_points(cfg.max_num_fusion_points)
        else:
            self.window.trim_frames(cfg.max_num_fusion_frames)
        count = sum(
            self.fusion.update(batch, frame, cfg.fusion_radius)
            for batch in self.window.newest_first()
        )
        self.total_num_fusion += count
        frame.depth_map.clean(
            cfg.stdvar_vis_threshold**2,
            cfg.age_vis_threshold,
            cfg.inv_depth_max_range,
            cfg.inv_depth_min_range,
        )
        if cfg.regularization:
            self.regularizer.apply(frame.depth_map)
        return frame

    def step(self) -> DepthFrame | None:
        """Run one mapping cycle; return the new frame or None when nothing was mapped."""
        with self._lock:
            if len(self._ts_times) < _MIN_HISTORY:
                return None
            if not self.transfer_data():
                return None
            t, obs = self._observation
            self.keyframe_pose = (t, np.asarray(obs.T_world_left, dtype=float).copy())
            return self.map_at_time(t)

    def point_cloud(self) -> np.ndarray:
        """The points of the current depth frame in world coordinates, one per row."""
        frame = self.depth_frame
        T = np.asarray(frame.T_world_frame, dtype=float)
        points = [T[:3, :3] @ np.asarray(p.p_cam, dtype=float) + T[:3, 3] for p in frame.depth_map]
        return np.array(points, dtype=float).reshape(-1, 3)

    def reset(self) -> None:
        """Drop all buffered data and restore the matchers' parameters."""
        with self._lock:
            cfg = self.config
            self.events_left.clear()
            self.events_right.clear()
            self._ts_times.clear()
            self._ts_obs.clear()
            self.poses.clear()
            self._ts_id = 0
            self.depth_frame.clear()
            self.window.clear()
            self._observation = None
            if cfg.mode.uses_event_matching:
                self.event_matcher.reset_parameters(
                    cfg.em_time_threshold,
                    cfg.em_epipolar_threshold,
                    cfg.em_ts_ncc_threshold,
                    cfg.patch_size_x,
                    cfg.patch_size_y,
                    cfg.em_patch_intensity_threshold,
                    cfg.em_patch_valid_ratio,
                )
            if cfg.mode in (MVStereoMode.PURE_BLOCK_MATCHING, MVStereoMode.EM_PLUS_ESTIMATION):
                self.block_matcher.reset_parameters(
                    cfg.patch_size_x,
                    cfg.patch_size_y,
                    cfg.bm_min_disparity,
                    cfg.bm_max_disparity,
                    cfg.bm_step,
                    cfg.bm_zncc_threshold,
                    cfg.bm_up_down,
                )
            self.reset_count += 1
            logger.info("the mapper has been reset")