# eventstereo

Depth mapping for a calibrated stereo pair of event cameras. Events from the
left and right sensors, stereo pairs of time-surface images and camera poses
go in; a semi-dense inverse-depth map and a point cloud in world coordinates
come out.

## Installing

```
pip install .
```

Tests need the `test` extra:

```
pip install ".[test]"
pytest
```

## Modules

- `eventstereo.camera`: `PerspectiveCamera` (`plumb_bob` or `equidistant`
  distortion) and `CameraSystem`. `CameraSystem.from_directory(path)` reads
  `left.yaml` and `right.yaml` (image size, camera name, distortion model,
  distortion, camera, rectification and projection matrices, and
  `T_right_left` in the left file); `load_camera` reads a single file.
  Cameras precompute the rectified, undistorted coordinate of every pixel
  (`rectified_coordinate`), a mask of the valid rectified area
  (`undistort_rectify_mask`), and project with `cam_to_world` and
  `world_to_cam`. `CameraSystem.describe()` returns a text summary.
- `eventstereo.depth_point`: `DepthPoint` (Gaussian `update` and Student-t
  `update_student_t`), the sparse `DepthMap` and `DepthFrame`.
- `eventstereo.event_point`: `Event`, `EventPoint` and `EventMatchPair`.
- `eventstereo.residual_item`: `ResidualItem`, a 3D point with a residual
  vector.
- `eventstereo.depth_problem`: `DepthProblemConfig`, the `LSNorm` choice
  (`l2`, `zncc`, `Tdist`), `TimeSurfacePair`, `DepthProblem` and
  `interpolate_patch`.
- `eventstereo.depth_solver`: `DepthProblemSolver`, Levenberg-Marquardt
  refinement of each match's inverse depth (`l2` or `Tdist`), and
  `point_culling`.
- `eventstereo.depth_fusion`: `DepthFusion`, propagating earlier estimates
  into the current frame and fusing compatible ones, with `chi_square_test`
  and `student_t_compatible_test`.
- `eventstereo.regularization`: `DepthRegularization`, neighbourhood
  smoothing of a depth map.
- `eventstereo.block_matching`: `EventBlockMatcher`, ZNCC block matching of
  time-surface patches along epipolar lines, with `zncc_cost` and
  `normalize_patch`.
- `eventstereo.event_matcher`: `EventMatcher`, event-to-event matching by
  timing, polarity, epipolar distance and time-surface similarity, and
  `slice_events`.
- `eventstereo.event_queue`: `EventQueue`, a time-ordered, bounded event
  buffer that raises `InconsistentTimestampError` on time jumps, and
  `FusionWindow`, the sliding window of recent depth observations.
- `eventstereo.mapping_tools`: `disparity_range`, `matches_to_depth_points`,
  `create_edge_mask`, `create_denoising_mask`, `extract_denoised_events`,
  `marker_to_camera` and `save_depth_map` (one `x y z` line per valid point
  in `<directory>/<t_ns>.txt`).
- `eventstereo.stereo_mapper`: `StereoMapper`, `MapperConfig`,
  `MVStereoMode`, `FusionStrategy` and `PoseBuffer`.

## Using the mapper

```python
from eventstereo.camera import CameraSystem
from eventstereo.event_point import Event
from eventstereo.stereo_mapper import MapperConfig, MVStereoMode, StereoMapper

cameras = CameraSystem.from_directory("calib/")
config = MapperConfig(mode=MVStereoMode.BM_PLUS_ESTIMATION, td_nu=2.18, td_scale=17.0)
mapper = StereoMapper(cameras, config)

mapper.add_events_left([Event(x=10, y=20, ts=0.001, polarity=True), ...])
mapper.add_events_right([...])
mapper.add_pose(t, T_world_cam)            # 4x4 matrix
mapper.add_time_surfaces(t, left_ts, right_ts)

frame = mapper.step()                      # DepthFrame or None
points = mapper.point_cloud()              # N x 3 array in world coordinates
```

The modes are `PURE_EVENT_MATCHING`, `PURE_BLOCK_MATCHING` (the default),
`EM_PLUS_ESTIMATION` and `BM_PLUS_ESTIMATION`. The pure modes splat matched
depths straight into the frame; the estimation modes refine them, cull them
and fuse them over the window chosen by `fusion_strategy`
(`CONST_FRAMES` or `CONST_POINTS`), then optionally regularise the map.

`step()` returns `None` until more than ten time-surface pairs are held, and
whenever no pose is known for them. The estimation modes use the Student-t
norm by default, whose `td_nu` and `td_scale` default to 0 and should be set.
Setting `pose_frame="marker"` converts stored poses of the rig's marker into
poses of the left camera.

Time stamps that go backwards or jump by half a second or more reset the
mapper and clear its buffers before the new data is stored, just as an
explicit `mapper.reset()` does.

## What it does not do

There is no command-line program and no live input or output: the package
does not subscribe to event or pose streams, does not publish maps, poses or
point clouds, and does not render depth, variance, age or cost maps as
images. The caller feeds data in, calls `step()` and reads the resulting
`DepthFrame` or `point_cloud()`. Mapping runs in the calling thread; the
`num_threads` settings only decide how work is dealt out, not parallelism.