import numpy as np
import pytest
import yaml
from scipy.spatial.transform import Rotation

from eventstereo.camera import CameraSystem
from eventstereo.event_point import Event
from eventstereo.mapping_tools import T_MARKER_CAM
from eventstereo.stereo_mapper import (
    FusionStrategy,
    MapperConfig,
    MVStereoMode,
    PoseBuffer,
    StereoMapper,
)

WIDTH, HEIGHT, FOCAL, BASELINE = 60, 40, 50.0, 0.1


def _camera_file(path, name, P, with_extrinsics):
    data = {
        "image_width": WIDTH,
        "image_height": HEIGHT,
        "camera_name": name,
        "distortion_model": "plumb_bob",
        "distortion_coefficients": {"rows": 1, "cols": 4, "data": [0.0, 0.0, 0.0, 0.0]},
        "camera_matrix": {
            "rows": 3,
            "cols": 3,
            "data": [FOCAL, 0.0, 30.0, 0.0, FOCAL, 20.0, 0.0, 0.0, 1.0],
        },
        "rectification_matrix": {
            "rows": 3,
            "cols": 3,
            "data": [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0],
        },
        "projection_matrix": {"rows": 3, "cols": 4, "data": P},
    }
    if with_extrinsics:
        data["T_right_left"] = {
            "rows": 3,
            "cols": 4,
            "data": [1.0, 0.0, 0.0, -BASELINE, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0],
        }
    path.write_text(yaml.safe_dump(data))


@pytest.fixture
def camera_system(tmp_path):
    p_left = [FOCAL, 0.0, 30.0, 0.0, 0.0, FOCAL, 20.0, 0.0, 0.0, 0.0, 1.0, 0.0]
    p_right = [FOCAL, 0.0, 30.0, -FOCAL * BASELINE, 0.0, FOCAL, 20.0, 0.0, 0.0, 0.0, 1.0, 0.0]
    _camera_file(tmp_path / "left.yaml", "left", p_left, True)
    _camera_file(tmp_path / "right.yaml", "right", p_right, False)
    return CameraSystem.from_directory(str(tmp_path))


def _small_config(**kwargs):
    base = dict(patch_size_x=5, patch_size_y=5, num_threads=1)
    base.update(kwargs)
    return MapperConfig(**base)


def _blank():
    return np.zeros((HEIGHT, WIDTH))


def test_default_mode_and_strategy():
    config = MapperConfig()
    assert config.mode is MVStereoMode.PURE_BLOCK_MATCHING
    assert config.fusion_strategy is FusionStrategy.CONST_FRAMES


def test_cost_threshold_from_residual_and_patch():
    config = MapperConfig(residual_vis_threshold=2, patch_size_x=3, patch_size_y=3)
    assert config.cost_vis_threshold == 36


def test_invalid_strategy_and_mode_rejected():
    with pytest.raises(ValueError):
        MapperConfig(fusion_strategy="SOMETIMES")
    with pytest.raises(ValueError):
        MapperConfig(mode=9)


def test_pose_buffer_exact_and_out_of_range():
    buffer = PoseBuffer()
    T = np.eye(4)
    T[:3, 3] = [0.5, -1.0, 2.0]
    buffer.add(1.0, T)
    assert np.allclose(buffer.pose_at(1.0), T)
    assert buffer.pose_at(1.5) is None
    buffer.add(2.0, np.eye(4))
    assert buffer.pose_at(0.5) is None
    assert buffer.pose_at(2.5) is None
    assert buffer.latest_time() == 2.0
    buffer.clear()
    assert len(buffer) == 0
    assert buffer.latest_time() is None


def test_pose_buffer_interpolates_translation_and_rotation():
    buffer = PoseBuffer()
    T0 = np.eye(4)
    T1 = np.eye(4)
    T1[:3, :3] = Rotation.from_euler("z", 90, degrees=True).as_matrix()
    T1[:3, 3] = [2.0, 4.0, 6.0]
    buffer.add(0.0, T0)
    buffer.add(1.0, T1)
    mid = buffer.pose_at(0.5)
    assert np.allclose(mid[:3, 3], [1.0, 2.0, 3.0])
    expected = Rotation.from_euler("z", 45, degrees=True).as_matrix()
    assert np.allclose(mid[:3, :3], expected)
    assert np.allclose(mid[3], [0, 0, 0, 1])


def test_pose_buffer_rejects_bad_shape():
    with pytest.raises(ValueError):
        PoseBuffer().add(0.0, np.eye(3))


def test_time_surface_history_is_bounded(camera_system):
    mapper = StereoMapper(camera_system, _small_config(ts_history_length=5))
    stamps = [round(0.01 * k, 6) for k in range(1, 9)]
    for t in stamps:
        mapper.add_time_surfaces(t, _blank(), _blank())
    history = mapper.time_surfaces
    assert len(history) == 5
    assert [t for t, _ in history] == stamps[-5:]


def test_time_surface_jump_resets(camera_system):
    mapper = StereoMapper(camera_system, _small_config())
    mapper.add_time_surfaces(1.0, _blank(), _blank())
    mapper.add_time_surfaces(0.5, _blank(), _blank())
    assert mapper.reset_count == 1
    assert [t for t, _ in mapper.time_surfaces] == [0.5]
    assert mapper.time_surfaces[0][1].id == 0


def test_event_jump_resets_and_keeps_new_batch(camera_system):
    mapper = StereoMapper(camera_system, _small_config())
    mapper.add_events_left([Event(5, 5, 1.0, True), Event(6, 5, 1.001, True)])
    mapper.add_events_right([Event(5, 5, 1.0, True)])
    second = [Event(7, 7, 0.2, False)]
    mapper.add_events_left(second)
    assert mapper.reset_count == 1
    assert list(mapper.events_left) == second
    assert len(mapper.events_right) == 0


def test_pose_jump_resets(camera_system):
    mapper = StereoMapper(camera_system, _small_config())
    mapper.add_pose(1.0, np.eye(4))
    mapper.add_pose(2.0, np.eye(4))
    assert mapper.reset_count == 1
    assert mapper.poses.pose_at(1.0) is None
    assert np.allclose(mapper.poses.pose_at(2.0), np.eye(4))


def _fill_history(mapper, count, left=None, right=None):
    for k in range(1, count + 1):
        mapper.add_time_surfaces(
            round(0.01 * k, 6),
            _blank() if left is None else left,
            _blank() if right is None else right,
        )


def test_transfer_needs_history_and_poses(camera_system):
    mapper = StereoMapper(camera_system, _small_config())
    _fill_history(mapper, 10)
    assert mapper.transfer_data() is False
    _fill_history(mapper, 12)
    assert mapper.transfer_data() is False
    assert mapper.observation is None
    assert mapper.step() is None


def test_transfer_picks_second_newest_observation(camera_system):
    mapper = StereoMapper(camera_system, _small_config())
    for k in range(0, 21):
        mapper.add_pose(round(0.01 * k, 6), np.eye(4))
    _fill_history(mapper, 15)
    assert mapper.transfer_data() is True
    t, obs = mapper.observation
    assert t == mapper.time_surfaces[-2][0]
    assert np.allclose(obs.T_world_left, np.eye(4))


def test_marker_poses_are_converted(camera_system):
    mapper = StereoMapper(camera_system, _small_config(pose_frame="marker"))
    for k in range(0, 21):
        mapper.add_pose(round(0.01 * k, 6), np.eye(4))
    _fill_history(mapper, 15)
    assert mapper.transfer_data() is True
    _, obs = mapper.observation
    assert np.allclose(obs.T_world_left, T_MARKER_CAM)


def test_block_matching_recovers_known_disparity(camera_system):
    disparity = 5
    rng = np.random.default_rng(7)
    left = rng.uniform(0.0, 255.0, (HEIGHT, WIDTH))
    right = np.zeros_like(left)
    right[:, : WIDTH - disparity] = left[:, disparity:]

    mapper = StereoMapper(camera_system, _small_config())
    for k in range(0, 21):
        mapper.add_pose(round(0.01 * k, 6), np.eye(4))
    _fill_history(mapper, 15, left, right)
    xs = rng.integers(20, 45, size=50)
    ys = rng.integers(8, 32, size=50)
    events = [
        Event(int(x), int(y), 0.1305 + i * 0.00018, True)
        for i, (x, y) in enumerate(zip(xs, ys))
    ]
    mapper.add_events_left(events)

    frame = mapper.step()
    assert frame is not None
    points = list(frame.depth_map)
    assert len(points) > 0
    expected = disparity / (camera_system.left.P[0, 0] * camera_system.baseline)
    assert all(p.inv_depth == pytest.approx(expected) for p in points)

    cloud = mapper.point_cloud()
    assert cloud.shape == (len(frame.depth_map), 3)
    assert np.allclose(cloud[:, 2], 1.0 / expected)
    assert mapper.keyframe_pose[0] == mapper.observation[0]

    mapper.reset()
    assert len(mapper.depth_frame.depth_map) == 0
    assert mapper.time_surfaces == []
    assert len(mapper.window) == 0


def test_map_without_observation_raises(camera_system):
    mapper = StereoMapper(camera_system, _small_config())
    with pytest.raises(RuntimeError):
        mapper.map_at_time(0.0)