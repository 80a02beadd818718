import numpy as np
import pytest
import yaml

from eventstereo.camera import CameraSystem, PerspectiveCamera, load_camera

WIDTH, HEIGHT = 20, 15
K = [10.0, 0.0, 10.0, 0.0, 10.0, 7.0, 0.0, 0.0, 1.0]
IDENTITY = [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0]
P_LEFT = [10.0, 0.0, 10.0, 0.0, 0.0, 10.0, 7.0, 0.0, 0.0, 0.0, 1.0, 0.0]
P_RIGHT = [10.0, 0.0, 10.0, -1.0, 0.0, 10.0, 7.0, 0.0, 0.0, 0.0, 1.0, 0.0]


def make_camera(model="plumb_bob", D=(0.0, 0.0, 0.0, 0.0), P=P_LEFT):
    return PerspectiveCamera(WIDTH, HEIGHT, "cam", model, list(D), K, IDENTITY, P)


def calib_dict(name, P):
    return {
        "image_width": WIDTH,
        "image_height": HEIGHT,
        "camera_name": name,
        "distortion_model": "plumb_bob",
        "distortion_coefficients": {"data": [0.0, 0.0, 0.0, 0.0, 0.0]},
        "camera_matrix": {"data": K},
        "rectification_matrix": {"data": IDENTITY},
        "projection_matrix": {"data": P},
        "T_right_left": {"data": [1, 0, 0, -0.1, 0, 1, 0, 0, 0, 0, 1, 0]},
    }


@pytest.fixture
def calib_dir(tmp_path):
    (tmp_path / "left.yaml").write_text(yaml.safe_dump(calib_dict("left_cam", P_LEFT)))
    (tmp_path / "right.yaml").write_text(yaml.safe_dump(calib_dict("right_cam", P_RIGHT)))
    return tmp_path


def test_zero_distortion_rectification_is_identity():
    cam = make_camera()
    for x, y in [(0, 0), (5, 3), (19, 14)]:
        np.testing.assert_allclose(cam.rectified_coordinate(x, y), [x, y], atol=1e-4)


def test_zero_distortion_mask_is_full():
    cam = make_camera()
    assert cam.undistort_rectify_mask.shape == (HEIGHT, WIDTH)
    assert np.all(cam.undistort_rectify_mask == 255)


def test_barrel_distortion_moves_corners_outward():
    cam = make_camera(D=(-0.1, 0.0, 0.0, 0.0))
    centre = np.array([10.0, 7.0])
    rect = cam.rectified_coordinate(0, 0)
    assert np.linalg.norm(rect - centre) > np.linalg.norm(np.array([0.0, 0.0]) - centre)
    np.testing.assert_allclose(cam.rectified_coordinate(10, 7), centre, atol=1e-4)


def test_mask_is_binary_with_centre_set():
    cam = make_camera(D=(-0.2, 0.05, 0.0, 0.0))
    assert set(np.unique(cam.undistort_rectify_mask)) <= {0, 255}
    assert cam.undistort_rectify_mask[7, 10] == 255


def test_equidistant_principal_point_is_fixed():
    cam = make_camera(model="equidistant", D=(0.01, 0.0, 0.0, 0.0))
    np.testing.assert_allclose(cam.rectified_coordinate(10, 7), [10.0, 7.0], atol=1e-4)
    assert cam.undistort_rectify_mask[7, 10] == 255


def test_unknown_distortion_model_raises():
    with pytest.raises(ValueError):
        make_camera(model="radtan")


def test_rectified_coordinate_out_of_range():
    cam = make_camera()
    with pytest.raises(IndexError):
        cam.rectified_coordinate(WIDTH, 0)


def test_cam_to_world_depth_and_round_trip():
    cam = make_camera()
    pixel = np.array([4.5, 11.25])
    p = cam.cam_to_world(pixel, 0.5)
    assert p[2] == pytest.approx(2.0)
    np.testing.assert_allclose(cam.world_to_cam(p), pixel, atol=1e-9)


def test_world_to_cam_round_trip_from_point():
    cam = make_camera()
    p = np.array([0.3, -0.2, 3.0])
    x = cam.world_to_cam(p)
    np.testing.assert_allclose(cam.cam_to_world(x, 1.0 / p[2]), p, atol=1e-9)


def test_from_directory(calib_dir):
    system = CameraSystem.from_directory(calib_dir)
    assert system.left.name == "left_cam"
    assert system.right.name == "right_cam"
    assert system.left.width == WIDTH and system.right.height == HEIGHT
    assert system.baseline == pytest.approx(0.1)
    assert system.T_right_left.shape == (3, 4)
    np.testing.assert_allclose(system.right.P, np.reshape(P_RIGHT, (3, 4)))


def test_describe_mentions_both_cameras(calib_dir):
    text = CameraSystem.from_directory(calib_dir).describe()
    assert "Left Camera" in text
    assert "Right Camera:" in text
    assert f"--image_width: {WIDTH}" in text


def test_load_camera(calib_dir):
    cam = load_camera(calib_dir / "left.yaml", "camera_name")
    assert cam.name == "left_cam"
    np.testing.assert_allclose(cam.K, np.reshape(K, (3, 3)))


def test_missing_directory_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        CameraSystem.from_directory(tmp_path / "absent")


def test_missing_key_raises(tmp_path):
    calib = calib_dict("left_cam", P_LEFT)
    del calib["projection_matrix"]
    path = tmp_path / "cam.yaml"
    path.write_text(yaml.safe_dump(calib))
    with pytest.raises(ValueError):
        load_camera(path, "camera_name")