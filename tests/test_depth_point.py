import numpy as np
import pytest

from eventstereo.depth_point import DepthFrame, DepthMap, DepthPoint


def test_default_point_is_invalid_and_centred():
    dp = DepthPoint(3, 7)
    assert dp.inv_depth == -1.0
    assert not dp.is_valid()
    np.testing.assert_allclose(dp.x, [7.5, 3.5])


def test_first_update_takes_measurement_and_bounds_variance():
    dp = DepthPoint(0, 0)
    dp.update(0.8, 0.0)
    assert dp.inv_depth == 0.8
    assert dp.variance == 1e-6
    assert dp.is_valid()


def test_second_update_fuses():
    dp = DepthPoint(0, 0)
    dp.update(1.0, 0.5)
    dp.update(3.0, 0.5)
    assert dp.inv_depth == pytest.approx((1.0 + 3.0) / 2)
    assert dp.variance == pytest.approx(0.5 / 2)


def test_update_weights_towards_precise_measurement():
    dp = DepthPoint(0, 0)
    dp.update(1.0, 0.01)
    dp.update(2.0, 1.0)
    assert 1.0 < dp.inv_depth < 1.5
    assert dp.variance < 0.01


def test_student_t_first_then_fused():
    dp = DepthPoint(0, 0)
    dp.update_student_t(1.0, 0.1, 0.2, 5.0)
    assert (dp.inv_depth, dp.scale_squared, dp.variance, dp.nu, dp.age) == (1.0, 0.1, 0.2, 5.0, 0)
    dp.update_student_t(1.0, 0.1, 0.2, 4.0)
    assert dp.nu == 5.0
    assert dp.age == 1
    assert dp.inv_depth == pytest.approx(1.0)
    assert dp.variance == pytest.approx(dp.nu / (dp.nu - 2) * dp.scale_squared)
    assert dp.scale_squared < 0.1


def test_is_valid_within():
    dp = DepthPoint(0, 0)
    dp.update(0.5, 0.01)
    dp.age = 3
    assert dp.is_valid_within(0.02, 2, 1.0, 0.1)
    assert not dp.is_valid_within(0.005, 2, 1.0, 0.1)
    assert not dp.is_valid_within(0.02, 4, 1.0, 0.1)
    assert not dp.is_valid_within(0.02, 2, 0.4, 0.1)
    assert not dp.is_valid_within(0.02, 2, 1.0, 0.6)


def test_copy_from_keeps_position():
    src = DepthPoint(1, 2)
    src.update(0.7, 0.03)
    src.residual = 4.0
    src.age = 9
    src.p_cam = np.array([1.0, 2.0, 3.0])
    dst = DepthPoint(5, 6)
    dst.copy_from(src)
    assert (dst.row, dst.col) == (5, 6)
    assert dst.inv_depth == src.inv_depth
    assert dst.residual == 4.0 and dst.age == 9
    np.testing.assert_array_equal(dst.p_cam, src.p_cam)
    np.testing.assert_array_equal(dst.x, src.x)
    dst.p_cam[0] = -1.0
    assert src.p_cam[0] == 1.0


def test_depth_map_set_get_exists():
    dm = DepthMap(4, 5)
    dp = DepthPoint(1, 2)
    dp.update(0.5, 0.1)
    dm.set(1, 2, dp)
    assert dm.exists(1, 2)
    assert not dm.exists(2, 1)
    assert dm.get(1, 2).inv_depth == 0.5
    dm.get(1, 2).age = 3
    assert dm.get(1, 2).age == 3
    assert dp.age == 0
    assert len(dm) == 1


def test_depth_map_errors():
    dm = DepthMap(4, 5)
    with pytest.raises(KeyError):
        dm.get(0, 0)
    with pytest.raises(IndexError):
        dm.set(4, 0, DepthPoint(4, 0))


def test_depth_map_iterates_row_major():
    dm = DepthMap(4, 4)
    for r, c in [(3, 1), (0, 2), (1, 0), (0, 1)]:
        dm.set(r, c, DepthPoint(r, c))
    assert [(p.row, p.col) for p in dm] == [(0, 1), (0, 2), (1, 0), (3, 1)]


def test_neighbourhood_includes_centre_and_clips():
    dm = DepthMap(5, 5)
    for r, c in [(0, 0), (1, 1), (4, 4), (2, 3)]:
        dm.set(r, c, DepthPoint(r, c))
    around = dm.neighbourhood(0, 0, 1)
    assert {(p.row, p.col) for p in around} == {(0, 0), (1, 1)}
    assert len(dm.neighbourhood(2, 2, 2)) == 4


def test_clean_and_clear():
    dm = DepthMap(3, 3)
    good = DepthPoint(0, 0)
    good.update(0.5, 0.01)
    dm.set(0, 0, good)
    dm.set(1, 1, DepthPoint(1, 1))
    dm.clean(0.1, 0, 1.0, 0.1)
    assert [(p.row, p.col) for p in dm] == [(0, 0)]
    dm.clear()
    assert len(dm) == 0


def test_depth_frame_clear():
    frame = DepthFrame(2, 3)
    frame.depth_map.set(1, 2, DepthPoint(1, 2))
    assert frame.depth_map.rows == 2 and frame.depth_map.cols == 3
    np.testing.assert_array_equal(frame.T_world_frame, np.eye(4))
    frame.clear()
    assert len(frame.depth_map) == 0