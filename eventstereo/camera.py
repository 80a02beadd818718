"""Pinhole stereo camera models with undistortion and rectification."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np
import yaml

_SUPPORTED_MODELS = ("plumb_bob", "equidistant")
_MASK_THRESHOLDS = {"plumb_bob": 0.999, "equidistant": 0.1}


def _distortion_vector(values: Any) -> np.ndarray:
    coeffs = np.zeros(4)
    data = np.asarray(values, dtype=float).ravel()[:4]
    coeffs[: data.size] = data
    return coeffs


def _undistort_plumb_bob(
    u: np.ndarray, v: np.ndarray, K: np.ndarray, D: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    k1, k2, p1, p2 = D
    x0 = (u - K[0, 2]) / K[0, 0]
    y0 = (v - K[1, 2]) / K[1, 1]
    x, y = x0.copy(), y0.copy()
    for _ in range(5):
        r2 = x * x + y * y
        icdist = 1.0 / (1.0 + (k1 + k2 * r2) * r2)
        delta_x = 2.0 * p1 * x * y + p2 * (r2 + 2.0 * x * x)
        delta_y = p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * x * y
        x = (x0 - delta_x) * icdist
        y = (y0 - delta_y) * icdist
    return x, y


def _undistort_equidistant(
    u: np.ndarray, v: np.ndarray, K: np.ndarray, D: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    k0, k1, k2, k3 = D
    xw = (u - K[0, 2]) / K[0, 0]
    yw = (v - K[1, 2]) / K[1, 1]
    theta_d = np.clip(np.hypot(xw, yw), -np.pi / 2, np.pi / 2)
    theta = theta_d.copy()
    for _ in range(10):
        t2 = theta * theta
        t4 = t2 * t2
        t6 = t4 * t2
        t8 = t6 * t2
        fix = (theta * (1 + k0 * t2 + k1 * t4 + k2 * t6 + k3 * t8) - theta_d) / (
            1 + 3 * k0 * t2 + 5 * k1 * t4 + 7 * k2 * t6 + 9 * k3 * t8
        )
        theta = theta - fix
    nonzero = theta_d > 1e-8
    safe = np.where(nonzero, theta_d, 1.0)
    scale = np.where(nonzero, np.tan(theta) / safe, 1.0)
    return xw * scale, yw * scale


def _distort_plumb_bob(
    x: np.ndarray, y: np.ndarray, D: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    k1, k2, p1, p2 = D
    r2 = x * x + y * y
    radial = 1.0 + k1 * r2 + k2 * r2 * r2
    xd = x * radial + 2.0 * p1 * x * y + p2 * (r2 + 2.0 * x * x)
    yd = y * radial + p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * x * y
    return xd, yd


def _distort_equidistant(
    x: np.ndarray, y: np.ndarray, D: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    k0, k1, k2, k3 = D
    r = np.hypot(x, y)
    theta = np.arctan(r)
    t2 = theta * theta
    t4 = t2 * t2
    theta_d = theta * (1 + k0 * t2 + k1 * t4 + k2 * t4 * t2 + k3 * t4 * t4)
    nonzero = r > 0
    scale = np.where(nonzero, theta_d / np.where(nonzero, r, 1.0), 1.0)
    return x * scale, y * scale


def _remap_ones(
    map_x: np.ndarray, map_y: np.ndarray, width: int, height: int
) -> np.ndarray:
    """Bilinearly sample an all-ones image with a zero border."""
    x0 = np.floor(map_x)
    y0 = np.floor(map_y)
    ax = map_x - x0
    ay = map_y - y0
    total = np.zeros_like(map_x)
    corners = (
        (0, 0, (1 - ax) * (1 - ay)),
        (1, 0, ax * (1 - ay)),
        (0, 1, (1 - ax) * ay),
        (1, 1, ax * ay),
    )
    for dx, dy, weight in corners:
        xi = x0 + dx
        yi = y0 + dy
        inside = (xi >= 0) & (xi < width) & (yi >= 0) & (yi < height)
        total += np.where(inside, weight, 0.0)
    return total


class PerspectiveCamera:
    """A calibrated camera with precomputed rectified pixel coordinates."""

    def __init__(
        self,
        width: int,
        height: int,
        name: str,
        distortion_model: str,
        D: Any,
        K: Any,
        rect_mat: Any,
        P: Any,
    ) -> None:
        if distortion_model not in _SUPPORTED_MODELS:
            raise ValueError(f"wrong distortion model is provided: {distortion_model!r}")
        self.width = int(width)
        self.height = int(height)
        self.name = name
        self.distortion_model = distortion_model
        self.D = _distortion_vector(D)
        self.K = np.asarray(K, dtype=float).reshape(3, 3)
        self.rect_mat = np.asarray(rect_mat, dtype=float).reshape(3, 3)
        self.P = np.asarray(P, dtype=float).reshape(3, 4)
        self.rectified_points = self._rectify_all_pixels()
        self.undistort_rectify_mask = self._undistort_rectify_mask()

    def _rectify_all_pixels(self) -> np.ndarray:
        v, u = np.mgrid[0 : self.height, 0 : self.width].astype(float)
        if self.distortion_model == "plumb_bob":
            x, y = _undistort_plumb_bob(u, v, self.K, self.D)
        else:
            x, y = _undistort_equidistant(u, v, self.K, self.D)
        rr = self.P[:, :3] @ self.rect_mat
        hom = np.einsum("ij,jhw->ihw", rr, np.stack([x, y, np.ones_like(x)]))
        points = np.stack([hom[0] / hom[2], hom[1] / hom[2]], axis=-1)
        return points.astype(np.float32).astype(float)

    def _undistort_rectify_mask(self) -> np.ndarray:
        v, u = np.mgrid[0 : self.height, 0 : self.width].astype(float)
        inv_rr = np.linalg.inv(self.P[:, :3] @ self.rect_mat)
        ray = np.einsum("ij,jhw->ihw", inv_rr, np.stack([u, v, np.ones_like(u)]))
        with np.errstate(divide="ignore", invalid="ignore"):
            x = ray[0] / ray[2]
            y = ray[1] / ray[2]
            if self.distortion_model == "plumb_bob":
                xd, yd = _distort_plumb_bob(x, y, self.D)
            else:
                xd, yd = _distort_equidistant(x, y, self.D)
            map_x = (self.K[0, 0] * xd + self.K[0, 1] * yd + self.K[0, 2]).astype(np.float32)
            map_y = (self.K[1, 1] * yd + self.K[1, 2]).astype(np.float32)
        sampled = _remap_ones(
            map_x.astype(float), map_y.astype(float), self.width, self.height
        )
        threshold = _MASK_THRESHOLDS[self.distortion_model]
        return np.where(sampled > threshold, 255, 0).astype(np.uint8)

    def rectified_coordinate(self, x: int, y: int) -> np.ndarray:
        """Return the undistorted, rectified coordinate of raw pixel (x, y)."""
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"pixel ({x}, {y}) is outside the {self.width}x{self.height} sensor")
        return self.rectified_points[int(y), int(x)].copy()

    def cam_to_world(self, x: Any, inv_depth: float) -> np.ndarray:
        """Back-project image point x with the given inverse depth to 3D."""
        z = 1.0 / inv_depth
        x_ss = np.array([x[0], x[1], 1.0, 1.0])
        p_tilde = np.vstack([self.P, [0.0, 0.0, 0.0, z]])
        p_s = z * np.linalg.solve(p_tilde, x_ss)
        return p_s[:3] / p_s[3]

    def world_to_cam(self, p: Any) -> np.ndarray:
        """Project a 3D point onto the image plane."""
        x_hom = self.P[:, :3] @ np.asarray(p, dtype=float) + self.P[:, 3]
        return x_hom[:2] / x_hom[2]


def _read_yaml(path: Path) -> dict:
    with open(path, encoding="utf-8") as handle:
        content = yaml.safe_load(handle)
    if not isinstance(content, dict):
        raise ValueError(f"{path} does not hold a calibration mapping")
    return content


def _matrix_data(calib: dict, key: str, path: Path) -> list:
    try:
        return calib[key]["data"]
    except (KeyError, TypeError) as exc:
        raise ValueError(f"{path}: missing '{key}/data'") from exc


def _field(calib: dict, key: str, path: Path) -> Any:
    try:
        return calib[key]
    except KeyError as exc:
        raise ValueError(f"{path}: missing '{key}'") from exc


def _camera_from_calib(
    calib: dict, path: Path, name: str, width: int, height: int, model: str
) -> PerspectiveCamera:
    return PerspectiveCamera(
        width,
        height,
        name,
        model,
        _matrix_data(calib, "distortion_coefficients", path),
        _matrix_data(calib, "camera_matrix", path),
        _matrix_data(calib, "rectification_matrix", path),
        _matrix_data(calib, "projection_matrix", path),
    )


def load_camera(path: str | Path, camera_name_key: str = "camera_name") -> PerspectiveCamera:
    """Load one camera from a calibration YAML file."""
    path = Path(path)
    calib = _read_yaml(path)
    return _camera_from_calib(
        calib,
        path,
        str(_field(calib, camera_name_key, path)),
        int(_field(calib, "image_width", path)),
        int(_field(calib, "image_height", path)),
        str(_field(calib, "distortion_model", path)),
    )


class CameraSystem:
    """A rectified stereo pair of cameras."""

    def __init__(
        self,
        left: PerspectiveCamera,
        right: PerspectiveCamera,
        T_right_left: Any,
    ) -> None:
        self.left = left
        self.right = right
        self.T_right_left = np.asarray(T_right_left, dtype=float).reshape(3, 4)
        self.baseline = float(
            np.linalg.norm(np.linalg.solve(right.P[:, :3], right.P[:, 3]))
        )

    @classmethod
    def from_directory(cls, calib_dir: str | Path) -> "CameraSystem":
        """Load left.yaml and right.yaml from a calibration directory."""
        calib_dir = Path(calib_dir)
        left_path = calib_dir / "left.yaml"
        right_path = calib_dir / "right.yaml"
        left_calib = _read_yaml(left_path)
        right_calib = _read_yaml(right_path)

        width = int(_field(left_calib, "image_width", left_path))
        height = int(_field(left_calib, "image_height", left_path))
        model = str(_field(left_calib, "distortion_model", left_path))
        left = _camera_from_calib(
            left_calib, left_path, str(_field(left_calib, "camera_name", left_path)),
            width, height, model,
        )
        right = _camera_from_calib(
            right_calib, right_path, str(_field(right_calib, "camera_name", right_path)),
            width, height, model,
        )
        T_right_left = _matrix_data(left_calib, "T_right_left", left_path)
        return cls(left, right, T_right_left)

    def describe(self) -> str:
        """Return a human-readable summary of the calibration."""
        rule = "=" * 44
        lines = [rule, "Left Camera"]
        lines += self._camera_lines(self.left)
        lines += [f"--T_right_left:\n{self.T_right_left}", rule, "Right Camera:"]
        lines += self._camera_lines(self.right)
        lines.append(rule)
        return "\n".join(lines)

    @staticmethod
    def _camera_lines(cam: PerspectiveCamera) -> list[str]:
        return [
            f"--image_width: {cam.width}",
            f"--image_height: {cam.height}",
            f"--distortion model: {cam.distortion_model}",
            f"--distortion_coefficients:\n{cam.D}",
            f"--rectification_matrix:\n{cam.rect_mat}",
            f"--projection_matrix:\n{cam.P}",
        ]