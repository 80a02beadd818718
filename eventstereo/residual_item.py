"""A 3D point with its registration residual."""

from __future__ import annotations

import numpy as np


class ResidualItem:
    """A reference point and the residual it produces under a warp."""

    def __init__(self, x: float = 0.0, y: float = 0.0, z: float = 0.0) -> None:
        self.residual = np.zeros(0)
        self.initialize(x, y, z)

    def initialize(self, x: float, y: float, z: float) -> None:
        """Set the point coordinates."""
        self.p = np.array([x, y, z], dtype=float)