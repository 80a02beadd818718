"""Events, per-pixel event records and stereo event matches."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True)
class Event:
    """A single sensor event: pixel, timestamp in seconds and polarity."""

    x: int
    y: int
    ts: float
    polarity: bool


@dataclass
class EventPoint:
    """The most recent event seen at a pixel."""

    row: int = 0
    col: int = 0
    ts: float = 0.0
    polarity: int = 0

    def is_valid(self) -> bool:
        return self.ts > 0

    def copy_from(self, other: "EventPoint") -> None:
        """Take over the timestamp and polarity of another record."""
        self.ts = other.ts
        self.polarity = other.polarity


@dataclass
class EventMatchPair:
    """A left event matched to a right-image location with its depth."""

    x_left_raw: np.ndarray = field(default_factory=lambda: np.zeros(2))
    x_left: np.ndarray = field(default_factory=lambda: np.zeros(2))
    x_right: np.ndarray = field(default_factory=lambda: np.zeros(2))
    t: float = 0.0
    trans: np.ndarray = field(default_factory=lambda: np.eye(4))
    inv_depth: float = 0.0
    cost: float = 0.0
    disp: float = 0.0