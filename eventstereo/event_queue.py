"""Time-ordered event buffers and the sliding window of depth observations."""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from collections import deque
from typing import Iterable, Iterator, Sequence

from eventstereo.depth_point import DepthPoint
from eventstereo.event_point import Event


class InconsistentTimestampError(ValueError):
    """Raised when incoming data jumps backwards or too far forwards in time."""

    def __init__(self, new: float, old: float) -> None:
        super().__init__(
            f"inconsistent timestamps detected (new: {new:f}, old: {old:f})"
        )
        self.new = new
        self.old = old


class EventQueue:
    """Events kept sorted by timestamp, with a bounded length."""

    def __init__(self, max_length: int = 3_000_000, max_time_gap: float = 0.5) -> None:
        self.max_length = max_length
        self.max_time_gap = max_time_gap
        self._events: list[Event] = []
        self._times: list[float] = []

    def add(self, events: Iterable[Event]) -> None:
        """Insert a batch of events in timestamp order, dropping the oldest overflow.

        Raises InconsistentTimestampError, adding nothing, when the first new
        event is older than the newest queued one or follows it by the
        maximum gap or more; the caller is expected to reset and add again.
        """
        events = list(events)
        if events and self._events:
            newest = self._times[-1]
            dt = events[0].ts - newest
            if dt < 0 or abs(dt) >= self.max_time_gap:
                raise InconsistentTimestampError(events[0].ts, newest)
        for event in events:
            index = bisect_right(self._times, event.ts)
            self._times.insert(index, event.ts)
            self._events.insert(index, event)
        excess = len(self._events) - self.max_length
        if excess > 0:
            del self._events[:excess]
            del self._times[:excess]

    def lower_bound(self, t: float) -> int:
        """Index of the first event not older than t."""
        return bisect_left(self._times, t)

    def between(self, t_begin: float, t_end: float, limit: int) -> list[Event]:
        """At most limit events, oldest first, from the first at or after t_begin
        up to but excluding the last one before t_end."""
        low = self.lower_bound(t_begin)
        up = self.lower_bound(t_end) - 1
        if up <= low:
            return []
        return self._events[low : min(up, low + limit)]

    def newest_before(self, t_begin: float, t_end: float, limit: int) -> list[Event]:
        """At most limit events, newest first, walking back from the first event
        at or after t_end and stopping before the first at or after t_begin."""
        end = self.lower_bound(t_end)
        begin = self.lower_bound(t_begin)
        picked: list[Event] = []
        for index in range(end, begin, -1):
            if len(picked) >= limit:
                break
            if index < len(self._events):
                picked.append(self._events[index])
        return picked

    def clear(self) -> None:
        self._events.clear()
        self._times.clear()

    def __len__(self) -> int:
        return len(self._events)

    def __getitem__(self, index):
        return self._events[index]

    def __iter__(self) -> Iterator[Event]:
        return iter(self._events)


class FusionWindow:
    """The most recent batches of depth points kept for fusion."""

    def __init__(self) -> None:
        self._frames: deque[list[DepthPoint]] = deque()

    def push(self, points: Sequence[DepthPoint]) -> None:
        """Append the newest batch."""
        self._frames.append(list(points))

    @property
    def total_points(self) -> int:
        return sum(len(frame) for frame in self._frames)

    def trim_frames(self, max_frames: int) -> None:
        """Drop the oldest batches until at most max_frames remain."""
        while len(self._frames) > max_frames:
            self._frames.popleft()

    def trim_points(self, max_points: int) -> None:
        """Drop the oldest batches until they hold at most 1.5 * max_points."""
        while self._frames and self.total_points > 1.5 * max_points:
            self._frames.popleft()

    def newest_first(self) -> Iterator[list[DepthPoint]]:
        return reversed(self._frames)

    def clear(self) -> None:
        self._frames.clear()

    def __len__(self) -> int:
        return len(self._frames)