import dataclasses

import numpy as np
import pytest

from eventstereo.event_point import Event, EventMatchPair, EventPoint


def test_event_is_immutable():
    ev = Event(3, 4, 1.25, True)
    assert (ev.x, ev.y, ev.ts, ev.polarity) == (3, 4, 1.25, True)
    with pytest.raises(dataclasses.FrozenInstanceError):
        ev.x = 5


def test_event_point_defaults_invalid():
    ep = EventPoint(2, 3)
    assert (ep.row, ep.col, ep.ts, ep.polarity) == (2, 3, 0.0, 0)
    assert not ep.is_valid()


def test_event_point_valid_with_positive_time():
    assert EventPoint(0, 0, 0.5, 1).is_valid()


def test_copy_from_keeps_pixel():
    src = EventPoint(1, 1, 2.5, 1)
    dst = EventPoint(7, 8)
    dst.copy_from(src)
    assert (dst.row, dst.col, dst.ts, dst.polarity) == (7, 8, 2.5, 1)


def test_match_pair_defaults_are_independent():
    a = EventMatchPair()
    b = EventMatchPair()
    a.x_left[0] = 4.0
    assert b.x_left[0] == 0.0
    np.testing.assert_array_equal(a.trans, np.eye(4))
    assert a.inv_depth == 0.0